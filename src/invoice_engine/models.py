"""Value objects shared by the invoice engine.

Everything here is an immutable dataclass. Line items, invoices, inventory
snapshots, and the payloads handed to persistence collaborators are all plain
values; the only mutable state in the engine lives in
:class:`~invoice_engine.edit_session.InvoiceEditSession`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

from .constants import InvoiceKind, PaymentMethod, PaymentStatus

ZERO = Decimal("0")


def coerce_decimal(value: Any) -> Decimal:
    """Convert loosely typed input into a finite :class:`~decimal.Decimal`.

    Values coming from forms and worksheets may be ``None``, blank strings,
    floats, or garbage. Anything that does not parse into a finite number is
    treated as zero so callers can compute totals without guarding every field.

    Args:
        value (Any): Raw value to convert.

    Returns:
        Decimal: Parsed value, or ``Decimal("0")`` when parsing fails.
    """

    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return ZERO
    return parsed if parsed.is_finite() else ZERO


def coerce_quantity(value: Any) -> int:
    """Convert loosely typed input into an integer unit count (truncating)."""

    return int(coerce_decimal(value))


@dataclass(frozen=True)
class InvoiceProfile:
    """Per-kind behavior resolved once when an invoice is loaded.

    Customer and vendor invoices share the same line item layout but differ in
    what the unit price means, what the ancillary cost column is called in the
    legacy records, whether a broker commission applies, and in which direction
    committed items move stock.
    """

    kind: InvoiceKind
    price_field: str
    price_label: str
    ancillary_field: str
    tracks_commission: bool
    consumes_inventory: bool
    stock_direction: int


CUSTOMER_PROFILE = InvoiceProfile(
    kind=InvoiceKind.CUSTOMER,
    price_field="sellingPrice",
    price_label="selling price",
    ancillary_field="laborTransportCost",
    tracks_commission=True,
    consumes_inventory=True,
    stock_direction=-1,
)

VENDOR_PROFILE = InvoiceProfile(
    kind=InvoiceKind.VENDOR,
    price_field="purchasePrice",
    price_label="purchase price",
    ancillary_field="labourTransportCost",
    tracks_commission=False,
    consumes_inventory=False,
    stock_direction=1,
)


def profile_for(kind: InvoiceKind | str) -> InvoiceProfile:
    """Return the :class:`InvoiceProfile` for ``kind``.

    Raises:
        ValueError: If ``kind`` is not a known :class:`InvoiceKind` value.
    """

    resolved = InvoiceKind(kind)
    return CUSTOMER_PROFILE if resolved is InvoiceKind.CUSTOMER else VENDOR_PROFILE


@dataclass(frozen=True)
class LineItem:
    """One product row on an invoice.

    ``unit_price`` is priced per kilogram of ``net_weight`` while
    ``packaging_cost`` is priced per unit of ``quantity``. ``gross_weight`` is
    carried for stock bookkeeping only and never priced.
    """

    item_ref: str
    display_name: str = ""
    quantity: int = 0
    net_weight: Decimal = ZERO
    gross_weight: Decimal = ZERO
    unit_price: Decimal = ZERO
    packaging_cost: Decimal = ZERO

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], *, price_field: str = "unitPrice") -> "LineItem":
        """Build a line item from a loosely typed record.

        Both the snake_case attribute names and the legacy camelCase keys
        (``itemId``, ``netWeight``, ``sellingPrice`` ...) are accepted.
        Missing or non-numeric values become zero.

        Args:
            raw (Mapping[str, Any]): Source record.
            price_field (str): Legacy key holding the unit price, normally
                :attr:`InvoiceProfile.price_field`.

        Returns:
            LineItem: Normalized item.
        """

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in raw and raw[key] is not None:
                    return raw[key]
            return None

        item_ref = pick("item_ref", "itemRef", "itemId")
        name = pick("display_name", "displayName", "name", "itemName")
        return cls(
            item_ref=str(item_ref) if item_ref is not None else "",
            display_name=str(name) if name is not None else "",
            quantity=coerce_quantity(pick("quantity")),
            net_weight=coerce_decimal(pick("net_weight", "netWeight")),
            gross_weight=coerce_decimal(pick("gross_weight", "grossWeight")),
            unit_price=coerce_decimal(pick("unit_price", price_field, "unitPrice")),
            packaging_cost=coerce_decimal(pick("packaging_cost", "packagingCost")),
        )

    def to_record(self, *, price_field: str = "unitPrice") -> Dict[str, Any]:
        """Render the item with the legacy camelCase keys."""

        return {
            "itemId": self.item_ref,
            "name": self.display_name,
            "quantity": self.quantity,
            "netWeight": self.net_weight,
            "grossWeight": self.gross_weight,
            price_field: self.unit_price,
            "packagingCost": self.packaging_cost,
        }


@dataclass(frozen=True)
class StockLevel:
    """Quantity and weights currently available for one inventory item."""

    quantity: Decimal = ZERO
    net_weight: Decimal = ZERO
    gross_weight: Decimal = ZERO

    def get(self, field_name: str) -> Decimal:
        return coerce_decimal(getattr(self, field_name))


InventoryAvailability = Mapping[str, StockLevel]


@dataclass(frozen=True)
class PaymentRecord:
    """One entry in an invoice's payment history."""

    amount: Decimal
    method: PaymentMethod
    paid_on: date
    notes: Optional[str] = None


@dataclass(frozen=True)
class Invoice:
    """Aggregate root holding the inputs from which all totals are derived.

    Subtotal, total, remaining amount, payment status and commission amount are
    intentionally absent: they are always recomputed through
    :func:`invoice_engine.calculations.recompute`.
    """

    invoice_id: str
    kind: InvoiceKind
    items: Tuple[LineItem, ...] = ()
    ancillary_cost: Decimal = ZERO
    paid_amount: Decimal = ZERO
    broker_ref: Optional[str] = None
    commission_percentage: Decimal = ZERO
    broker_paid_amount: Decimal = ZERO
    payments: Tuple[PaymentRecord, ...] = ()

    @property
    def profile(self) -> InvoiceProfile:
        return profile_for(self.kind)


@dataclass(frozen=True)
class DerivedTotals:
    """Every monetary field derived from an invoice's inputs."""

    subtotal: Decimal
    total_amount: Decimal
    remaining_amount: Decimal
    payment_status: PaymentStatus
    commission_amount: Decimal


@dataclass(frozen=True)
class InvoiceUpdatePayload:
    """Immutable request handed to the persistence layer on commit.

    ``original_items`` travels with the payload so the persistence layer can do
    its own stock-adjustment bookkeeping. Commission fields are ``None`` for
    vendor invoices.
    """

    invoice_id: str
    kind: InvoiceKind
    items: Tuple[LineItem, ...]
    original_items: Tuple[LineItem, ...]
    subtotal: Decimal
    ancillary_cost: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    payment_status: PaymentStatus
    commission_amount: Optional[Decimal] = None
    commission_percentage: Optional[Decimal] = None
    broker_ref: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        """Render the payload using the legacy field names for its kind."""

        profile = profile_for(self.kind)
        record: Dict[str, Any] = {
            "invoiceId": self.invoice_id,
            "items": [item.to_record(price_field=profile.price_field) for item in self.items],
            "originalItems": [item.to_record(price_field=profile.price_field) for item in self.original_items],
            "subtotal": self.subtotal,
            profile.ancillary_field: self.ancillary_cost,
            "totalAmount": self.total_amount,
            "paidAmount": self.paid_amount,
            "remainingAmount": self.remaining_amount,
            "paymentStatus": self.payment_status.value,
        }
        if profile.tracks_commission:
            record["commissionAmount"] = self.commission_amount
            record["commissionPercentage"] = self.commission_percentage
            record["brokerRef"] = self.broker_ref
        return record


@dataclass(frozen=True)
class PaymentPayload:
    """Request handed to the persistence layer when a payment is recorded."""

    invoice_id: str
    amount: Decimal
    method: PaymentMethod
    paid_on: date
    paid_amount: Decimal
    remaining_amount: Decimal
    payment_status: PaymentStatus
    notes: Optional[str] = None


@dataclass(frozen=True)
class BrokerPaymentPayload:
    """Request handed to the persistence layer when a broker is paid."""

    invoice_id: str
    broker_ref: str
    amount: Decimal
    paid_on: date
    broker_paid_amount: Decimal
    broker_remaining_amount: Decimal
    broker_payment_status: PaymentStatus


@dataclass(frozen=True)
class StockAdjustment:
    """Signed stock movement for one item produced by committing an invoice."""

    item_ref: str
    quantity: Decimal = ZERO
    net_weight: Decimal = ZERO
    gross_weight: Decimal = ZERO

    @property
    def is_noop(self) -> bool:
        return not (self.quantity or self.net_weight or self.gross_weight)


__all__ = [
    "ZERO",
    "coerce_decimal",
    "coerce_quantity",
    "InvoiceProfile",
    "CUSTOMER_PROFILE",
    "VENDOR_PROFILE",
    "profile_for",
    "LineItem",
    "StockLevel",
    "InventoryAvailability",
    "PaymentRecord",
    "Invoice",
    "DerivedTotals",
    "InvoiceUpdatePayload",
    "PaymentPayload",
    "BrokerPaymentPayload",
    "StockAdjustment",
]
