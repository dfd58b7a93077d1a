"""Workbook-backed persistence for the invoice engine.

:class:`WorkbookGateway` implements every collaborator protocol declared in
:mod:`invoice_engine.collaborators` on top of an ``openpyxl`` workbook. It
only mutates the in-memory workbook; callers decide when to
:func:`persist_context` or :func:`refresh_context`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import AbstractSet, Any, Dict, List, Mapping, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .calculations import calculate_stock_adjustments, derive_payment_state
from .constants import EXPECTED_SCHEMA_VERSION, InvoiceKind, PaymentMethod
from .exceptions import BusinessRuleViolation, MissingReferenceError
from .models import (
    ZERO,
    BrokerPaymentPayload,
    Invoice,
    InvoiceUpdatePayload,
    LineItem,
    PaymentPayload,
    PaymentRecord,
    StockAdjustment,
    StockLevel,
    profile_for,
)

BROKER_PAYEE = "broker"

# Prefix and zero-padded width of generated invoice numbers.
_INVOICE_NUMBERING = {
    InvoiceKind.CUSTOMER: ("", 6),
    InvoiceKind.VENDOR: ("V-", 5),
}


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def _broker_status(commission: Decimal, broker_paid_amount: Decimal, broker_ref: Optional[str]) -> Optional[str]:
    if not broker_ref:
        return None
    return derive_payment_state(commission, broker_paid_amount).payment_status.value


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket called ``name``, creating it on demand."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after the workbook was mutated."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_inventory_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "inventory")
    if "all" not in bucket:
        all_rows = list(data_manager.iter_inventory(context.workbook))
        bucket["all"] = all_rows
        bucket["by_ref"] = {row.item_ref: row for row in all_rows}
        log.debug("Populated inventory cache with %d entries", len(all_rows))
    return bucket


def _ensure_invoices_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "invoices")
    if "all" not in bucket:
        all_rows = list(data_manager.iter_invoices(context.workbook))
        bucket["all"] = all_rows
        bucket["by_id"] = {row.invoice_id: row for row in all_rows}
        log.debug("Populated invoices cache with %d entries", len(all_rows))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Settings plus an open workbook and an empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to touch a workbook whose declared schema is not the expected one.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Save in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, dropping unsaved modifications and caches.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def generate_payment_id(*, prefix: str = "P", when: Optional[datetime] = None) -> str:
    """Generate a sortable payment identifier ``{prefix}{YYYYMMDDHHMMSSffffff}``."""
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


class WorkbookGateway:
    """Inventory source, invoice committer and payment recorders over a workbook.

    Args:
        context (RuntimeContext): Runtime context whose workbook is read and
            mutated.
    """

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_inventory(self) -> List[data_manager.InventoryRow]:
        return list(_ensure_inventory_cache(self.context)["all"])

    def list_invoices(self) -> List[data_manager.InvoiceRow]:
        return list(_ensure_invoices_cache(self.context)["all"])

    def get_invoice_row(self, invoice_id: str) -> data_manager.InvoiceRow:
        """Return the stored header for ``invoice_id``.

        Raises:
            MissingReferenceError: If the invoice does not exist.
        """
        cache = _ensure_invoices_cache(self.context)
        try:
            return cache["by_id"][invoice_id]
        except KeyError as exc:
            log.warning("Invoice lookup failed for id '%s'", invoice_id)
            raise MissingReferenceError(f"Unknown invoice id: {invoice_id}") from exc

    def load_invoice(self, invoice_id: str) -> Invoice:
        """Assemble an :class:`Invoice` from its header, item and payment rows.

        Derived columns stored on the header are ignored; only inputs are
        loaded.

        Raises:
            MissingReferenceError: If the invoice does not exist.
            ValueError: If the stored kind is neither customer nor vendor.
        """
        row = self.get_invoice_row(invoice_id)
        profile = profile_for(row.kind)
        item_rows = sorted(
            data_manager.iter_invoice_items(self.context.workbook, invoice_id),
            key=lambda item: item.position,
        )
        items = tuple(
            LineItem(
                item_ref=item.item_ref,
                display_name=item.display_name,
                quantity=item.quantity,
                net_weight=item.net_weight,
                gross_weight=item.gross_weight,
                unit_price=item.unit_price,
                packaging_cost=item.packaging_cost,
            )
            for item in item_rows
        )
        payments = tuple(
            PaymentRecord(
                amount=payment.amount,
                method=PaymentMethod(payment.method or PaymentMethod.OTHER.value),
                paid_on=datetime.fromisoformat(payment.paid_on_iso).date(),
                notes=payment.notes,
            )
            for payment in data_manager.iter_payments(self.context.workbook, invoice_id)
            if payment.payee != BROKER_PAYEE
        )
        tracks_commission = profile.tracks_commission
        return Invoice(
            invoice_id=row.invoice_id,
            kind=profile.kind,
            items=items,
            ancillary_cost=row.ancillary_cost,
            paid_amount=row.paid_amount,
            broker_ref=row.broker_ref if tracks_commission else None,
            commission_percentage=row.commission_percentage if tracks_commission else ZERO,
            broker_paid_amount=row.broker_paid_amount if tracks_commission else ZERO,
            payments=payments,
        )

    def fetch_inventory_availability(self, item_refs: AbstractSet[str]) -> Mapping[str, StockLevel]:
        """Return stock for the requested items that exist on the ``Inventory`` sheet."""
        by_ref = _ensure_inventory_cache(self.context)["by_ref"]
        return {
            ref: StockLevel(
                quantity=by_ref[ref].quantity,
                net_weight=by_ref[ref].net_weight,
                gross_weight=by_ref[ref].gross_weight,
            )
            for ref in item_refs
            if ref in by_ref
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def next_invoice_id(self, kind: InvoiceKind | str) -> str:
        """Return the next free invoice number for ``kind``.

        Customer invoices are numbered ``000001``, ``000002`` and so on, vendor
        invoices ``V-00001``, ``V-00002``. Ids that do not follow the pattern
        are ignored when looking for the highest number in use.
        """
        profile = profile_for(kind)
        prefix, width = _INVOICE_NUMBERING[profile.kind]
        highest = 0
        for row in self.list_invoices():
            if row.kind != profile.kind.value or not row.invoice_id.startswith(prefix):
                continue
            digits = row.invoice_id[len(prefix):]
            if digits.isdigit():
                highest = max(highest, int(digits))
        return f"{prefix}{highest + 1:0{width}d}"

    def create_invoice(self, payload: InvoiceUpdatePayload) -> None:
        """Insert a new invoice header with its items and move stock.

        Args:
            payload (InvoiceUpdatePayload): Validated payload from a session
                opened with :func:`~invoice_engine.edit_session.open_new_invoice_session`.

        Raises:
            BusinessRuleViolation: If an invoice with the same id already exists.
        """
        if payload.invoice_id in _ensure_invoices_cache(self.context)["by_id"]:
            log.warning("Refusing to create duplicate invoice '%s'", payload.invoice_id)
            raise BusinessRuleViolation(f"Invoice id already exists: {payload.invoice_id}")

        profile = profile_for(payload.kind)
        tracks_commission = profile.tracks_commission
        commission = (payload.commission_amount or ZERO) if tracks_commission else ZERO
        data_manager.append_invoice(
            self.context.workbook,
            data_manager.InvoiceRow(
                invoice_id=payload.invoice_id,
                kind=profile.kind.value,
                ancillary_cost=payload.ancillary_cost,
                subtotal=payload.subtotal,
                total_amount=payload.total_amount,
                paid_amount=payload.paid_amount,
                remaining_amount=payload.remaining_amount,
                payment_status=payload.payment_status.value,
                broker_ref=payload.broker_ref if tracks_commission else None,
                commission_percentage=(payload.commission_percentage or ZERO) if tracks_commission else ZERO,
                commission_amount=commission,
                broker_paid_amount=ZERO,
                broker_payment_status=_broker_status(commission, ZERO, payload.broker_ref if tracks_commission else None),
            ),
        )
        self._write_items(payload)
        adjustments = self._move_stock(payload)

        _invalidate_cache(self.context, "invoices", "inventory")
        log.info(
            "Created %s invoice '%s' with %d items, applied %d stock adjustments",
            profile.kind.value,
            payload.invoice_id,
            len(payload.items),
            len(adjustments),
        )

    def commit_invoice_update(self, payload: InvoiceUpdatePayload) -> None:
        """Replace the invoice's items, rewrite its header and move stock.

        Args:
            payload (InvoiceUpdatePayload): Validated edit produced by an edit
                session.

        Raises:
            MissingReferenceError: If the invoice does not exist.
        """
        current = self.get_invoice_row(payload.invoice_id)
        profile = profile_for(payload.kind)

        removed = data_manager.delete_invoice_items(self.context.workbook, payload.invoice_id)
        self._write_items(payload)

        field_values: Dict[str, Any] = {
            "AncillaryCost": payload.ancillary_cost,
            "Subtotal": payload.subtotal,
            "TotalAmount": payload.total_amount,
            "PaidAmount": payload.paid_amount,
            "RemainingAmount": payload.remaining_amount,
            "PaymentStatus": payload.payment_status.value,
        }
        if profile.tracks_commission:
            commission = payload.commission_amount or ZERO
            field_values.update(
                {
                    "BrokerRef": payload.broker_ref,
                    "CommissionPercentage": payload.commission_percentage or ZERO,
                    "CommissionAmount": commission,
                    "BrokerPaymentStatus": _broker_status(commission, current.broker_paid_amount, payload.broker_ref),
                }
            )
        data_manager.update_row(
            self.context.workbook,
            data_manager.INVOICES_SHEET,
            "InvoiceID",
            payload.invoice_id,
            field_values=field_values,
        )
        adjustments = self._move_stock(payload)

        _invalidate_cache(self.context, "invoices", "inventory")
        log.info(
            "Stored invoice '%s': replaced %d item rows with %d, applied %d stock adjustments",
            payload.invoice_id,
            removed,
            len(payload.items),
            len(adjustments),
        )

    def delete_invoice(self, invoice_id: str) -> List[StockAdjustment]:
        """Delete an invoice with its items and payments, reversing its stock.

        Stock a customer invoice took out goes back on the shelf; stock a
        vendor invoice brought in is taken off again, never below zero. Items
        that are no longer in the inventory are skipped.

        Returns:
            list[StockAdjustment]: Adjustments that were applied.

        Raises:
            MissingReferenceError: If the invoice does not exist.
        """
        invoice = self.load_invoice(invoice_id)
        by_ref = _ensure_inventory_cache(self.context)["by_ref"]
        applied: List[StockAdjustment] = []
        for adjustment in calculate_stock_adjustments(invoice.items, (), invoice.profile):
            if adjustment.item_ref not in by_ref:
                log.warning("Inventory item '%s' not found while deleting invoice '%s'", adjustment.item_ref, invoice_id)
                continue
            self._apply_stock_adjustment(adjustment, "", floor_at_zero=True)
            applied.append(adjustment)

        workbook = self.context.workbook
        items = data_manager.delete_invoice_items(workbook, invoice_id)
        payments = data_manager.delete_rows(workbook, data_manager.PAYMENTS_SHEET, "InvoiceID", invoice_id)
        data_manager.delete_rows(workbook, data_manager.INVOICES_SHEET, "InvoiceID", invoice_id)

        _invalidate_cache(self.context, "invoices", "inventory")
        log.info(
            "Deleted invoice '%s' with %d items and %d payments, reverted %d stock adjustments",
            invoice_id,
            items,
            payments,
            len(applied),
        )
        return applied

    def record_payment(self, payload: PaymentPayload) -> None:
        """Append a payment row and update the invoice balance columns.

        Raises:
            MissingReferenceError: If the invoice does not exist.
        """
        current = self.get_invoice_row(payload.invoice_id)
        data_manager.append_payment(
            self.context.workbook,
            data_manager.PaymentRow(
                payment_id=generate_payment_id(),
                invoice_id=payload.invoice_id,
                payee=current.kind,
                amount=payload.amount,
                method=payload.method.value,
                paid_on_iso=payload.paid_on.isoformat(),
                remaining_amount=payload.remaining_amount,
                payment_status=payload.payment_status.value,
                notes=payload.notes,
            ),
        )
        data_manager.update_row(
            self.context.workbook,
            data_manager.INVOICES_SHEET,
            "InvoiceID",
            payload.invoice_id,
            field_values={
                "PaidAmount": payload.paid_amount,
                "RemainingAmount": payload.remaining_amount,
                "PaymentStatus": payload.payment_status.value,
            },
        )
        _invalidate_cache(self.context, "invoices")

    def record_broker_payment(self, payload: BrokerPaymentPayload) -> None:
        """Append a broker payment row and update the broker columns.

        Raises:
            MissingReferenceError: If the invoice does not exist.
        """
        self.get_invoice_row(payload.invoice_id)
        data_manager.append_payment(
            self.context.workbook,
            data_manager.PaymentRow(
                payment_id=generate_payment_id(prefix="B"),
                invoice_id=payload.invoice_id,
                payee=BROKER_PAYEE,
                amount=payload.amount,
                method=None,
                paid_on_iso=payload.paid_on.isoformat(),
                remaining_amount=payload.broker_remaining_amount,
                payment_status=payload.broker_payment_status.value,
                notes=payload.broker_ref,
            ),
        )
        data_manager.update_row(
            self.context.workbook,
            data_manager.INVOICES_SHEET,
            "InvoiceID",
            payload.invoice_id,
            field_values={
                "BrokerPaidAmount": payload.broker_paid_amount,
                "BrokerPaymentStatus": payload.broker_payment_status.value,
            },
        )
        _invalidate_cache(self.context, "invoices")

    def _write_items(self, payload: InvoiceUpdatePayload) -> None:
        for position, item in enumerate(payload.items, start=1):
            data_manager.append_invoice_item(
                self.context.workbook,
                data_manager.InvoiceItemRow(
                    invoice_id=payload.invoice_id,
                    position=position,
                    item_ref=item.item_ref,
                    display_name=item.display_name,
                    quantity=item.quantity,
                    net_weight=item.net_weight,
                    gross_weight=item.gross_weight,
                    unit_price=item.unit_price,
                    packaging_cost=item.packaging_cost,
                ),
            )

    def _move_stock(self, payload: InvoiceUpdatePayload) -> List[StockAdjustment]:
        adjustments = calculate_stock_adjustments(payload.original_items, payload.items, profile_for(payload.kind))
        names = {item.item_ref: item.display_name for item in (*payload.original_items, *payload.items)}
        for adjustment in adjustments:
            self._apply_stock_adjustment(adjustment, names.get(adjustment.item_ref, ""))
        return adjustments

    def _apply_stock_adjustment(
        self,
        adjustment: StockAdjustment,
        display_name: str,
        *,
        floor_at_zero: bool = False,
    ) -> None:
        by_ref = _ensure_inventory_cache(self.context)["by_ref"]
        existing = by_ref.get(adjustment.item_ref)
        if existing is None:
            # Items first seen on a vendor invoice enter the inventory here.
            data_manager.append_inventory(
                self.context.workbook,
                data_manager.InventoryRow(
                    item_ref=adjustment.item_ref,
                    display_name=display_name,
                    quantity=adjustment.quantity,
                    net_weight=adjustment.net_weight,
                    gross_weight=adjustment.gross_weight,
                ),
            )
            log.info("Added inventory item '%s' from invoice commit", adjustment.item_ref)
            return

        updated = {
            "Quantity": existing.quantity + adjustment.quantity,
            "NetWeight": existing.net_weight + adjustment.net_weight,
            "GrossWeight": existing.gross_weight + adjustment.gross_weight,
        }
        if floor_at_zero:
            updated = {column: max(ZERO, value) for column, value in updated.items()}
        data_manager.update_row(
            self.context.workbook,
            data_manager.INVENTORY_SHEET,
            "ItemRef",
            adjustment.item_ref,
            field_values=updated,
        )
        log.debug(
            "Adjusted stock of '%s' by quantity=%s net=%s gross=%s",
            adjustment.item_ref,
            adjustment.quantity,
            adjustment.net_weight,
            adjustment.gross_weight,
        )


__all__ = [
    "RuntimeContext",
    "WorkbookGateway",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "generate_payment_id",
]
