"""Pure monetary calculations for invoices.

Every function in this module is deterministic and free of side effects. The
edit session calls :func:`recompute` after each mutation instead of patching
derived fields, so totals can never drift away from the inputs they are
derived from.

Rounding happens at a single boundary: :func:`aggregate_invoice` rounds the
subtotal and total according to the configured :class:`RoundingPolicy`, and
commission amounts are rounded with the same policy. Item totals stay exact so
that summing many rows does not accumulate rounding error.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Any, Dict, Iterable, List, Optional

from . import log
from .constants import INVENTORY_FIELDS, PaymentStatus, RoundingPolicy
from .models import (
    ZERO,
    DerivedTotals,
    Invoice,
    InvoiceProfile,
    LineItem,
    StockAdjustment,
    coerce_decimal,
)

HUNDRED = Decimal("100")

_QUANTUM = {
    RoundingPolicy.WHOLE_UNIT: Decimal("1"),
    RoundingPolicy.TWO_DECIMAL: Decimal("0.01"),
}


@dataclass(frozen=True)
class InvoiceAggregate:
    """Rounded subtotal and total for a set of items plus ancillary cost."""

    subtotal: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class PaymentState:
    """Remaining balance and status derived from total versus paid amount."""

    remaining_amount: Decimal
    payment_status: PaymentStatus


def apply_rounding(value: Any, policy: RoundingPolicy = RoundingPolicy.TWO_DECIMAL) -> Decimal:
    """Round a monetary value half-up to the unit implied by ``policy``.

    The quantize step runs with enough precision for the integer digits of
    ``value``, so very large amounts round instead of raising
    :class:`decimal.InvalidOperation`.

    Args:
        value (Any): Amount to round; non-numeric input counts as zero.
        policy (RoundingPolicy): Whole units or two decimal places.

    Returns:
        Decimal: Quantized amount.
    """

    amount = coerce_decimal(value)
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, amount.adjusted() + 3)
        return amount.quantize(_QUANTUM[RoundingPolicy(policy)], rounding=ROUND_HALF_UP)


def calculate_item_total(item: LineItem) -> Decimal:
    """Return the exact, unrounded monetary total of one line item.

    The price is charged per kilogram of net weight and packaging is charged
    per unit of quantity::

        unit_price * net_weight + quantity * packaging_cost

    Fields that are missing or not numeric count as zero; the function never
    raises for malformed values.

    Args:
        item (LineItem): Line item to price.

    Returns:
        Decimal: Unrounded line total.
    """

    unit_price = coerce_decimal(getattr(item, "unit_price", None))
    net_weight = coerce_decimal(getattr(item, "net_weight", None))
    quantity = coerce_decimal(getattr(item, "quantity", None))
    packaging_cost = coerce_decimal(getattr(item, "packaging_cost", None))
    return unit_price * net_weight + quantity * packaging_cost


def aggregate_invoice(
    items: Iterable[LineItem],
    ancillary_cost: Any,
    rounding: RoundingPolicy = RoundingPolicy.TWO_DECIMAL,
) -> InvoiceAggregate:
    """Sum item totals and ancillary cost into a rounded subtotal and total.

    Args:
        items (Iterable[LineItem]): Line items on the invoice.
        ancillary_cost (Any): Combined labour and transport charge.
        rounding (RoundingPolicy): Policy applied to both outputs.

    Returns:
        InvoiceAggregate: ``subtotal`` and ``total_amount`` where the total is
            the exact subtotal plus ancillary cost, rounded once.
    """

    exact_subtotal = sum((calculate_item_total(item) for item in items), ZERO)
    exact_total = exact_subtotal + coerce_decimal(ancillary_cost)
    return InvoiceAggregate(
        subtotal=apply_rounding(exact_subtotal, rounding),
        total_amount=apply_rounding(exact_total, rounding),
    )


def derive_payment_state(total_amount: Any, paid_amount: Any) -> PaymentState:
    """Derive the remaining balance and payment status.

    ``paid`` once the paid amount covers the total, ``partially_paid`` when
    something but not everything was paid, ``pending`` otherwise. The mapping
    is stateless, so lowering the paid amount moves the status back.

    Args:
        total_amount (Any): Invoice total (or commission amount for brokers).
        paid_amount (Any): Amount settled so far.

    Returns:
        PaymentState: Remaining amount (never negative) and status.
    """

    total = coerce_decimal(total_amount)
    paid = coerce_decimal(paid_amount)
    remaining = max(ZERO, total - paid)
    if paid >= total:
        status = PaymentStatus.PAID
    elif paid > ZERO:
        status = PaymentStatus.PARTIALLY_PAID
    else:
        status = PaymentStatus.PENDING
    return PaymentState(remaining_amount=remaining, payment_status=status)


def calculate_commission(
    total_amount: Any,
    commission_percentage: Any,
    *,
    profile: InvoiceProfile,
    broker_ref: Optional[str],
    rounding: RoundingPolicy = RoundingPolicy.TWO_DECIMAL,
) -> Decimal:
    """Return the broker commission owed on an invoice.

    Only customer invoices with an attached broker earn commission; every other
    case yields zero regardless of the percentage supplied. The commission is
    taken from the full total, ancillary cost included.

    Args:
        total_amount (Any): Invoice total after ancillary cost.
        commission_percentage (Any): Percentage between 0 and 100.
        profile (InvoiceProfile): Profile of the invoice kind.
        broker_ref (str | None): Attached broker, if any.
        rounding (RoundingPolicy): Policy applied to the result.

    Returns:
        Decimal: Rounded commission amount.
    """

    if not profile.tracks_commission or not broker_ref:
        return apply_rounding(ZERO, rounding)
    amount = coerce_decimal(total_amount) * coerce_decimal(commission_percentage) / HUNDRED
    return apply_rounding(amount, rounding)


def recompute(
    items: Iterable[LineItem],
    ancillary_cost: Any,
    paid_amount: Any,
    *,
    profile: InvoiceProfile,
    broker_ref: Optional[str] = None,
    commission_percentage: Any = ZERO,
    rounding: RoundingPolicy = RoundingPolicy.TWO_DECIMAL,
) -> DerivedTotals:
    """Derive every monetary field of an invoice from its inputs.

    Args:
        items (Iterable[LineItem]): Current line items.
        ancillary_cost (Any): Labour and transport charge.
        paid_amount (Any): Amount already settled.
        profile (InvoiceProfile): Profile of the invoice kind.
        broker_ref (str | None): Attached broker for customer invoices.
        commission_percentage (Any): Broker commission percentage.
        rounding (RoundingPolicy): Monetary rounding policy.

    Returns:
        DerivedTotals: Subtotal, total, remaining amount, payment status and
            commission amount.
    """

    aggregate = aggregate_invoice(items, ancillary_cost, rounding)
    payment = derive_payment_state(aggregate.total_amount, paid_amount)
    commission = calculate_commission(
        aggregate.total_amount,
        commission_percentage,
        profile=profile,
        broker_ref=broker_ref,
        rounding=rounding,
    )
    log.debug(
        "Recomputed totals: subtotal=%s total=%s remaining=%s status=%s commission=%s",
        aggregate.subtotal,
        aggregate.total_amount,
        payment.remaining_amount,
        payment.payment_status.value,
        commission,
    )
    return DerivedTotals(
        subtotal=aggregate.subtotal,
        total_amount=aggregate.total_amount,
        remaining_amount=payment.remaining_amount,
        payment_status=payment.payment_status,
        commission_amount=commission,
    )


def recompute_invoice(invoice: Invoice, rounding: RoundingPolicy = RoundingPolicy.TWO_DECIMAL) -> DerivedTotals:
    """Shortcut for :func:`recompute` over a stored :class:`Invoice`."""

    return recompute(
        invoice.items,
        invoice.ancillary_cost,
        invoice.paid_amount,
        profile=invoice.profile,
        broker_ref=invoice.broker_ref,
        commission_percentage=invoice.commission_percentage,
        rounding=rounding,
    )


def _sum_by_ref(items: Iterable[LineItem]) -> Dict[str, Dict[str, Decimal]]:
    totals: Dict[str, Dict[str, Decimal]] = {}
    for item in items:
        bucket = totals.setdefault(item.item_ref, {name: ZERO for name in INVENTORY_FIELDS})
        for name in INVENTORY_FIELDS:
            bucket[name] += coerce_decimal(getattr(item, name))
    return totals


def calculate_stock_adjustments(
    original_items: Iterable[LineItem],
    items: Iterable[LineItem],
    profile: InvoiceProfile,
) -> List[StockAdjustment]:
    """Compute the stock movements implied by committing an edited invoice.

    For each item the change between the original and the committed rows is
    multiplied by :attr:`InvoiceProfile.stock_direction`: a customer invoice
    that sells more takes stock out, one that sells less (or drops a row)
    returns it; vendor invoices move stock the other way. Items whose quantity
    and weights did not change are omitted.

    Args:
        original_items (Iterable[LineItem]): Items as they were when the edit
            started.
        items (Iterable[LineItem]): Items being committed.
        profile (InvoiceProfile): Profile of the invoice kind.

    Returns:
        list[StockAdjustment]: Signed adjustments, originals first then newly
            added items, in row order.
    """

    before = _sum_by_ref(original_items)
    after = _sum_by_ref(items)
    direction = Decimal(profile.stock_direction)
    empty = {name: ZERO for name in INVENTORY_FIELDS}

    adjustments: List[StockAdjustment] = []
    for item_ref in [*before, *(ref for ref in after if ref not in before)]:
        old = before.get(item_ref, empty)
        new = after.get(item_ref, empty)
        adjustment = StockAdjustment(
            item_ref=item_ref,
            **{name: direction * (new[name] - old[name]) for name in INVENTORY_FIELDS},
        )
        if not adjustment.is_noop:
            adjustments.append(adjustment)
    return adjustments


__all__ = [
    "InvoiceAggregate",
    "PaymentState",
    "apply_rounding",
    "calculate_item_total",
    "aggregate_invoice",
    "derive_payment_state",
    "calculate_commission",
    "recompute",
    "recompute_invoice",
    "calculate_stock_adjustments",
]
