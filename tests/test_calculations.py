"""Unit tests for the pure monetary calculations."""

from __future__ import annotations

from decimal import Decimal

import pytest

from invoice_engine import calculations
from invoice_engine.constants import PaymentStatus, RoundingPolicy
from invoice_engine.models import CUSTOMER_PROFILE, VENDOR_PROFILE, LineItem, StockAdjustment

from conftest import make_item


# ---------------------------------------------------------------------------
# Item totals
# ---------------------------------------------------------------------------


def test_item_total_prices_net_weight_and_packaging_per_unit():
    """25/kg over 20kg plus 2 units of packaging at 10 should total 520."""

    assert calculations.calculate_item_total(make_item()) == Decimal("520")


def test_item_total_is_not_rounded():
    item = make_item(quantity=1, net_weight=Decimal("0.333"), unit_price=Decimal("1"), packaging_cost=Decimal("0"))
    assert calculations.calculate_item_total(item) == Decimal("0.333")


def test_item_total_treats_malformed_fields_as_zero():
    """Non-numeric values should count as zero instead of raising."""

    item = LineItem(item_ref="X", quantity="lots", net_weight="n/a", unit_price=Decimal("5"), packaging_cost=None)
    assert calculations.calculate_item_total(item) == Decimal("0")


def test_item_total_tolerates_objects_without_fields():
    assert calculations.calculate_item_total(object()) == Decimal("0")


# ---------------------------------------------------------------------------
# Rounding and aggregation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("value", "policy", "expected"),
    [
        ("2.345", RoundingPolicy.TWO_DECIMAL, Decimal("2.35")),
        ("2.344", RoundingPolicy.TWO_DECIMAL, Decimal("2.34")),
        ("2.5", RoundingPolicy.WHOLE_UNIT, Decimal("3")),
        ("2.49", RoundingPolicy.WHOLE_UNIT, Decimal("2")),
    ],
)
def test_apply_rounding_rounds_half_up(value, policy, expected):
    assert calculations.apply_rounding(Decimal(value), policy) == expected


def test_apply_rounding_handles_amounts_beyond_default_precision():
    huge = Decimal("10000000000000000000000000000000000000000.005")

    rounded = calculations.apply_rounding(huge)

    assert rounded == Decimal("10000000000000000000000000000000000000000.01")
    assert calculations.apply_rounding(huge, RoundingPolicy.WHOLE_UNIT) == Decimal("1E+40")


def test_aggregate_invoice_does_not_raise_on_very_large_totals():
    item = make_item(quantity=1, net_weight=Decimal("1"), unit_price=Decimal("1E+30"), packaging_cost=Decimal("0"))

    aggregate = calculations.aggregate_invoice([item], Decimal("0"))

    assert aggregate.total_amount == Decimal("1E+30")
    assert aggregate.total_amount.as_tuple().exponent == -2


def test_aggregate_invoice_adds_ancillary_cost_to_subtotal():
    aggregate = calculations.aggregate_invoice([make_item()], Decimal("100"))

    assert aggregate.subtotal == Decimal("520.00")
    assert aggregate.total_amount == Decimal("620.00")


def test_aggregate_invoice_rounds_the_sum_not_each_item():
    """Three items of 0.005 sum to 0.015, which rounds once to 0.02."""

    items = [
        make_item(f"ITEM-{n}", quantity=1, net_weight=Decimal("1"), unit_price=Decimal("0.005"), packaging_cost=Decimal("0"))
        for n in range(3)
    ]

    aggregate = calculations.aggregate_invoice(items, Decimal("0"))

    assert aggregate.subtotal == Decimal("0.02")


def test_aggregate_invoice_of_no_items_is_ancillary_only():
    aggregate = calculations.aggregate_invoice([], Decimal("40"))

    assert aggregate.subtotal == Decimal("0")
    assert aggregate.total_amount == Decimal("40")


def test_aggregate_invoice_honours_whole_unit_policy():
    item = make_item(quantity=1, net_weight=Decimal("1"), unit_price=Decimal("10.5"), packaging_cost=Decimal("0"))

    aggregate = calculations.aggregate_invoice([item], Decimal("0"), RoundingPolicy.WHOLE_UNIT)

    assert aggregate.total_amount == Decimal("11")


# ---------------------------------------------------------------------------
# Payment state
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("total", "paid", "remaining", "status"),
    [
        ("1000", "400", "600", PaymentStatus.PARTIALLY_PAID),
        ("1000", "1000", "0", PaymentStatus.PAID),
        ("1000", "0", "1000", PaymentStatus.PENDING),
        ("1000", "1200", "0", PaymentStatus.PAID),
        ("0", "0", "0", PaymentStatus.PAID),
    ],
)
def test_derive_payment_state(total, paid, remaining, status):
    state = calculations.derive_payment_state(Decimal(total), Decimal(paid))

    assert state.remaining_amount == Decimal(remaining)
    assert state.payment_status is status


def test_payment_state_moves_back_when_paid_amount_drops():
    assert calculations.derive_payment_state(Decimal("500"), Decimal("500")).payment_status is PaymentStatus.PAID
    assert calculations.derive_payment_state(Decimal("500"), Decimal("0")).payment_status is PaymentStatus.PENDING


# ---------------------------------------------------------------------------
# Commission
# ---------------------------------------------------------------------------


def test_commission_on_customer_invoice_with_broker():
    commission = calculations.calculate_commission(
        Decimal("1000"), Decimal("10"), profile=CUSTOMER_PROFILE, broker_ref="BRK-1"
    )
    assert commission == Decimal("100.00")


def test_commission_is_zero_for_vendor_invoice():
    commission = calculations.calculate_commission(
        Decimal("1000"), Decimal("10"), profile=VENDOR_PROFILE, broker_ref="BRK-1"
    )
    assert commission == Decimal("0")


def test_commission_is_zero_without_broker():
    commission = calculations.calculate_commission(
        Decimal("1000"), Decimal("10"), profile=CUSTOMER_PROFILE, broker_ref=None
    )
    assert commission == Decimal("0")


def test_recompute_derives_every_field():
    totals = calculations.recompute(
        [make_item()],
        Decimal("480"),
        Decimal("400"),
        profile=CUSTOMER_PROFILE,
        broker_ref="BRK-1",
        commission_percentage=Decimal("10"),
    )

    assert totals.subtotal == Decimal("520.00")
    assert totals.total_amount == Decimal("1000.00")
    assert totals.remaining_amount == Decimal("600.00")
    assert totals.payment_status is PaymentStatus.PARTIALLY_PAID
    assert totals.commission_amount == Decimal("100.00")


def test_recompute_is_deterministic():
    items = [make_item(), make_item("ITEM-B", unit_price=Decimal("3.333"))]
    first = calculations.recompute(items, Decimal("1"), Decimal("0"), profile=CUSTOMER_PROFILE)
    second = calculations.recompute(items, Decimal("1"), Decimal("0"), profile=CUSTOMER_PROFILE)
    assert first == second


def test_recompute_invoice_uses_stored_inputs(customer_invoice):
    totals = calculations.recompute_invoice(customer_invoice)

    assert totals.total_amount == Decimal("520.00")
    assert totals.payment_status is PaymentStatus.PENDING


# ---------------------------------------------------------------------------
# Stock adjustments
# ---------------------------------------------------------------------------


def test_customer_increase_takes_stock_out():
    original = [make_item(quantity=2, net_weight=Decimal("20"), gross_weight=Decimal("22"))]
    edited = [make_item(quantity=4, net_weight=Decimal("30"), gross_weight=Decimal("33"))]

    adjustments = calculations.calculate_stock_adjustments(original, edited, CUSTOMER_PROFILE)

    assert adjustments == [
        StockAdjustment("ITEM-A", quantity=Decimal("-2"), net_weight=Decimal("-10"), gross_weight=Decimal("-11"))
    ]


def test_customer_removed_row_returns_stock():
    original = [make_item(), make_item("ITEM-B", quantity=1, net_weight=Decimal("5"), gross_weight=Decimal("6"))]
    edited = [make_item()]

    adjustments = calculations.calculate_stock_adjustments(original, edited, CUSTOMER_PROFILE)

    assert adjustments == [
        StockAdjustment("ITEM-B", quantity=Decimal("1"), net_weight=Decimal("5"), gross_weight=Decimal("6"))
    ]


def test_vendor_new_item_adds_stock():
    edited = [make_item("ITEM-N", quantity=3, net_weight=Decimal("9"), gross_weight=Decimal("10"))]

    adjustments = calculations.calculate_stock_adjustments([], edited, VENDOR_PROFILE)

    assert adjustments == [
        StockAdjustment("ITEM-N", quantity=Decimal("3"), net_weight=Decimal("9"), gross_weight=Decimal("10"))
    ]


def test_price_only_edits_produce_no_adjustment():
    original = [make_item()]
    edited = [make_item(unit_price=Decimal("99"))]

    assert calculations.calculate_stock_adjustments(original, edited, CUSTOMER_PROFILE) == []
