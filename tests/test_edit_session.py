"""Unit tests for the invoice edit session with mocked collaborators."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from invoice_engine.constants import InvoiceKind, PaymentStatus, SessionState
from invoice_engine.edit_session import InvoiceEditSession, open_edit_session, open_new_invoice_session
from invoice_engine.exceptions import (
    BusinessRuleViolation,
    FieldValidationError,
    InvoiceValidationError,
    SessionClosedError,
)
from invoice_engine.models import Invoice
from invoice_engine.validation import ITEM_NOT_IN_INVENTORY

from conftest import make_item


@pytest.fixture
def session(customer_invoice, inventory_source) -> InvoiceEditSession:
    return open_edit_session(customer_invoice, inventory_source)


@pytest.fixture
def two_row_session(availability, inventory_source) -> InvoiceEditSession:
    invoice = Invoice(
        invoice_id="INV-C2",
        kind=InvoiceKind.CUSTOMER,
        items=(make_item(), make_item("ITEM-B", display_name="Bananas")),
    )
    return open_edit_session(invoice, inventory_source)


# ---------------------------------------------------------------------------
# Opening a session
# ---------------------------------------------------------------------------


def test_customer_session_snapshots_inventory_once(customer_invoice, inventory_source):
    session = open_edit_session(customer_invoice, inventory_source, item_refs={"ITEM-B"})

    inventory_source.fetch_inventory_availability.assert_called_once_with(frozenset({"ITEM-A", "ITEM-B"}))
    assert set(session.availability) == {"ITEM-A", "ITEM-B"}
    assert session.state is SessionState.OPEN


def test_vendor_session_never_consults_inventory(vendor_invoice, inventory_source):
    session = open_edit_session(vendor_invoice, inventory_source)

    inventory_source.fetch_inventory_availability.assert_not_called()
    assert dict(session.availability) == {}


def test_vendor_session_accepts_missing_inventory_source(vendor_invoice):
    assert open_edit_session(vendor_invoice, None).is_open


def test_customer_session_requires_inventory_source(customer_invoice):
    with pytest.raises(BusinessRuleViolation):
        open_edit_session(customer_invoice, None)


def test_inventory_fetch_failure_propagates(customer_invoice, inventory_source):
    inventory_source.fetch_inventory_availability.side_effect = ConnectionError("store offline")

    with pytest.raises(ConnectionError):
        open_edit_session(customer_invoice, inventory_source)


# ---------------------------------------------------------------------------
# New invoices
# ---------------------------------------------------------------------------


def test_new_invoice_session_starts_empty(inventory_source):
    session = open_new_invoice_session("000001", "customer", inventory_source, item_refs={"ITEM-A"})

    assert session.is_new
    assert session.original_items == ()
    assert session.working_items == []
    inventory_source.fetch_inventory_availability.assert_called_once_with(frozenset({"ITEM-A"}))


def test_new_invoice_rows_are_measured_from_zero(inventory_source):
    session = open_new_invoice_session("000001", InvoiceKind.CUSTOMER, inventory_source, item_refs={"ITEM-A"})

    session.add_item(make_item(quantity=6))

    assert session.item_errors == {0: "Cannot increase quantity by 6 (available: 5)"}


def test_new_invoice_commit_creates_instead_of_updating(inventory_source, committer):
    session = open_new_invoice_session("000001", InvoiceKind.CUSTOMER, inventory_source, item_refs={"ITEM-A"})
    session.add_item(make_item())

    payload = session.commit(committer)

    committer.create_invoice.assert_called_once_with(payload)
    committer.commit_invoice_update.assert_not_called()
    assert payload.original_items == ()
    assert payload.total_amount == Decimal("520.00")
    assert session.state is SessionState.COMMITTED


def test_new_invoice_without_items_cannot_be_committed(committer):
    session = open_new_invoice_session("V-00001", InvoiceKind.VENDOR, None)

    with pytest.raises(InvoiceValidationError):
        session.commit(committer)
    committer.create_invoice.assert_not_called()


@pytest.mark.parametrize("invoice_id", ["", "   "])
def test_new_invoice_requires_an_id(invoice_id, inventory_source):
    with pytest.raises(FieldValidationError):
        open_new_invoice_session(invoice_id, InvoiceKind.CUSTOMER, inventory_source)


# ---------------------------------------------------------------------------
# Editing fields
# ---------------------------------------------------------------------------


def test_quantity_increase_within_stock_leaves_no_error(session):
    totals = session.edit_field(0, "quantity", 6)

    assert session.item_errors == {}
    assert totals.total_amount == Decimal("560.00")


def test_quantity_increase_beyond_stock_records_error_and_blocks_commit(session, committer):
    session.edit_field(0, "quantity", 12)

    assert session.item_errors == {0: "Cannot increase quantity by 10 (available: 5)"}
    with pytest.raises(InvoiceValidationError) as excinfo:
        session.commit(committer)

    assert excinfo.value.errors[:2] == (
        "Some items exceed available inventory quantities",
        "Item 1: Cannot increase quantity by 10 (available: 5)",
    )
    committer.commit_invoice_update.assert_not_called()
    assert session.is_open


def test_negative_gross_weight_blocks_commit(session, committer):
    session.edit_field(0, "gross_weight", "-5")

    assert session.item_errors == {}
    with pytest.raises(InvoiceValidationError) as excinfo:
        session.commit(committer)

    assert excinfo.value.errors == ("Item 1 must not have a negative gross weight",)
    committer.commit_invoice_update.assert_not_called()
    assert session.is_open


def test_reverting_an_overdraw_clears_the_error(session):
    session.edit_field(0, "quantity", 12)
    session.edit_field(0, "quantity", 2)

    assert session.item_errors == {}


def test_fixing_one_field_keeps_error_from_another(session):
    """Each edit re-checks the whole row, so a remaining overdraw survives."""

    session.edit_field(0, "quantity", 12)
    session.edit_field(0, "net_weight", 100)
    session.edit_field(0, "quantity", 2)

    assert session.item_errors == {0: "Cannot increase net weight by 80kg (available: 50kg)"}


def test_price_edit_does_not_touch_inventory_errors(session):
    session.edit_field(0, "quantity", 12)
    session.edit_field(0, "unit_price", "30")

    assert 0 in session.item_errors


def test_non_numeric_input_becomes_zero(session):
    totals = session.edit_field(0, "unit_price", "abc")

    assert session.working_items[0].unit_price == Decimal("0")
    assert totals.subtotal == Decimal("20.00")
    assert "Item 1 must have a selling price greater than zero" in session.validation_errors()


def test_item_ref_cannot_be_edited(session):
    with pytest.raises(BusinessRuleViolation):
        session.edit_field(0, "item_ref", "ITEM-B")


def test_unknown_field_is_rejected(session):
    with pytest.raises(FieldValidationError):
        session.edit_field(0, "colour", "red")


def test_out_of_range_row_raises_index_error(session):
    with pytest.raises(IndexError):
        session.edit_field(3, "quantity", 1)


def test_original_items_are_never_mutated(session, customer_invoice):
    session.edit_field(0, "quantity", 4)
    session.remove_item(0)

    assert session.original_items == customer_invoice.items


# ---------------------------------------------------------------------------
# Adding and removing rows
# ---------------------------------------------------------------------------


def test_add_new_item_appends_row(customer_invoice, inventory_source):
    session = open_edit_session(customer_invoice, inventory_source, item_refs={"ITEM-B"})

    index = session.add_item(make_item("ITEM-B", quantity=3))

    assert index == 1
    assert [item.item_ref for item in session.working_items] == ["ITEM-A", "ITEM-B"]
    assert session.item_errors == {}


def test_add_existing_item_merges_quantity_and_net_weight(session):
    index = session.add_item(make_item(quantity=1, net_weight=Decimal("5"), unit_price=Decimal("99")))

    merged = session.working_items[index]
    assert index == 0
    assert len(session.working_items) == 1
    assert merged.quantity == 3
    assert merged.net_weight == Decimal("25")
    assert merged.unit_price == Decimal("25")


def test_merge_beyond_stock_is_flagged(session):
    session.add_item(make_item(quantity=4, net_weight=Decimal("1")))

    assert session.item_errors == {}
    session.add_item(make_item(quantity=2, net_weight=Decimal("1")))
    assert session.item_errors == {0: "Cannot increase quantity by 6 (available: 5)"}


def test_add_item_outside_snapshot_is_flagged(session):
    index = session.add_item(make_item("ITEM-Z", quantity=1))

    assert session.item_errors == {index: ITEM_NOT_IN_INVENTORY}


@pytest.mark.parametrize("quantity", [0, -2])
def test_add_item_requires_positive_quantity(session, quantity):
    with pytest.raises(FieldValidationError):
        session.add_item(make_item("ITEM-B", quantity=quantity))
    assert len(session.working_items) == 1


def test_add_item_requires_item_ref(session):
    with pytest.raises(FieldValidationError):
        session.add_item(make_item(""))


def test_remove_item_shifts_later_errors_down(two_row_session):
    two_row_session.edit_field(1, "quantity", 30)
    assert set(two_row_session.item_errors) == {1}

    removed = two_row_session.remove_item(0)

    assert removed.item_ref == "ITEM-A"
    assert two_row_session.item_errors == {0: "Cannot increase quantity by 28 (available: 10)"}


def test_remove_item_drops_its_own_error(two_row_session):
    two_row_session.edit_field(0, "quantity", 30)

    two_row_session.remove_item(0)

    assert two_row_session.item_errors == {}


def test_remove_every_row_blocks_commit(session, committer):
    session.remove_item(0)

    with pytest.raises(InvoiceValidationError) as excinfo:
        session.commit(committer)
    assert excinfo.value.errors == ("At least one item is required",)


# ---------------------------------------------------------------------------
# Invoice-level edits
# ---------------------------------------------------------------------------


def test_paid_amount_drives_payment_status(session):
    session.set_ancillary_cost("480")

    partially = session.set_paid_amount("400")
    assert partially.remaining_amount == Decimal("600.00")
    assert partially.payment_status is PaymentStatus.PARTIALLY_PAID

    paid = session.set_paid_amount("1000")
    assert paid.remaining_amount == Decimal("0")
    assert paid.payment_status is PaymentStatus.PAID

    pending = session.set_paid_amount("0")
    assert pending.payment_status is PaymentStatus.PENDING


def test_negative_ancillary_cost_is_rejected(session):
    with pytest.raises(FieldValidationError):
        session.set_ancillary_cost("-5")


def test_attach_broker_derives_commission(session):
    session.set_ancillary_cost("480")

    totals = session.attach_broker("BRK-1", "10")

    assert totals.commission_amount == Decimal("100.00")


def test_detach_broker_zeroes_commission(session):
    session.attach_broker("BRK-1", "10")

    assert session.detach_broker().commission_amount == Decimal("0")


def test_vendor_sessions_reject_commission(vendor_invoice):
    session = open_edit_session(vendor_invoice, None)

    with pytest.raises(BusinessRuleViolation):
        session.attach_broker("BRK-1", "10")
    with pytest.raises(BusinessRuleViolation):
        session.set_commission_percentage("10")
    assert session.totals.commission_amount == Decimal("0")


def test_vendor_session_ignores_stock(vendor_invoice):
    session = open_edit_session(vendor_invoice, None)

    session.edit_field(0, "quantity", 500)

    assert session.item_errors == {}


def test_vendor_session_drops_stored_broker_fields(vendor_invoice):
    invoice = replace(vendor_invoice, broker_ref="BRK-1", commission_percentage=Decimal("10"))

    session = open_edit_session(invoice, None)

    assert session.broker_ref is None
    assert session.totals.commission_amount == Decimal("0")


# ---------------------------------------------------------------------------
# Commit and cancel
# ---------------------------------------------------------------------------


def test_commit_hands_payload_to_committer_and_closes(session, committer):
    payload = session.commit(committer)

    committer.commit_invoice_update.assert_called_once_with(payload)
    assert session.state is SessionState.COMMITTED
    assert payload.total_amount == Decimal("520.00")
    assert payload.remaining_amount == Decimal("520.00")
    assert payload.payment_status is PaymentStatus.PENDING
    assert payload.original_items == session.original_items


def test_build_payload_is_repeatable(session):
    session.edit_field(0, "quantity", 4)

    assert session.build_payload() == session.build_payload()


def test_vendor_payload_has_no_commission_fields(vendor_invoice, committer):
    payload = open_edit_session(vendor_invoice, None).commit(committer)

    assert payload.commission_amount is None
    assert payload.commission_percentage is None
    assert payload.broker_ref is None
    assert "commissionAmount" not in payload.to_record()
    assert "labourTransportCost" in payload.to_record()


def test_customer_payload_record_uses_customer_field_names(session):
    record = session.build_payload().to_record()

    assert "laborTransportCost" in record
    assert record["items"][0]["sellingPrice"] == Decimal("25")
    assert "commissionAmount" in record


def test_failed_commit_leaves_session_open_for_retry(session, committer):
    committer.commit_invoice_update.side_effect = [RuntimeError("disk full"), None]

    with pytest.raises(RuntimeError):
        session.commit(committer)
    assert session.is_open

    payload = session.commit(committer)
    assert session.state is SessionState.COMMITTED
    assert committer.commit_invoice_update.call_count == 2
    assert committer.commit_invoice_update.call_args_list[0].args[0] == payload


def test_committed_session_rejects_further_edits(session, committer):
    session.commit(committer)

    with pytest.raises(SessionClosedError):
        session.edit_field(0, "quantity", 3)
    with pytest.raises(SessionClosedError):
        session.commit(committer)


def test_cancel_discards_working_copy(session, committer, customer_invoice):
    session.edit_field(0, "quantity", 12)

    session.cancel()

    assert session.state is SessionState.CANCELLED
    assert session.working_items == []
    assert session.item_errors == {}
    assert customer_invoice.items[0].quantity == 2
    committer.commit_invoice_update.assert_not_called()
    with pytest.raises(SessionClosedError):
        session.cancel()
