"""Edit session orchestrating changes to an invoice's line items.

A session owns a working copy of an invoice's items together with the
baseline snapshot taken when it opened. Every mutation re-derives totals
through :func:`invoice_engine.calculations.recompute` and, for customer
invoices, re-checks the touched row against the inventory snapshot. Nothing
is persisted until :meth:`InvoiceEditSession.commit` hands a validated payload
to the persistence collaborator.

Session lifecycle::

    OPEN --commit()--> COMMITTED
    OPEN --cancel()--> CANCELLED

Both end states are terminal. A session opened with
:func:`open_new_invoice_session` starts from an empty invoice and its commit
inserts the invoice instead of updating it.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from types import MappingProxyType
from typing import AbstractSet, Any, Dict, List, Mapping, Optional, Tuple

from . import log
from .calculations import recompute
from .collaborators import InventorySource, InvoiceCommitter
from .constants import EDITABLE_FIELDS, INVENTORY_FIELDS, InvoiceKind, RoundingPolicy, SessionState
from .exceptions import (
    BusinessRuleViolation,
    FieldValidationError,
    InvoiceValidationError,
    SessionClosedError,
)
from .models import (
    ZERO,
    DerivedTotals,
    Invoice,
    InvoiceUpdatePayload,
    LineItem,
    StockLevel,
    coerce_decimal,
    coerce_quantity,
)
from .validation import (
    require_nonnegative_money,
    require_percentage,
    require_positive_quantity,
    validate_item_against_inventory,
    validate_line_items,
)


class InvoiceEditSession:
    """Working state for one in-progress invoice edit.

    Attributes:
        invoice_id (str): Identifier of the invoice being edited.
        profile (InvoiceProfile): Customer or vendor behavior.
        original_items (tuple[LineItem, ...]): Baseline for delta validation;
            never mutated.
        working_items (list[LineItem]): Rows as currently edited.
        item_errors (dict[int, str]): Inventory problems keyed by row index.
        availability (Mapping[str, StockLevel]): Stock snapshot taken at open.
        is_new (bool): Whether committing inserts a new invoice instead of
            updating a stored one.
        state (SessionState): Lifecycle state.
    """

    def __init__(
        self,
        invoice: Invoice,
        availability: Mapping[str, StockLevel],
        *,
        rounding: RoundingPolicy = RoundingPolicy.TWO_DECIMAL,
        is_new: bool = False,
    ) -> None:
        self.invoice_id = invoice.invoice_id
        self.profile = invoice.profile
        self.rounding = RoundingPolicy(rounding)
        self.original_items: Tuple[LineItem, ...] = tuple(invoice.items)
        self.working_items: List[LineItem] = list(invoice.items)
        self.item_errors: Dict[int, str] = {}
        self.availability: Mapping[str, StockLevel] = MappingProxyType(dict(availability))
        self.ancillary_cost: Decimal = coerce_decimal(invoice.ancillary_cost)
        self.paid_amount: Decimal = coerce_decimal(invoice.paid_amount)
        if self.profile.tracks_commission:
            self.broker_ref: Optional[str] = invoice.broker_ref
            self.commission_percentage: Decimal = coerce_decimal(invoice.commission_percentage)
        else:
            self.broker_ref = None
            self.commission_percentage = ZERO
        self.is_new = is_new
        self.state = SessionState.OPEN

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    @property
    def totals(self) -> DerivedTotals:
        """Derived monetary fields for the current working copy."""

        return recompute(
            self.working_items,
            self.ancillary_cost,
            self.paid_amount,
            profile=self.profile,
            broker_ref=self.broker_ref,
            commission_percentage=self.commission_percentage,
            rounding=self.rounding,
        )

    # ------------------------------------------------------------------
    # Item edits
    # ------------------------------------------------------------------

    def add_item(self, candidate: LineItem) -> int:
        """Add a row, merging into an existing row for the same item.

        A candidate whose ``item_ref`` is already on the invoice increments
        that row's quantity and net weight instead of creating a duplicate.
        The affected row is then re-checked against inventory.

        Args:
            candidate (LineItem): Item to add; quantity must be positive.

        Returns:
            int: Index of the row that was appended or merged into.

        Raises:
            FieldValidationError: If the quantity is not positive or the item
                reference is blank.
            SessionClosedError: If the session is no longer open.
        """

        self._require_open()
        if not candidate.item_ref:
            log.error("Rejected line item without an item reference")
            raise FieldValidationError("Item reference is required")
        require_positive_quantity(candidate.quantity)

        index = self._index_of(candidate.item_ref)
        if index is None:
            self.working_items.append(candidate)
            index = len(self.working_items) - 1
            log.info("Added item '%s' to invoice '%s' at row %d", candidate.item_ref, self.invoice_id, index)
        else:
            existing = self.working_items[index]
            self.working_items[index] = replace(
                existing,
                quantity=coerce_quantity(existing.quantity) + coerce_quantity(candidate.quantity),
                net_weight=coerce_decimal(existing.net_weight) + coerce_decimal(candidate.net_weight),
            )
            log.info("Merged item '%s' into row %d of invoice '%s'", candidate.item_ref, index, self.invoice_id)

        self._revalidate_row(index)
        return index

    def remove_item(self, index: int) -> LineItem:
        """Remove a row and drop its inventory error.

        Errors recorded for later rows move down with their rows; no other
        row is re-validated.

        Returns:
            LineItem: The removed row.

        Raises:
            IndexError: If ``index`` does not address a row.
            SessionClosedError: If the session is no longer open.
        """

        self._require_open()
        self._check_index(index)
        removed = self.working_items.pop(index)
        self.item_errors = {
            (row if row < index else row - 1): message
            for row, message in self.item_errors.items()
            if row != index
        }
        log.info("Removed item '%s' (row %d) from invoice '%s'", removed.item_ref, index, self.invoice_id)
        return removed

    def edit_field(self, index: int, field_name: str, value: Any) -> DerivedTotals:
        """Apply a new value to one field of one row.

        Numeric fields are coerced, with non-numeric input becoming zero. For
        customer invoices a change to quantity or a weight re-checks that row
        against inventory; the outcome replaces whatever error the row had.

        Args:
            index (int): Row to edit.
            field_name (str): One of :data:`EDITABLE_FIELDS`.
            value (Any): New value.

        Returns:
            DerivedTotals: Totals after the edit.

        Raises:
            BusinessRuleViolation: If ``field_name`` is ``item_ref``.
            FieldValidationError: If ``field_name`` is not editable.
            IndexError: If ``index`` does not address a row.
            SessionClosedError: If the session is no longer open.
        """

        self._require_open()
        self._check_index(index)
        if field_name == "item_ref":
            log.warning("Attempted to change the item reference of row %d", index)
            raise BusinessRuleViolation("The item reference of a line item cannot be changed")
        if field_name not in EDITABLE_FIELDS:
            log.error("Unknown line item field: %s", field_name)
            raise FieldValidationError(f"Unknown line item field: {field_name}")

        if field_name == "display_name":
            coerced: Any = "" if value is None else str(value)
        elif field_name == "quantity":
            coerced = coerce_quantity(value)
        else:
            coerced = coerce_decimal(value)

        self.working_items[index] = replace(self.working_items[index], **{field_name: coerced})
        if field_name in INVENTORY_FIELDS:
            self._revalidate_row(index)
        return self.totals

    # ------------------------------------------------------------------
    # Invoice-level edits
    # ------------------------------------------------------------------

    def set_ancillary_cost(self, value: Any) -> DerivedTotals:
        """Replace the combined labour and transport charge."""

        self._require_open()
        self.ancillary_cost = require_nonnegative_money(value, label="Ancillary cost")
        return self.totals

    def set_paid_amount(self, value: Any) -> DerivedTotals:
        """Overwrite the paid amount, e.g. when reverting a payment."""

        self._require_open()
        self.paid_amount = require_nonnegative_money(value, label="Paid amount")
        return self.totals

    def set_commission_percentage(self, value: Any) -> DerivedTotals:
        """Change the broker commission percentage of a customer invoice.

        Raises:
            BusinessRuleViolation: For vendor invoices.
            FieldValidationError: If the percentage is outside 0-100.
        """

        self._require_open()
        self._require_commission()
        self.commission_percentage = require_percentage(value)
        return self.totals

    def attach_broker(self, broker_ref: str, commission_percentage: Any = None) -> DerivedTotals:
        """Attach a broker to a customer invoice, optionally with a percentage."""

        self._require_open()
        self._require_commission()
        if not broker_ref:
            raise FieldValidationError("Broker reference is required")
        if commission_percentage is not None:
            self.commission_percentage = require_percentage(commission_percentage)
        self.broker_ref = broker_ref
        log.info("Attached broker '%s' to invoice '%s'", broker_ref, self.invoice_id)
        return self.totals

    def detach_broker(self) -> DerivedTotals:
        """Remove the broker, zeroing the commission."""

        self._require_open()
        self.broker_ref = None
        self.commission_percentage = ZERO
        return self.totals

    # ------------------------------------------------------------------
    # Commit / cancel
    # ------------------------------------------------------------------

    def validation_errors(self) -> List[str]:
        """List every problem that currently blocks a commit."""

        errors: List[str] = []
        if not self.working_items:
            errors.append("At least one item is required")
        if self.item_errors:
            errors.append("Some items exceed available inventory quantities")
            errors.extend(
                f"Item {row + 1}: {message}" for row, message in sorted(self.item_errors.items())
            )
        errors.extend(validate_line_items(self.working_items, self.profile))
        return errors

    def build_payload(self) -> InvoiceUpdatePayload:
        """Validate the working copy and render the commit payload.

        Calling this repeatedly without intervening edits yields equal
        payloads.

        Raises:
            InvoiceValidationError: If :meth:`validation_errors` is not empty.
            SessionClosedError: If the session is no longer open.
        """

        self._require_open()
        errors = self.validation_errors()
        if errors:
            log.error("Refusing to commit invoice '%s': %s", self.invoice_id, "; ".join(errors))
            raise InvoiceValidationError(errors)

        totals = self.totals
        tracks_commission = self.profile.tracks_commission
        return InvoiceUpdatePayload(
            invoice_id=self.invoice_id,
            kind=self.profile.kind,
            items=tuple(self.working_items),
            original_items=self.original_items,
            subtotal=totals.subtotal,
            ancillary_cost=self.ancillary_cost,
            total_amount=totals.total_amount,
            paid_amount=self.paid_amount,
            remaining_amount=totals.remaining_amount,
            payment_status=totals.payment_status,
            commission_amount=totals.commission_amount if tracks_commission else None,
            commission_percentage=self.commission_percentage if tracks_commission else None,
            broker_ref=self.broker_ref if tracks_commission else None,
        )

    def commit(self, committer: InvoiceCommitter) -> InvoiceUpdatePayload:
        """Validate, hand the payload to ``committer``, and close the session.

        New invoices go to :meth:`InvoiceCommitter.create_invoice`, stored ones
        to :meth:`InvoiceCommitter.commit_invoice_update`. Collaborator failures
        propagate unchanged and leave the session open so the operator can
        retry or cancel.

        Raises:
            InvoiceValidationError: If the edit is not valid; the committer is
                not called.
            SessionClosedError: If the session is no longer open.
        """

        payload = self.build_payload()
        try:
            if self.is_new:
                committer.create_invoice(payload)
            else:
                committer.commit_invoice_update(payload)
        except Exception:
            log.error("Commit of invoice '%s' failed; session left open", self.invoice_id)
            raise
        self.state = SessionState.COMMITTED
        log.info(
            "Committed invoice '%s' (items=%d, total=%s, status=%s)",
            self.invoice_id,
            len(payload.items),
            payload.total_amount,
            payload.payment_status.value,
        )
        return payload

    def cancel(self) -> None:
        """Discard the working copy; the stored invoice is left untouched."""

        self._require_open()
        self.working_items = []
        self.item_errors = {}
        self.state = SessionState.CANCELLED
        log.info("Cancelled edit session for invoice '%s'", self.invoice_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_open(self) -> None:
        if self.state is not SessionState.OPEN:
            log.warning("Edit session for invoice '%s' is %s", self.invoice_id, self.state.value)
            raise SessionClosedError(f"Edit session for invoice '{self.invoice_id}' is {self.state.value}")

    def _require_commission(self) -> None:
        if not self.profile.tracks_commission:
            log.warning("Commission change rejected for %s invoice '%s'", self.profile.kind.value, self.invoice_id)
            raise BusinessRuleViolation("Broker commission applies to customer invoices only")

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self.working_items):
            raise IndexError(f"No line item at row {index}")

    def _index_of(self, item_ref: str) -> Optional[int]:
        for index, item in enumerate(self.working_items):
            if item.item_ref == item_ref:
                return index
        return None

    def _revalidate_row(self, index: int) -> None:
        message = validate_item_against_inventory(
            self.working_items[index],
            self.original_items,
            self.availability,
            self.profile,
        )
        if message is None:
            self.item_errors.pop(index, None)
        else:
            self.item_errors[index] = message


def _snapshot_availability(
    invoice: Invoice,
    inventory_source: Optional[InventorySource],
    item_refs: Optional[AbstractSet[str]],
) -> Mapping[str, StockLevel]:
    if not invoice.profile.consumes_inventory:
        return {}
    if inventory_source is None:
        raise BusinessRuleViolation("Customer invoice edits require an inventory source")
    refs = frozenset({item.item_ref for item in invoice.items} | set(item_refs or ()))
    availability = inventory_source.fetch_inventory_availability(refs)
    log.info("Fetched inventory snapshot for %d of %d items", len(availability), len(refs))
    return availability


def open_edit_session(
    invoice: Invoice,
    inventory_source: Optional[InventorySource],
    *,
    rounding: RoundingPolicy = RoundingPolicy.TWO_DECIMAL,
    item_refs: Optional[AbstractSet[str]] = None,
) -> InvoiceEditSession:
    """Snapshot inventory once and open an edit session for ``invoice``.

    Customer invoices fetch availability for their own items plus any extra
    ``item_refs`` the caller expects to add. Vendor invoices never consult the
    inventory source. A failing fetch propagates and no session is created.

    Args:
        invoice (Invoice): Invoice to edit.
        inventory_source (InventorySource | None): Stock lookup; may be
            ``None`` for vendor invoices.
        rounding (RoundingPolicy): Monetary rounding policy.
        item_refs (AbstractSet[str] | None): Additional items to include in the
            snapshot.

    Returns:
        InvoiceEditSession: Session in the ``OPEN`` state.
    """

    availability = _snapshot_availability(invoice, inventory_source, item_refs)
    session = InvoiceEditSession(invoice, availability, rounding=rounding)
    log.info("Opened edit session for %s invoice '%s'", session.profile.kind.value, invoice.invoice_id)
    return session


def open_new_invoice_session(
    invoice_id: str,
    kind: InvoiceKind | str,
    inventory_source: Optional[InventorySource],
    *,
    rounding: RoundingPolicy = RoundingPolicy.TWO_DECIMAL,
    item_refs: Optional[AbstractSet[str]] = None,
) -> InvoiceEditSession:
    """Open a session for an invoice that does not exist yet.

    The baseline is empty, so every row added is measured against stock from
    zero and committing moves stock for the full quantities.

    Raises:
        FieldValidationError: If ``invoice_id`` is blank.
        ValueError: If ``kind`` is not a known invoice kind.
    """

    if not invoice_id or not str(invoice_id).strip():
        raise FieldValidationError("Invoice id is required")
    invoice = Invoice(invoice_id=str(invoice_id).strip(), kind=InvoiceKind(kind))
    availability = _snapshot_availability(invoice, inventory_source, item_refs)
    session = InvoiceEditSession(invoice, availability, rounding=rounding, is_new=True)
    log.info("Opened new %s invoice '%s'", session.profile.kind.value, invoice.invoice_id)
    return session


__all__ = ["InvoiceEditSession", "open_edit_session", "open_new_invoice_session"]
