"""Validation rules for invoice edits.

Two families of checks live here:

1. Inventory delta validation. An edit to a customer invoice only consumes
   stock by the amount it *increases* a row relative to the snapshot taken when
   the edit started. Decreases hand stock back and are never checked.
2. Field validation. Guards on single values (quantities, money,
   percentages) and the per-row checks that must pass before an edit can be
   committed.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, List, Optional, Sequence

from . import log
from .constants import INVENTORY_FIELDS
from .exceptions import FieldValidationError
from .models import (
    ZERO,
    InventoryAvailability,
    InvoiceProfile,
    LineItem,
    StockLevel,
    coerce_decimal,
)

HUNDRED = Decimal("100")

_FIELD_LABELS = {
    "quantity": ("quantity", ""),
    "net_weight": ("net weight", "kg"),
    "gross_weight": ("gross weight", "kg"),
}

ITEM_NOT_IN_INVENTORY = "Item not found in inventory"


def format_amount(value: Decimal) -> str:
    """Render a decimal without exponent or trailing zeros (``2.50`` -> ``2.5``)."""

    normalized = coerce_decimal(value).normalize()
    return format(normalized, "f")


def find_original_item(original_items: Iterable[LineItem], item_ref: str) -> Optional[LineItem]:
    """Return the baseline row for ``item_ref``, or ``None`` when it is new."""

    for original in original_items:
        if original.item_ref == item_ref:
            return original
    return None


def validate_inventory_delta(
    field_name: str,
    new_value: Any,
    original_value: Any,
    stock: Optional[StockLevel],
) -> Optional[str]:
    """Check one inventory field of one row against available stock.

    Args:
        field_name (str): One of ``quantity``, ``net_weight``, ``gross_weight``.
        new_value (Any): Value requested by the edit.
        original_value (Any): Value of the same item when the session opened,
            zero for items added during the session.
        stock (StockLevel | None): Available stock for the item, ``None`` when
            the item is unknown to the inventory snapshot.

    Returns:
        str | None: Error message, or ``None`` when the edit is admissible.

    Raises:
        ValueError: If ``field_name`` is not an inventory field.
    """

    if field_name not in INVENTORY_FIELDS:
        raise ValueError(f"Not an inventory field: {field_name}")

    delta = coerce_decimal(new_value) - coerce_decimal(original_value)
    if delta <= ZERO:
        return None
    if stock is None:
        return ITEM_NOT_IN_INVENTORY

    available = stock.get(field_name)
    if delta <= available:
        return None

    label, unit = _FIELD_LABELS[field_name]
    return (
        f"Cannot increase {label} by {format_amount(delta)}{unit} "
        f"(available: {format_amount(available)}{unit})"
    )


def validate_item_against_inventory(
    item: LineItem,
    original_items: Sequence[LineItem],
    availability: InventoryAvailability,
    profile: InvoiceProfile,
) -> Optional[str]:
    """Re-check every inventory field of one row from scratch.

    Vendor invoices add stock rather than drawing on it, so they are never
    checked. For customer invoices the first failing field wins.

    Args:
        item (LineItem): Row as currently edited.
        original_items (Sequence[LineItem]): Snapshot taken at session start.
        availability (InventoryAvailability): Stock snapshot for the session.
        profile (InvoiceProfile): Profile of the invoice kind.

    Returns:
        str | None: Error message for the row, or ``None`` when it is valid.
    """

    if not profile.consumes_inventory:
        return None

    original = find_original_item(original_items, item.item_ref)
    stock = availability.get(item.item_ref)
    for field_name in INVENTORY_FIELDS:
        original_value = getattr(original, field_name) if original is not None else ZERO
        message = validate_inventory_delta(field_name, getattr(item, field_name), original_value, stock)
        if message is not None:
            log.warning("Inventory check failed for item '%s': %s", item.item_ref, message)
            return message
    return None


def validate_line_items(items: Sequence[LineItem], profile: InvoiceProfile) -> List[str]:
    """Return the per-row problems that block a commit.

    Every row needs a positive quantity, a positive net weight, a gross weight
    that is not negative, a positive price, and a packaging cost that is not
    negative. Messages number rows from one, the way an operator sees them.

    Args:
        items (Sequence[LineItem]): Rows to check.
        profile (InvoiceProfile): Supplies the price wording for messages.

    Returns:
        list[str]: Messages in row order; empty when all rows are valid.
    """

    problems: List[str] = []
    for position, item in enumerate(items, start=1):
        if coerce_decimal(item.quantity) <= ZERO:
            problems.append(f"Item {position} must have a quantity greater than zero")
        if coerce_decimal(item.net_weight) <= ZERO:
            problems.append(f"Item {position} must have a net weight greater than zero")
        if coerce_decimal(item.gross_weight) < ZERO:
            problems.append(f"Item {position} must not have a negative gross weight")
        if coerce_decimal(item.unit_price) <= ZERO:
            problems.append(f"Item {position} must have a {profile.price_label} greater than zero")
        if coerce_decimal(item.packaging_cost) < ZERO:
            problems.append(f"Item {position} must not have a negative packaging cost")
    return problems


def require_positive_quantity(quantity: Any) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        FieldValidationError: If ``quantity`` is zero, negative, or not a
            number.
    """
    if coerce_decimal(quantity) <= ZERO:
        log.error("Quantity validation failed: %s", quantity)
        raise FieldValidationError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Any, *, label: str = "Amount") -> Decimal:
    """Validate that a monetary value is present and not negative.

    Returns:
        Decimal: The parsed amount.

    Raises:
        FieldValidationError: If ``amount`` is negative.
    """
    value = coerce_decimal(amount)
    if value < ZERO:
        log.error("%s validation failed: %s", label, amount)
        raise FieldValidationError(f"{label} must be zero or positive")
    return value


def require_percentage(percentage: Any) -> Decimal:
    """Validate a commission percentage in the inclusive range 0-100.

    Raises:
        FieldValidationError: If the value falls outside the range.
    """
    value = coerce_decimal(percentage)
    if value < ZERO or value > HUNDRED:
        log.error("Commission percentage validation failed: %s", percentage)
        raise FieldValidationError("Commission percentage must be between 0 and 100")
    return value


__all__ = [
    "ITEM_NOT_IN_INVENTORY",
    "format_amount",
    "find_original_item",
    "validate_inventory_delta",
    "validate_item_against_inventory",
    "validate_line_items",
    "require_positive_quantity",
    "require_nonnegative_money",
    "require_percentage",
]
