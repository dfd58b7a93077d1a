"""Enumerations shared across the invoice engine modules.

Keeps the identifiers used by the calculation layer, the edit session, the
workbook store, and the CLI in one place so none of them drift apart.
"""

from __future__ import annotations

from enum import Enum


# Schema version expected in config.ini before the workbook store mutates data.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class InvoiceKind(str, Enum):
    """Which side of the trade an invoice records."""

    CUSTOMER = "customer"
    VENDOR = "vendor"


class PaymentStatus(str, Enum):
    """Derived settlement state of an invoice or a broker commission."""

    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class PaymentMethod(str, Enum):
    """Enumerate the payment mechanisms accepted when recording a payment."""

    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    CREDIT_CARD = "credit_card"
    OTHER = "other"


class RoundingPolicy(str, Enum):
    """Rounding applied to monetary values at the aggregation boundary."""

    WHOLE_UNIT = "whole_unit"
    TWO_DECIMAL = "two_decimal"


class SessionState(str, Enum):
    """Lifecycle of an invoice edit session."""

    OPEN = "open"
    COMMITTED = "committed"
    CANCELLED = "cancelled"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    INVENTORY = "Inventory"
    INVOICES = "Invoices"
    INVOICE_ITEMS = "InvoiceItems"
    PAYMENTS = "Payments"


# Line item fields that draw on stock when they grow on a customer invoice.
INVENTORY_FIELDS: tuple[str, ...] = ("quantity", "net_weight", "gross_weight")

# Line item fields the edit session accepts through ``edit_field``.
EDITABLE_FIELDS: tuple[str, ...] = (
    "display_name",
    "quantity",
    "net_weight",
    "gross_weight",
    "unit_price",
    "packaging_cost",
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "InvoiceKind",
    "PaymentStatus",
    "PaymentMethod",
    "RoundingPolicy",
    "SessionState",
    "SheetName",
    "INVENTORY_FIELDS",
    "EDITABLE_FIELDS",
]
