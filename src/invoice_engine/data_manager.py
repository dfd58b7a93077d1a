"""Data access layer for the invoice workbook.

This module provides low-level helpers that read from and write to the
invoice workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from .constants import PaymentStatus, RoundingPolicy, SheetName


CONFIG_FILE_NAME = "config.ini"
INVENTORY_SHEET = SheetName.INVENTORY.value
INVOICES_SHEET = SheetName.INVOICES.value
INVOICE_ITEMS_SHEET = SheetName.INVOICE_ITEMS.value
PAYMENTS_SHEET = SheetName.PAYMENTS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    INVENTORY_SHEET: [
        "ItemRef",
        "DisplayName",
        "Quantity",
        "NetWeight",
        "GrossWeight",
    ],
    INVOICES_SHEET: [
        "InvoiceID",
        "Kind",
        "AncillaryCost",
        "Subtotal",
        "TotalAmount",
        "PaidAmount",
        "RemainingAmount",
        "PaymentStatus",
        "BrokerRef",
        "CommissionPercentage",
        "CommissionAmount",
        "BrokerPaidAmount",
        "BrokerPaymentStatus",
    ],
    INVOICE_ITEMS_SHEET: [
        "InvoiceID",
        "Position",
        "ItemRef",
        "DisplayName",
        "Quantity",
        "NetWeight",
        "GrossWeight",
        "UnitPrice",
        "PackagingCost",
    ],
    PAYMENTS_SHEET: [
        "PaymentID",
        "InvoiceID",
        "Payee",
        "Amount",
        "Method",
        "PaidOn",
        "RemainingAmount",
        "PaymentStatus",
        "Notes",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    rounding_policy: RoundingPolicy = RoundingPolicy.TWO_DECIMAL


@dataclass(frozen=True)
class InventoryRow:
    """In-memory view of a row from the ``Inventory`` sheet."""

    item_ref: str
    display_name: str
    quantity: Decimal
    net_weight: Decimal
    gross_weight: Decimal


@dataclass(frozen=True)
class InvoiceRow:
    """In-memory view of a row from the ``Invoices`` sheet.

    Derived columns are written on every commit so the workbook stays readable
    on its own; they are never read back as inputs.
    """

    invoice_id: str
    kind: str
    ancillary_cost: Decimal
    subtotal: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    payment_status: str
    broker_ref: Optional[str]
    commission_percentage: Decimal
    commission_amount: Decimal
    broker_paid_amount: Decimal
    broker_payment_status: Optional[str]


@dataclass(frozen=True)
class InvoiceItemRow:
    """In-memory view of a row from the ``InvoiceItems`` sheet."""

    invoice_id: str
    position: int
    item_ref: str
    display_name: str
    quantity: int
    net_weight: Decimal
    gross_weight: Decimal
    unit_price: Decimal
    packaging_cost: Decimal


@dataclass(frozen=True)
class PaymentRow:
    """In-memory view of a row from the ``Payments`` sheet."""

    payment_id: str
    invoice_id: str
    payee: str
    amount: Decimal
    method: Optional[str]
    paid_on_iso: str
    remaining_amount: Decimal
    payment_status: str
    notes: Optional[str]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``BusinessName`` and
    ``SchemaVersion``. ``[Invoicing] RoundingPolicy`` is optional and defaults
    to ``two_decimal``. Relative data file paths are anchored at
    ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``RoundingPolicy`` names an unknown policy.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    rounding_raw = parser.get(
        "Invoicing", "RoundingPolicy", fallback=RoundingPolicy.TWO_DECIMAL.value)
    try:
        rounding_policy = RoundingPolicy(rounding_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported rounding policy: {rounding_raw}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        rounding_policy=rounding_policy,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the invoice workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_inventory(workbook: Workbook) -> Iterable[InventoryRow]:
    """Iterate over stock records stored on the ``Inventory`` worksheet."""

    for raw in _iter_rows(workbook, INVENTORY_SHEET):
        yield deserialize_inventory(raw)


def iter_invoices(workbook: Workbook) -> Iterable[InvoiceRow]:
    """Iterate over invoice header rows."""

    for raw in _iter_rows(workbook, INVOICES_SHEET):
        yield deserialize_invoice(raw)


def iter_invoice_items(workbook: Workbook, invoice_id: Optional[str] = None) -> Iterable[InvoiceItemRow]:
    """Iterate over invoice item rows, optionally for a single invoice.

    Rows are yielded in sheet order; callers sort by ``position`` when they
    need the invoice's own ordering.
    """

    for raw in _iter_rows(workbook, INVOICE_ITEMS_SHEET):
        row = deserialize_invoice_item(raw)
        if invoice_id is None or row.invoice_id == invoice_id:
            yield row


def iter_payments(workbook: Workbook, invoice_id: Optional[str] = None) -> Iterable[PaymentRow]:
    """Iterate over payment rows, optionally for a single invoice."""

    for raw in _iter_rows(workbook, PAYMENTS_SHEET):
        row = deserialize_payment(raw)
        if invoice_id is None or row.invoice_id == invoice_id:
            yield row


def append_inventory(workbook: Workbook, record: InventoryRow) -> None:
    """Append a stock record to the ``Inventory`` worksheet."""

    workbook[INVENTORY_SHEET].append(serialize_inventory(record))


def append_invoice(workbook: Workbook, record: InvoiceRow) -> None:
    """Append an invoice header to the ``Invoices`` worksheet."""

    workbook[INVOICES_SHEET].append(serialize_invoice(record))


def append_invoice_item(workbook: Workbook, record: InvoiceItemRow) -> None:
    """Append a line item to the ``InvoiceItems`` worksheet."""

    workbook[INVOICE_ITEMS_SHEET].append(serialize_invoice_item(record))


def append_payment(workbook: Workbook, record: PaymentRow) -> None:
    """Append a payment to the ``Payments`` worksheet."""

    workbook[PAYMENTS_SHEET].append(serialize_payment(record))


def update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    field_values: Mapping[str, Any],
) -> None:
    """Update selected columns of the row whose ``key_column`` equals ``key_value``.

    Only the specified fields are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing ``sheet_name``.
        sheet_name (str): Worksheet to modify.
        key_column (str): Header naming the lookup column.
        key_value (str): Value identifying the row.
        field_values (Mapping[str, Any]): Column names mapped to new values.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    for field_name, value in field_values.items():
        if field_name not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field_name}")
        sheet.cell(row=row_index, column=header_map[field_name], value=value)


def delete_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> int:
    """Delete every row of ``sheet_name`` whose ``key_column`` equals ``key_value``.

    Returns:
        int: Number of rows removed.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    sheet = workbook[sheet_name]
    key_col = header_map[key_column]
    matches: List[int] = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col - 1] is not None and str(row[key_col - 1]) == key_value
    ]
    # Delete bottom-up so earlier indices stay valid.
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    return len(matches)


def delete_invoice_items(workbook: Workbook, invoice_id: str) -> int:
    """Delete every ``InvoiceItems`` row belonging to ``invoice_id``."""

    return delete_rows(workbook, INVOICE_ITEMS_SHEET, "InvoiceID", invoice_id)


def _header_map(workbook: Workbook, sheet_name: str) -> dict[str, int]:
    header_cells = list(workbook[sheet_name][1])
    return {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        return Decimal(default)


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def serialize_inventory(record: InventoryRow) -> list[object]:
    """Convert a stock record into the ``Inventory`` column ordering."""

    return [record.item_ref, record.display_name, record.quantity, record.net_weight, record.gross_weight]


def serialize_invoice(record: InvoiceRow) -> list[object]:
    """Convert an invoice header into the ``Invoices`` column ordering."""

    return [
        record.invoice_id,
        record.kind,
        record.ancillary_cost,
        record.subtotal,
        record.total_amount,
        record.paid_amount,
        record.remaining_amount,
        record.payment_status,
        record.broker_ref,
        record.commission_percentage,
        record.commission_amount,
        record.broker_paid_amount,
        record.broker_payment_status,
    ]


def serialize_invoice_item(record: InvoiceItemRow) -> list[object]:
    """Convert a line item into the ``InvoiceItems`` column ordering."""

    return [
        record.invoice_id,
        record.position,
        record.item_ref,
        record.display_name,
        record.quantity,
        record.net_weight,
        record.gross_weight,
        record.unit_price,
        record.packaging_cost,
    ]


def serialize_payment(record: PaymentRow) -> list[object]:
    """Convert a payment into the ``Payments`` column ordering."""

    return [
        record.payment_id,
        record.invoice_id,
        record.payee,
        record.amount,
        record.method,
        record.paid_on_iso,
        record.remaining_amount,
        record.payment_status,
        record.notes,
    ]


def deserialize_inventory(raw_row: Sequence[object]) -> InventoryRow:
    """Convert a raw worksheet row into a typed stock record."""

    item_ref, display_name, quantity, net_weight, gross_weight = raw_row[:5]
    return InventoryRow(
        item_ref=str(item_ref),
        display_name=str(display_name) if display_name is not None else "",
        quantity=_to_decimal(quantity),
        net_weight=_to_decimal(net_weight),
        gross_weight=_to_decimal(gross_weight),
    )


def deserialize_invoice(raw_row: Sequence[object]) -> InvoiceRow:
    """Convert a raw worksheet row into a typed invoice header.

    Numeric columns become :class:`~decimal.Decimal`; blank optional columns
    stay ``None``.
    """

    (
        invoice_id,
        kind,
        ancillary_cost,
        subtotal,
        total_amount,
        paid_amount,
        remaining_amount,
        payment_status,
        broker_ref,
        commission_percentage,
        commission_amount,
        broker_paid_amount,
        broker_payment_status,
    ) = raw_row[:13]

    return InvoiceRow(
        invoice_id=str(invoice_id),
        kind=str(kind) if kind is not None else "",
        ancillary_cost=_to_decimal(ancillary_cost),
        subtotal=_to_decimal(subtotal),
        total_amount=_to_decimal(total_amount),
        paid_amount=_to_decimal(paid_amount),
        remaining_amount=_to_decimal(remaining_amount),
        payment_status=str(payment_status) if payment_status is not None else PaymentStatus.PENDING.value,
        broker_ref=_to_optional_str(broker_ref),
        commission_percentage=_to_decimal(commission_percentage),
        commission_amount=_to_decimal(commission_amount),
        broker_paid_amount=_to_decimal(broker_paid_amount),
        broker_payment_status=_to_optional_str(broker_payment_status),
    )


def deserialize_invoice_item(raw_row: Sequence[object]) -> InvoiceItemRow:
    """Convert a raw worksheet row into a typed line item record."""

    (
        invoice_id,
        position,
        item_ref,
        display_name,
        quantity,
        net_weight,
        gross_weight,
        unit_price,
        packaging_cost,
    ) = raw_row[:9]

    return InvoiceItemRow(
        invoice_id=str(invoice_id),
        position=int(_to_decimal(position)),
        item_ref=str(item_ref),
        display_name=str(display_name) if display_name is not None else "",
        quantity=int(_to_decimal(quantity)),
        net_weight=_to_decimal(net_weight),
        gross_weight=_to_decimal(gross_weight),
        unit_price=_to_decimal(unit_price),
        packaging_cost=_to_decimal(packaging_cost),
    )


def deserialize_payment(raw_row: Sequence[object]) -> PaymentRow:
    """Convert a raw worksheet row into a typed payment record."""

    (
        payment_id,
        invoice_id,
        payee,
        amount,
        method,
        paid_on,
        remaining_amount,
        payment_status,
        notes,
    ) = raw_row[:9]

    return PaymentRow(
        payment_id=str(payment_id),
        invoice_id=str(invoice_id),
        payee=str(payee) if payee is not None else "",
        amount=_to_decimal(amount),
        method=_to_optional_str(method),
        paid_on_iso=str(paid_on) if paid_on is not None else "",
        remaining_amount=_to_decimal(remaining_amount),
        payment_status=str(payment_status) if payment_status is not None else "",
        notes=_to_optional_str(notes),
    )
