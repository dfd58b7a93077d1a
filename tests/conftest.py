"""Shared pytest fixtures and utilities for invoice engine tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from invoice_engine import cli, constants, data_manager, gateway  # noqa: E402
from invoice_engine.constants import InvoiceKind, RoundingPolicy  # noqa: E402
from invoice_engine.models import Invoice, LineItem, StockLevel  # noqa: E402
from invoice_engine.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Invoicing]\n"
    "RoundingPolicy = {rounding_policy}\n"
)

SEED_INVENTORY = (
    data_manager.InventoryRow("ITEM-A", "Apples", Decimal("5"), Decimal("50"), Decimal("55")),
    data_manager.InventoryRow("ITEM-B", "Bananas", Decimal("10"), Decimal("100"), Decimal("110")),
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


def make_item(item_ref: str = "ITEM-A", **overrides) -> LineItem:
    """Build a line item with sensible non-zero defaults."""

    values = {
        "display_name": "Apples",
        "quantity": 2,
        "net_weight": Decimal("20"),
        "gross_weight": Decimal("22"),
        "unit_price": Decimal("25"),
        "packaging_cost": Decimal("10"),
    }
    values.update(overrides)
    return LineItem(item_ref=item_ref, **values)


@pytest.fixture
def item_factory() -> Callable[..., LineItem]:
    return make_item


@pytest.fixture
def customer_invoice() -> Invoice:
    """Customer invoice worth 520: 25 * 20 + 2 * 10."""

    return Invoice(
        invoice_id="INV-C1",
        kind=InvoiceKind.CUSTOMER,
        items=(make_item(),),
    )


@pytest.fixture
def vendor_invoice() -> Invoice:
    return Invoice(
        invoice_id="INV-V1",
        kind=InvoiceKind.VENDOR,
        items=(make_item(unit_price=Decimal("20")),),
    )


@pytest.fixture
def availability() -> dict[str, StockLevel]:
    return {
        "ITEM-A": StockLevel(quantity=Decimal("5"), net_weight=Decimal("50"), gross_weight=Decimal("55")),
        "ITEM-B": StockLevel(quantity=Decimal("10"), net_weight=Decimal("100"), gross_weight=Decimal("110")),
    }


@pytest.fixture
def inventory_source(availability: dict[str, StockLevel]) -> Mock:
    """Mock inventory source returning the requested subset of ``availability``."""

    source = Mock(name="inventory_source")
    source.fetch_inventory_availability.side_effect = lambda refs: {
        ref: level for ref, level in availability.items() if ref in refs
    }
    return source


@pytest.fixture
def committer() -> Mock:
    return Mock(name="committer")


# ---------------------------------------------------------------------------
# Workbook fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized invoice workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "invoices.xlsx",
        inventory: Iterable[data_manager.InventoryRow] = SEED_INVENTORY,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, inventory=inventory, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh workbook seeded with ``SEED_INVENTORY``."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Traders",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        rounding_policy: str = RoundingPolicy.TWO_DECIMAL.value,
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                rounding_policy=rounding_policy,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> gateway.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = gateway.load_runtime_context(config_file)
    gateway.ensure_schema_version(context)
    return context


def seed_invoice(
    context: gateway.RuntimeContext,
    *,
    invoice_id: str = "INV-C1",
    kind: InvoiceKind = InvoiceKind.CUSTOMER,
    items: Iterable[LineItem] = (),
    ancillary_cost: Decimal = Decimal("0"),
    paid_amount: Decimal = Decimal("0"),
    broker_ref: Optional[str] = None,
    commission_percentage: Decimal = Decimal("0"),
    broker_paid_amount: Decimal = Decimal("0"),
) -> None:
    """Write an invoice header and its items directly through the data layer.

    Derived columns are deliberately left at zero; the engine never reads
    them back.
    """

    data_manager.append_invoice(
        context.workbook,
        data_manager.InvoiceRow(
            invoice_id=invoice_id,
            kind=kind.value,
            ancillary_cost=ancillary_cost,
            subtotal=Decimal("0"),
            total_amount=Decimal("0"),
            paid_amount=paid_amount,
            remaining_amount=Decimal("0"),
            payment_status="pending",
            broker_ref=broker_ref,
            commission_percentage=commission_percentage,
            commission_amount=Decimal("0"),
            broker_paid_amount=broker_paid_amount,
            broker_payment_status=None,
        ),
    )
    for position, item in enumerate(items, start=1):
        data_manager.append_invoice_item(
            context.workbook,
            data_manager.InvoiceItemRow(
                invoice_id=invoice_id,
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


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="invoice-cli", description="Invoice CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "invoices.xlsx",
        business_name="Test Traders",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def mock_context(settings: data_manager.ConfigSettings) -> gateway.RuntimeContext:
    """Assemble a runtime context around a mock workbook."""

    return gateway.RuntimeContext(settings=settings, workbook=Mock(name="workbook"))
