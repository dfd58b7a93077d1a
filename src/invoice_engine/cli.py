"""Command-line entry points for the invoice engine.

The module only wires argparse and translates arguments into engine calls.
Edits go through an :class:`~invoice_engine.edit_session.InvoiceEditSession`
exactly as any other front-end would drive it, with the workbook gateway
standing in for every collaborator.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import gateway, log
from .calculations import calculate_item_total, recompute_invoice
from .constants import EDITABLE_FIELDS, InvoiceKind, PaymentMethod
from .edit_session import InvoiceEditSession, open_edit_session, open_new_invoice_session
from .exceptions import BusinessRuleViolation, InvoiceValidationError
from .models import LineItem
from .payments import (
    BrokerPaymentCommand,
    PaymentCommand,
    record_broker_payment,
    record_payment,
)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[gateway.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="invoice-cli",
        description="Command-line tools for the invoice workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that change invoices, payments or stock."""
    specs = {
        "create": register_create_command(subparsers),
        "delete": register_delete_command(subparsers),
        "pay": register_pay_command(subparsers),
        "pay-broker": register_pay_broker_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "edit-item": register_edit_item_command(subparsers),
        "remove-item": register_remove_item_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only reporting commands."""
    specs = {
        "stock": register_stock_command(subparsers),
        "show": register_show_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_line_item_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--item-ref", required=True)
    parser.add_argument("--name", dest="display_name", default="")
    parser.add_argument("--quantity", required=True)
    parser.add_argument("--net-weight", required=True)
    parser.add_argument("--gross-weight", default="0")
    parser.add_argument("--unit-price", required=True)
    parser.add_argument("--packaging-cost", default="0")


def register_create_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create``."""
    name = "create"
    help_text = "Generate a new invoice with its first line item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[kind.value for kind in InvoiceKind], required=True)
        parser.add_argument("--invoice-id", default=None, help="Defaults to the next free invoice number.")
        _add_line_item_arguments(parser)
        parser.add_argument("--ancillary-cost", default="0", help="Labour and transport charge.")
        parser.add_argument("--broker", dest="broker_ref", default=None)
        parser.add_argument("--commission", dest="commission_percentage", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_invoice)


def register_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete``."""
    name = "delete"
    help_text = "Delete an invoice and reverse its stock movement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_invoice)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record a payment against an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument(
            "--method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--date", dest="paid_on", default=None, help="Payment date (YYYY-MM-DD).")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_pay_broker_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-broker``."""
    name = "pay-broker"
    help_text = "Record a commission payment to an invoice's broker."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--date", dest="paid_on", default=None, help="Payment date (YYYY-MM-DD).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_broker)


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Add a line item to an invoice (merges with an existing row)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        _add_line_item_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_edit_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-item``."""
    name = "edit-item"
    help_text = "Change one field of one invoice line item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--row", type=int, required=True, help="1-based row number.")
        parser.add_argument("--field", choices=list(EDITABLE_FIELDS), required=True)
        parser.add_argument("--value", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_item)


def register_remove_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-item``."""
    name = "remove-item"
    help_text = "Remove a line item from an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--row", type=int, required=True, help="1-based row number.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_item)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_show_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show``."""
    name = "show"
    help_text = "Display an invoice with its derived totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show_invoice)


def load_runtime_context(config_path: Optional[Path] = None) -> gateway.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = gateway.load_runtime_context(target)
    gateway.ensure_schema_version(context)
    return context


def dispatch_command(
    context: gateway.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _parse_date(raw: Optional[str]) -> Optional[date]:
    return date.fromisoformat(raw) if raw else None


def translate_pay(args: argparse.Namespace) -> PaymentCommand:
    """Translate CLI args into a payment command object."""
    return PaymentCommand(
        amount=Decimal(args.amount),
        method=PaymentMethod(args.method),
        paid_on=_parse_date(args.paid_on),
        notes=args.notes,
    )


def translate_pay_broker(args: argparse.Namespace) -> BrokerPaymentCommand:
    """Translate CLI args into a broker payment command object."""
    return BrokerPaymentCommand(
        amount=Decimal(args.amount),
        paid_on=_parse_date(args.paid_on),
    )


def translate_add_item(args: argparse.Namespace) -> LineItem:
    """Translate CLI args into a candidate line item."""
    return LineItem(
        item_ref=args.item_ref,
        display_name=args.display_name,
        quantity=int(args.quantity),
        net_weight=Decimal(args.net_weight),
        gross_weight=Decimal(args.gross_weight),
        unit_price=Decimal(args.unit_price),
        packaging_cost=Decimal(args.packaging_cost),
    )


def run_create_invoice(context: gateway.RuntimeContext, args: argparse.Namespace) -> int:
    """Open a session for a new invoice, add its first item, and commit."""
    store = gateway.WorkbookGateway(context)
    invoice_id = args.invoice_id or store.next_invoice_id(args.kind)
    candidate = translate_add_item(args)
    session = open_new_invoice_session(
        invoice_id,
        args.kind,
        store,
        rounding=context.settings.rounding_policy,
        item_refs={candidate.item_ref},
    )
    session.add_item(candidate)
    session.set_ancillary_cost(args.ancillary_cost)
    if args.broker_ref:
        session.attach_broker(args.broker_ref, args.commission_percentage)
    print(f"Invoice {invoice_id}")
    return _commit_session(session, store)


def run_delete_invoice(context: gateway.RuntimeContext, args: argparse.Namespace) -> int:
    """Delete an invoice and report the stock it moved back."""
    adjustments = gateway.WorkbookGateway(context).delete_invoice(args.invoice_id)
    print(f"Deleted invoice {args.invoice_id} ({len(adjustments)} stock adjustments reverted)")
    return 0


def run_pay(context: gateway.RuntimeContext, args: argparse.Namespace) -> int:
    """Record a customer or vendor payment."""
    store = gateway.WorkbookGateway(context)
    invoice = store.load_invoice(args.invoice_id)
    payload = record_payment(invoice, translate_pay(args), store, rounding=context.settings.rounding_policy)
    print(f"Remaining: {payload.remaining_amount} ({payload.payment_status.value})")
    return 0


def run_pay_broker(context: gateway.RuntimeContext, args: argparse.Namespace) -> int:
    """Record a broker commission payment."""
    store = gateway.WorkbookGateway(context)
    invoice = store.load_invoice(args.invoice_id)
    payload = record_broker_payment(
        invoice,
        translate_pay_broker(args),
        store,
        rounding=context.settings.rounding_policy,
    )
    print(f"Broker remaining: {payload.broker_remaining_amount} ({payload.broker_payment_status.value})")
    return 0


def run_add_item(context: gateway.RuntimeContext, args: argparse.Namespace) -> int:
    """Open an edit session, add one item, and commit."""
    store = gateway.WorkbookGateway(context)
    candidate = translate_add_item(args)
    session = open_edit_session(
        store.load_invoice(args.invoice_id),
        store,
        rounding=context.settings.rounding_policy,
        item_refs={candidate.item_ref},
    )
    session.add_item(candidate)
    return _commit_session(session, store)


def run_edit_item(context: gateway.RuntimeContext, args: argparse.Namespace) -> int:
    """Open an edit session, change one field, and commit."""
    store = gateway.WorkbookGateway(context)
    session = open_edit_session(
        store.load_invoice(args.invoice_id),
        store,
        rounding=context.settings.rounding_policy,
    )
    session.edit_field(args.row - 1, args.field, args.value)
    return _commit_session(session, store)


def run_remove_item(context: gateway.RuntimeContext, args: argparse.Namespace) -> int:
    """Open an edit session, remove one row, and commit."""
    store = gateway.WorkbookGateway(context)
    session = open_edit_session(
        store.load_invoice(args.invoice_id),
        store,
        rounding=context.settings.rounding_policy,
    )
    session.remove_item(args.row - 1)
    return _commit_session(session, store)


def _commit_session(session: InvoiceEditSession, store: gateway.WorkbookGateway) -> int:
    try:
        payload = session.commit(store)
    except InvoiceValidationError as error:
        for message in error.errors:
            print(f"  - {message}")
        raise
    print(f"Total: {payload.total_amount}  Remaining: {payload.remaining_amount} ({payload.payment_status.value})")
    return 0


def run_stock_report(context: gateway.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the inventory sheet."""
    for row in gateway.WorkbookGateway(context).list_inventory():
        print(f"{row.item_ref}\t{row.display_name}\t{row.quantity}\t{row.net_weight}kg\t{row.gross_weight}kg")
    return 0


def run_show_invoice(context: gateway.RuntimeContext, args: argparse.Namespace) -> int:
    """Print an invoice's items and freshly derived totals."""
    invoice = gateway.WorkbookGateway(context).load_invoice(args.invoice_id)
    totals = recompute_invoice(invoice, context.settings.rounding_policy)
    print(f"Invoice {invoice.invoice_id} ({invoice.profile.kind.value})")
    for position, item in enumerate(invoice.items, start=1):
        print(
            f"  {position}. {item.item_ref} {item.display_name} qty={item.quantity} "
            f"net={item.net_weight} price={item.unit_price} total={calculate_item_total(item)}"
        )
    print(f"Subtotal: {totals.subtotal}")
    print(f"Ancillary cost: {invoice.ancillary_cost}")
    print(f"Total: {totals.total_amount}")
    print(f"Paid: {invoice.paid_amount}  Remaining: {totals.remaining_amount} ({totals.payment_status.value})")
    if invoice.broker_ref:
        print(f"Broker {invoice.broker_ref}: {invoice.commission_percentage}% = {totals.commission_amount}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: gateway.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        gateway.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
