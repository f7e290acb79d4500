"""Command-line entry points for the retail back-office engine.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into calls on :class:`core_logic.RetailService`. Every
invocation loads the workbook, runs one command through the service, and saves
the workbook again when the command succeeded.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, models
from .constants import PaymentMethod, PaymentStatus, TransactionStatus
from .errors import BusinessRuleViolation
from .models import LineItemDraft, Payment, Transaction
from .selection import Page, Selection


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="retail-cli",
        description="Command-line tools for the retail back-office workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the current directory by default).",
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
    """Declare mutating CLI commands."""
    specs = {
        "new-sale": register_new_sale_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "remove-item": register_remove_item_command(subparsers),
        "complete": register_transition_command(subparsers, "complete", "Complete an in-progress sale.", run_complete),
        "cancel": register_transition_command(subparsers, "cancel", "Cancel an in-progress sale.", run_cancel),
        "reopen": register_transition_command(
            subparsers, "reopen", "Reopen a completed or cancelled sale.", run_reopen
        ),
        "pay": register_pay_command(subparsers),
        "set-payment-status": register_set_payment_status_command(subparsers),
        "pay-installment": register_pay_installment_command(subparsers),
        "delete-payment": register_delete_payment_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "sales": register_sales_command(subparsers),
        "payments": register_payments_command(subparsers),
        "observers": register_observers_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_line_item(text: str) -> LineItemDraft:
    """Parse ``PRODUCT:QUANTITY:UNIT_PRICE`` into a :class:`LineItemDraft`."""
    parts = text.split(":")
    if len(parts) != 3 or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT:QUANTITY:UNIT_PRICE, got '{text}'")
    product_id, quantity_raw, price_raw = parts
    try:
        return LineItemDraft(product_id=product_id, quantity=int(quantity_raw), unit_price=models.to_decimal(price_raw))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid line item '{text}': {exc}") from exc


def _add_selection_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sort", default=None, help="Sort key, applied before filtering.")
    parser.add_argument("--filter-field", default=None)
    parser.add_argument("--keyword", default=None, help="Case-insensitive substring for --filter-field.")
    parser.add_argument("--page", type=int, default=None)
    parser.add_argument("--limit", type=int, default=None)


def register_new_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``new-sale``."""
    name = "new-sale"
    help_text = "Open a new sales transaction."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--customer-name", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_line_item,
            default=None,
            help="Line item as PRODUCT:QUANTITY:UNIT_PRICE; repeatable.",
        )
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_new_sale)


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Add a line item to an in-progress sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True, type=int)
        parser.add_argument("--unit-price", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_remove_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-item``."""
    name = "remove-item"
    help_text = "Remove a line item from an in-progress sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_item)


def register_transition_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    help_text: str,
    executor: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Register a command that applies one status transition to a sale."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=executor)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Register the payment of a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument(
            "--method",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        parser.add_argument("--due-date", default=None, help="ISO date the payment is due.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_set_payment_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-payment-status``."""
    name = "set-payment-status"
    help_text = "Move a payment to another status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--payment-id", required=True)
        parser.add_argument(
            "--status",
            choices=[member.value for member in PaymentStatus],
            required=True,
        )
        parser.add_argument("--initial-installment", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_payment_status)


def register_pay_installment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-installment``."""
    name = "pay-installment"
    help_text = "Record an installment against a payment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--payment-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_installment)


def register_delete_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-payment``."""
    name = "delete-payment"
    help_text = "Delete a payment that is being paid in installments."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--payment-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_payment)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List sales transactions."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_selection_arguments(parser)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument(
            "--status",
            choices=[member.value for member in TransactionStatus],
            default=None,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_payments_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``payments``."""
    name = "payments"
    help_text = "List payments."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_selection_arguments(parser)
        parser.add_argument(
            "--status",
            choices=[member.value for member in PaymentStatus],
            default=None,
        )
        parser.add_argument(
            "--method",
            choices=[member.value for member in PaymentMethod],
            default=None,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_payments_report)


def register_observers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``observers``."""
    name = "observers"
    help_text = "List the registered observers in notification order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_observers_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
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


def translate_selection(args: argparse.Namespace) -> Selection:
    """Translate CLI args into a read-path selection."""
    return Selection(
        sort=args.sort,
        filter_field=args.filter_field,
        keyword=args.keyword,
        page=args.page,
        limit=args.limit,
    )


def translate_pay(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into ``create_payment`` keyword arguments."""
    return {
        "transaction_ref": args.transaction_id,
        "amount_due": models.to_decimal(args.amount),
        "method": PaymentMethod(args.method),
        "due_date": datetime.fromisoformat(args.due_date) if args.due_date else None,
    }


def format_transaction(transaction: Transaction) -> str:
    return (
        f"{transaction.transaction_id}  {transaction.status.value:<10}  "
        f"{transaction.customer_name}  items={len(transaction.line_items)}  total={transaction.total_price}"
    )


def format_payment(payment: Payment) -> str:
    return (
        f"{payment.payment_id}  {payment.status.value:<11}  {payment.method.value}  "
        f"due={payment.amount_due}  paid={payment.total_paid}  outstanding={payment.outstanding}"
    )


def _print_page(page: Page, formatter: Callable[[Any], str]) -> None:
    for entity in page.items:
        print(formatter(entity))
    print(f"-- page {page.page}/{max(page.total_pages, 1)} ({page.total_count} total)")


def run_new_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Create a transaction through the service."""
    transaction = context.service.create_transaction(
        args.customer_id,
        args.customer_name,
        args.items or (),
        note=args.note,
    )
    print(format_transaction(transaction))
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    draft = LineItemDraft(product_id=args.product_id, quantity=args.quantity, unit_price=models.to_decimal(args.unit_price))
    item = context.service.add_line_item(args.transaction_id, draft)
    print(f"{item.item_id}  {item.product_id}  {item.quantity} x {item.unit_price} = {item.subtotal}")
    return 0


def run_remove_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    transaction = context.service.remove_line_item(args.transaction_id, args.item_id)
    print(format_transaction(transaction))
    return 0


def run_complete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print(format_transaction(context.service.complete_transaction(args.transaction_id)))
    return 0


def run_cancel(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print(format_transaction(context.service.cancel_transaction(args.transaction_id)))
    return 0


def run_reopen(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print(format_transaction(context.service.reopen_transaction(args.transaction_id)))
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Register a payment through the service."""
    payment = context.service.create_payment(**translate_pay(args))
    print(format_payment(payment))
    return 0


def run_set_payment_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    initial = models.to_decimal(args.initial_installment) if args.initial_installment is not None else None
    payment = context.service.update_payment_status(
        args.payment_id,
        PaymentStatus(args.status),
        initial_installment=initial,
    )
    print(format_payment(payment))
    return 0


def run_pay_installment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    payment = context.service.add_installment(args.payment_id, models.to_decimal(args.amount))
    print(format_payment(payment))
    return 0


def run_delete_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    context.service.delete_payment(args.payment_id)
    print(f"Deleted payment {args.payment_id}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List transactions with the requested selection."""
    page = context.service.list_transactions(
        translate_selection(args),
        customer_id=args.customer_id,
        status=TransactionStatus(args.status) if args.status else None,
    )
    _print_page(page, format_transaction)
    return 0


def run_payments_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List payments with the requested selection."""
    page = context.service.list_payments(
        translate_selection(args),
        status=PaymentStatus(args.status) if args.status else None,
        method=PaymentMethod(args.method) if args.method else None,
    )
    _print_page(page, format_payment)
    return 0


def run_observers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for position, name in enumerate(context.service.list_observer_names(), start=1):
        print(f"{position}. {name}")
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


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
