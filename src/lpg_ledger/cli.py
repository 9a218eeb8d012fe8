"""Command-line entry points for the LPG ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into domain records for the state store, and printing
the results. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import log, reporting
from .constants import (
    Brand,
    CylinderSize,
    InventoryCategory,
    InvoiceType,
    PaymentMethod,
    WALK_IN_CUSTOMER_LABEL,
)
from .data_manager import GatewayError
from .errors import BusinessRuleViolation, StoreError, describe_error
from .models import (
    BorrowedCylinder,
    Customer,
    Expense,
    InventoryItem,
    RefillItem,
    Sale,
    SaleItem,
    parse_expense_category,
)
from .store import ConfirmCallback, StateStore


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[StateStore, argparse.Namespace], int]


BRAND_CHOICES = [member.value for member in Brand]
SIZE_CHOICES = [member.value for member in CylinderSize]
PAYMENT_CHOICES = [member.value for member in PaymentMethod]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="lpg-cli",
        description="Command-line tools for the LPG shop ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the current directory by default).",
    )
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Report date (YYYY-MM-DD) for daily and monthly summaries; defaults to today.",
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
    """Declare mutating CLI commands such as sales and expenses."""
    specs = {
        "add-customer": register_add_customer_command(subparsers),
        "add-stock": register_add_stock_command(subparsers),
        "sale": register_sale_command(subparsers),
        "expense": register_expense_command(subparsers),
        "delete-sale": register_delete_command(subparsers, "delete-sale", "Delete a sale and return its cylinders to stock.", run_delete_sale),
        "delete-expense": register_delete_command(subparsers, "delete-expense", "Delete an expense and reverse its refills.", run_delete_expense),
        "delete-customer": register_delete_command(subparsers, "delete-customer", "Delete a customer without sales.", run_delete_customer),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "daily": register_daily_command(subparsers),
        "monthly": register_monthly_command(subparsers),
        "invoice": register_invoice_command(subparsers),
        "customers": register_customers_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--branch", default="")
        parser.add_argument("--price", required=True, help="Base selling price per cylinder.")
        parser.add_argument("--brand", choices=BRAND_CHOICES, default=Brand.PTT.value)
        parser.add_argument("--size", choices=SIZE_CHOICES, default=CylinderSize.S48.value)
        parser.add_argument("--address", default=None)
        parser.add_argument("--tax-id", default=None)
        parser.add_argument("--notes", default=None)
        parser.add_argument(
            "--borrow",
            nargs=3,
            action="append",
            metavar=("BRAND", "SIZE", "QTY"),
            default=[],
            help="Empty cylinders lent to the customer; repeat for several types.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_add_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-stock``."""
    name = "add-stock"
    help_text = "Start tracking a gas cylinder type or accessory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--category",
            choices=[member.value for member in InventoryCategory],
            default=InventoryCategory.GAS.value,
        )
        parser.add_argument("--brand", choices=BRAND_CHOICES, default=None)
        parser.add_argument("--size", choices=SIZE_CHOICES, default=None)
        parser.add_argument("--name", default=None, help="Accessory name.")
        parser.add_argument("--total", type=int, required=True)
        parser.add_argument("--full", type=int, required=True)
        parser.add_argument("--on-loan", type=int, default=0)
        parser.add_argument("--cost-price", default=None)
        parser.add_argument("--low-stock", type=int, default=None, help="Alert when full stock drops to this level.")
        parser.add_argument("--notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_stock)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a cylinder sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument(
            "--item",
            nargs=4,
            action="append",
            required=True,
            metavar=("BRAND", "SIZE", "QTY", "UNIT_PRICE"),
            help="One sale line; repeat for several lines.",
        )
        parser.add_argument("--payment", choices=PAYMENT_CHOICES, default=PaymentMethod.CASH.value)
        parser.add_argument(
            "--invoice-type",
            choices=[member.value for member in InvoiceType],
            default=InvoiceType.CASH_RECEIPT.value,
        )
        parser.add_argument("--invoice-number", default="")
        parser.add_argument("--return-kg", default=None)
        parser.add_argument("--return-price", default=None, help="Credit per returned kg.")
        parser.add_argument("--when", type=datetime.fromisoformat, default=None, help="Sale time (ISO format).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expense``."""
    name = "expense"
    help_text = "Record an expense or a gas refill."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="expense_type", default="", help="Built-in or custom expense type.")
        parser.add_argument("--description", default="")
        parser.add_argument("--amount", required=True)
        parser.add_argument("--payment", choices=PAYMENT_CHOICES, default=PaymentMethod.CASH.value)
        parser.add_argument("--payee", default=None)
        parser.add_argument(
            "--refill",
            nargs=3,
            action="append",
            metavar=("BRAND", "SIZE", "QTY"),
            default=[],
            help="Cylinders refilled; repeat for several types.",
        )
        parser.add_argument("--return-kg", default=None)
        parser.add_argument("--return-amount", default=None)
        parser.add_argument("--when", type=datetime.fromisoformat, default=None, help="Expense time (ISO format).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expense)


def register_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    help_text: str,
    execute: Callable[[StateStore, argparse.Namespace], int],
) -> CommandSpec:
    """Register a ``delete-*`` command taking ``--id`` and ``--yes``."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--id", dest="record_id", required=True)
        parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def _simple_read_command(name: str, help_text: str, execute: Callable[[StateStore, argparse.Namespace], int]) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    return _simple_read_command("stock", "Display current stock levels.", run_stock_report)


def register_daily_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``daily``."""
    return _simple_read_command("daily", "Display the daily summary for the report date.", run_daily_report)


def register_monthly_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``monthly``."""
    return _simple_read_command("monthly", "Display the summary for the month of the report date.", run_monthly_report)


def register_customers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customers``."""
    return _simple_read_command("customers", "List customers and borrowed cylinders.", run_customers_report)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Display the totals printed on a sale's receipt or tax invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice_report)


def confirm_on_stdin(prompt: str) -> bool:
    """Ask ``prompt`` on the terminal and accept ``y``/``yes``."""
    answer = input(f"{prompt} [y/N] ")
    return answer.strip().lower() in {"y", "yes"}


def build_confirm(args: argparse.Namespace) -> ConfirmCallback:
    """Return the confirmation callback implied by ``--yes``."""
    if getattr(args, "yes", False):
        return lambda prompt: True
    return confirm_on_stdin


def load_store(
    config_path: Optional[Path] = None,
    *,
    confirm: ConfirmCallback = confirm_on_stdin,
    report_date: Optional[date] = None,
) -> StateStore:
    """Build the state store for CLI operations and load every collection."""
    store = StateStore.from_config(config_path, confirm=confirm, report_date=report_date)
    store.load()
    return store


def dispatch_command(
    store: StateStore,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(store, args)


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


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def _optional_decimal(raw: Optional[str]) -> Optional[Decimal]:
    return Decimal(raw) if raw not in (None, "") else None


def translate_add_customer(args: argparse.Namespace) -> Customer:
    """Translate CLI args into a new customer record."""
    return Customer(
        name=args.name,
        branch=args.branch,
        price=Decimal(args.price),
        cylinder_brand=Brand(args.brand),
        cylinder_size=CylinderSize(args.size),
        borrowed=tuple(
            BorrowedCylinder(brand=Brand(brand), size=CylinderSize(size), quantity=int(quantity))
            for brand, size, quantity in args.borrow
        ),
        address=args.address,
        tax_id=args.tax_id,
        notes=args.notes,
    )


def translate_add_stock(args: argparse.Namespace) -> InventoryItem:
    """Translate CLI args into a new inventory item."""
    category = InventoryCategory(args.category)
    if category == InventoryCategory.GAS and (args.brand is None or args.size is None):
        raise BusinessRuleViolation("Gas cylinder stock needs both --brand and --size")
    if category == InventoryCategory.ACCESSORY and not args.name:
        raise BusinessRuleViolation("Accessory stock needs --name")
    return InventoryItem(
        category=category,
        total=args.total,
        full=args.full,
        on_loan=args.on_loan,
        brand=Brand(args.brand) if args.brand else None,
        size=CylinderSize(args.size) if args.size else None,
        name=args.name,
        cost_price=_optional_decimal(args.cost_price),
        low_stock_threshold=args.low_stock,
        notes=args.notes,
    )


def translate_sale(args: argparse.Namespace) -> Sale:
    """Translate CLI args into a sale whose total is derived from its lines."""
    items = tuple(
        SaleItem.build(Brand(brand), CylinderSize(size), int(quantity), Decimal(unit_price))
        for brand, size, quantity, unit_price in args.item
    )
    return_kg = _optional_decimal(args.return_kg)
    return_price = _optional_decimal(args.return_price)
    return Sale(
        customer_id=args.customer_id,
        date=args.when or datetime.now(),
        payment_method=PaymentMethod(args.payment),
        invoice_type=InvoiceType(args.invoice_type),
        invoice_number=args.invoice_number,
        total_amount=reporting.compute_sale_total(items, return_kg, return_price),
        items=items,
        quantity=sum(item.quantity for item in items),
        return_kg=return_kg,
        return_price=return_price,
    )


def translate_expense(args: argparse.Namespace) -> Expense:
    """Translate CLI args into an expense record."""
    return Expense(
        date=args.when or datetime.now(),
        category=parse_expense_category(args.expense_type),
        description=args.description,
        amount=Decimal(args.amount),
        payment_method=PaymentMethod(args.payment),
        payee=args.payee,
        refill_items=tuple(
            RefillItem(brand=Brand(brand), size=CylinderSize(size), quantity=int(quantity))
            for brand, size, quantity in args.refill
        ),
        return_kg=_optional_decimal(args.return_kg),
        return_amount=_optional_decimal(args.return_amount),
    )


# ---------------------------------------------------------------------------
# Output formatting
# ---------------------------------------------------------------------------


def format_stock(items: Iterable[InventoryItem]) -> List[str]:
    lines = []
    for item in items:
        flag = "  LOW" if item.is_low_stock else ""
        lines.append(
            f"{item.label}: total={item.total} full={item.full} empty={item.empty} on_loan={item.on_loan}{flag}"
        )
    return lines


def format_daily_summary(summary: reporting.DailySummary) -> List[str]:
    lines = [
        f"Daily summary for {summary.report_date.isoformat()}",
        f"Income: {summary.income} (cash {summary.cash_income}, transfer {summary.transfer_income}, credit {summary.credit_income})",
        f"Gross profit: {summary.gross_profit}",
        f"Expenses: {summary.expense}",
        f"Net: {summary.net_profit}",
    ]
    for row in summary.sales_by_customer:
        lines.append(f"  {row.customer_name}: {row.total_amount}")
    for stat in summary.refill_stats:
        lines.append(f"  Refilled {stat.label}: cash {stat.cash_quantity}, credit {stat.credit_quantity}")
    return lines


def format_monthly_summary(summary: reporting.MonthlySummary) -> List[str]:
    lines = [
        f"Monthly summary for {summary.year:04d}-{summary.month:02d}",
        f"Income: {summary.income}",
        f"Gross profit: {summary.gross_profit}",
        f"Expenses: {summary.expense}",
        f"Net: {summary.net_profit}",
        f"Gas returned: {summary.return_kg} kg worth {summary.return_value}",
    ]
    for stat in summary.customer_stats:
        lines.append(f"  {stat.name} ({stat.branch}): {stat.tanks} tanks, total {stat.total}, profit {stat.profit}")
    for units in summary.units_sold:
        lines.append(
            f"  Sold {units.label}: cash/transfer {units.cash_quantity}, credit {units.credit_quantity}, "
            f"tax invoice {units.tax_invoice_quantity}"
        )
    for stat in summary.refill_stats:
        lines.append(f"  Refilled {stat.label}: cash {stat.cash_quantity}, credit {stat.credit_quantity}")
    for row in summary.expense_breakdown:
        lines.append(
            f"  {row.label} x{row.count}: cash {row.cash_amount}, credit {row.credit_amount}, "
            f"total {row.total_amount}, gas {row.gas_quantity}"
        )
    return lines


def format_invoice(store: StateStore, sale: Sale) -> List[str]:
    totals = reporting.invoice_totals(sale)
    company = store.read_company_profile()
    customer = store.find_customer(sale.customer_id)
    lines = [
        company.name or "-",
        f"{sale.invoice_type.value} {sale.invoice_number}".rstrip(),
        f"Date: {sale.date.isoformat(sep=' ', timespec='minutes')}",
        f"Customer: {customer.display_name if customer else WALK_IN_CUSTOMER_LABEL}",
    ]
    if sale.is_tax_invoice:
        lines.append(f"Seller tax id: {company.tax_id or '-'}")
        if customer is not None:
            lines.append(f"Buyer tax id: {customer.tax_id or '-'}")
    for line in reporting.sale_lines(sale):
        lines.append(f"  {line.brand.value} {line.size.value} x{line.quantity} @ {line.unit_price} = {line.total_price}")
    lines.append(f"Subtotal: {totals.subtotal}")
    if totals.return_deduction:
        lines.append(f"Gas return: -{totals.return_deduction}")
    lines.append(f"Net total: {totals.net_total}")
    if sale.is_tax_invoice:
        lines.append(f"VAT: {totals.vat}")
    lines.append(f"Grand total: {totals.grand_total}")
    return lines


def _emit(lines: Iterable[str]) -> None:
    for line in lines:
        print(line)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_customer(store: StateStore, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow."""
    customer = store.create_customer(translate_add_customer(args))
    print(f"Added customer {customer.display_name} ({customer.id})")
    return 0


def run_add_stock(store: StateStore, args: argparse.Namespace) -> int:
    """Execute the add-stock workflow."""
    item = store.create_inventory_item(translate_add_stock(args))
    print(f"Tracking {item.label} ({item.id})")
    return 0


def run_sale(store: StateStore, args: argparse.Namespace) -> int:
    """Execute the sale workflow."""
    sale = store.create_sale(translate_sale(args))
    print(f"Recorded sale {sale.id} totalling {sale.total_amount}")
    return 0


def run_expense(store: StateStore, args: argparse.Namespace) -> int:
    """Execute the expense workflow."""
    expense = store.create_expense(translate_expense(args))
    print(f"Recorded {expense.category_label} expense {expense.id} of {expense.amount}")
    return 0


def _report_delete(deleted: bool, label: str) -> int:
    print(f"Deleted {label}" if deleted else "Cancelled")
    return 0


def run_delete_sale(store: StateStore, args: argparse.Namespace) -> int:
    return _report_delete(store.delete_sale(args.record_id), f"sale {args.record_id}")


def run_delete_expense(store: StateStore, args: argparse.Namespace) -> int:
    return _report_delete(store.delete_expense(args.record_id), f"expense {args.record_id}")


def run_delete_customer(store: StateStore, args: argparse.Namespace) -> int:
    return _report_delete(store.delete_customer(args.record_id), f"customer {args.record_id}")


def run_stock_report(store: StateStore, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    _emit(format_stock(store.inventory))
    return 0


def run_daily_report(store: StateStore, args: argparse.Namespace) -> int:
    _emit(format_daily_summary(store.daily_summary()))
    return 0


def run_monthly_report(store: StateStore, args: argparse.Namespace) -> int:
    _emit(format_monthly_summary(store.monthly_summary()))
    return 0


def run_invoice_report(store: StateStore, args: argparse.Namespace) -> int:
    """Execute the invoice totals workflow."""
    _emit(format_invoice(store, store.get_sale(args.sale_id)))
    return 0


def run_customers_report(store: StateStore, args: argparse.Namespace) -> int:
    for customer in store.customers:
        borrowed = ", ".join(
            f"{entry.brand.value} {entry.size.value} x{entry.quantity}" for entry in customer.borrowed
        )
        print(f"{customer.id}  {customer.display_name}  price={customer.price}  borrowed=[{borrowed}]")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    message = describe_error(error)
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", message)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", message)
        return 3
    if isinstance(error, (StoreError, GatewayError)):
        log.error("%s", message)
        return 4
    log.error("%s", message)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        store = load_store(
            getattr(args, "config", None),
            confirm=build_confirm(args),
            report_date=getattr(args, "date", None),
        )
        return dispatch_command(store, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    sys.exit(main())
