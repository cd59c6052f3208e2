"""Command-line entry points for the water delivery ERP.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the entity objects consumed by the business
layer. Read commands print plain text reports to stdout.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from datetime import date, time
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, reports
from .constants import OrderStatus
from .exceptions import BusinessRuleViolation, NoUserBoundError, StorageIOError
from .inventory import product_status
from .models import Client, Expense, Order, Product, Purchase, Sale


SubParsers = argparse._SubParsersAction


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[SubParsers], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = True


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def parse_money(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {raw!r}") from exc


def parse_date(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date (expected YYYY-MM-DD): {raw!r}") from exc


def parse_time(raw: str) -> time:
    try:
        return time.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid time (expected HH:MM): {raw!r}") from exc


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="water-cli",
        description="Command-line tools for the water delivery ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    parser.add_argument(
        "--user",
        default=None,
        help="User namespace to operate on (defaults to [Defaults] DefaultUser).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = build_command_table([*write_command_specs(), *read_command_specs()])
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _registrar(name: str, help_text: str, arguments: Callable[[argparse.ArgumentParser], None]):
    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return registrar


def _spec(
    name: str,
    help_text: str,
    arguments: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    *,
    writes: bool = True,
) -> CommandSpec:
    return CommandSpec(
        name=name,
        help_text=help_text,
        register=_registrar(name, help_text, arguments),
        execute=execute,
        writes=writes,
    )


def _no_arguments(parser: argparse.ArgumentParser) -> None:
    return None


def _id_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--id", type=int, required=True)


def _product_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--quantity", type=int, required=True)
    parser.add_argument("--unit-price", type=parse_money, required=True)
    parser.add_argument("--minimum-stock", type=int, required=True)
    parser.add_argument("--description", default=None)


def _update_product_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--id", type=int, required=True)
    parser.add_argument("--name", default=None)
    parser.add_argument("--quantity", type=int, default=None)
    parser.add_argument("--unit-price", type=parse_money, default=None)
    parser.add_argument("--minimum-stock", type=int, default=None)
    parser.add_argument("--description", default=None)


def _client_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--address", required=True)
    parser.add_argument("--phone", required=True)
    parser.add_argument("--description", default=None)


def _purchase_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", type=int, required=True)
    parser.add_argument("--quantity", type=int, required=True)
    parser.add_argument("--unit-price", type=parse_money, required=True)
    parser.add_argument("--date", type=parse_date, default=None, help="Defaults to today.")
    parser.add_argument("--description", default=None)


def _edit_purchase_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--id", type=int, required=True)
    _purchase_arguments(parser)


def _sale_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--client-id", type=int, required=True)
    parser.add_argument("--product-id", type=int, required=True)
    parser.add_argument("--quantity", type=int, required=True)
    parser.add_argument("--unit-price", type=parse_money, required=True)
    parser.add_argument("--date", type=parse_date, default=None, help="Defaults to today.")
    parser.add_argument("--time", type=parse_time, default=None)
    parser.add_argument("--description", default=None)


def _expense_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--title", required=True)
    parser.add_argument("--amount", type=parse_money, required=True)
    parser.add_argument("--date", type=parse_date, default=None, help="Defaults to today.")
    parser.add_argument("--description", default=None)


def _order_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--client-id", type=int, required=True)
    parser.add_argument("--product-id", type=int, required=True)
    parser.add_argument("--quantity", type=int, required=True)
    parser.add_argument("--unit-price", type=parse_money, required=True)
    parser.add_argument("--scheduled-date", type=parse_date, default=None)
    parser.add_argument("--scheduled-time", type=parse_time, default=None)


def _order_status_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--id", type=int, required=True)
    parser.add_argument("--status", choices=[member.value for member in OrderStatus], required=True)


def _range_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=parse_date, default=None)
    parser.add_argument("--end", type=parse_date, default=None)


def _orders_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--on", type=parse_date, default=None, help="Only orders scheduled for this day.")


def write_command_specs() -> Sequence[CommandSpec]:
    """Declare mutating CLI commands."""
    return (
        _spec("add-product", "Register a new product.", _product_arguments, run_add_product),
        _spec("update-product", "Edit a product, including manual stock corrections.", _update_product_arguments, run_update_product),
        _spec("delete-product", "Delete a product.", _id_argument, run_delete_product),
        _spec("add-client", "Register a new client.", _client_arguments, run_add_client),
        _spec("purchase", "Record a purchase and add its units to stock.", _purchase_arguments, run_purchase),
        _spec("edit-purchase", "Replace a purchase and reconcile stock.", _edit_purchase_arguments, run_edit_purchase),
        _spec("delete-purchase", "Delete a purchase and remove its units from stock.", _id_argument, run_delete_purchase),
        _spec("sale", "Record a sale after checking stock.", _sale_arguments, run_sale),
        _spec("delete-sale", "Delete a sale.", _id_argument, run_delete_sale),
        _spec("expense", "Record an expense.", _expense_arguments, run_expense),
        _spec("order", "Schedule a delivery order.", _order_arguments, run_order),
        _spec("order-status", "Change the status of a delivery order.", _order_status_arguments, run_order_status),
        _spec("seed", "Load the demo catalogue into empty tables.", _no_arguments, run_seed),
    )


def read_command_specs() -> Sequence[CommandSpec]:
    """Declare read-only CLI commands."""
    return (
        _spec("stock", "Display current stock levels.", _no_arguments, run_stock_report, writes=False),
        _spec("alerts", "Display products at low or critical stock.", _no_arguments, run_alerts_report, writes=False),
        _spec("summary", "Display purchases, sales, expenses and profit.", _range_arguments, run_summary_report, writes=False),
        _spec("orders", "Display undelivered orders by schedule.", _orders_arguments, run_orders_report, writes=False),
    )


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def translate_add_product(args: argparse.Namespace) -> Product:
    """Translate CLI args into a new product."""
    return Product(
        name=args.name,
        quantity=args.quantity,
        unit_price=args.unit_price,
        minimum_stock=args.minimum_stock,
        description=args.description,
    )


def translate_update_product(args: argparse.Namespace, current: Product) -> Product:
    """Overlay the options given on the command line onto ``current``."""
    changes = {
        "name": args.name,
        "quantity": args.quantity,
        "unit_price": args.unit_price,
        "minimum_stock": args.minimum_stock,
        "description": args.description,
    }
    return replace(current, **{key: value for key, value in changes.items() if value is not None})


def translate_add_client(args: argparse.Namespace) -> Client:
    return Client(name=args.name, address=args.address, phone=args.phone, description=args.description)


def translate_purchase(args: argparse.Namespace) -> Purchase:
    """Translate CLI args into a purchase; the product name is filled in by the service."""
    return Purchase(
        product_id=args.product_id,
        product_name="",
        quantity=args.quantity,
        unit_price=args.unit_price,
        date=args.date or core_logic.today(),
        description=args.description,
        id=getattr(args, "id", None),
    )


def translate_sale(args: argparse.Namespace) -> Sale:
    return Sale(
        client_id=args.client_id,
        client_name="",
        product_id=args.product_id,
        product_name="",
        quantity=args.quantity,
        unit_price=args.unit_price,
        date=args.date or core_logic.today(),
        time=args.time,
        description=args.description,
    )


def translate_expense(args: argparse.Namespace) -> Expense:
    return Expense(title=args.title, amount=args.amount, date=args.date or core_logic.today(), description=args.description)


def translate_order(args: argparse.Namespace) -> Order:
    now = core_logic.now()
    return Order(
        client_id=args.client_id,
        client_name="",
        client_address="",
        product_id=args.product_id,
        product_name="",
        quantity=args.quantity,
        unit_price=args.unit_price,
        date=now.date(),
        time=now.time().replace(microsecond=0, tzinfo=None),
        scheduled_date=args.scheduled_date,
        scheduled_time=args.scheduled_time,
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.create_product(context, translate_add_product(args))
    print(f"Created product {product.id}: {product.name}")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    current = core_logic.require_product(context, args.id)
    product = core_logic.update_product(context, translate_update_product(args, current))
    print(f"Updated product {product.id}: {product.name} (quantity {product.quantity})")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_product(context, args.id)
    return 0


def run_add_client(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    client = core_logic.create_client(context, translate_add_client(args))
    print(f"Created client {client.id}: {client.name}")
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    purchase = core_logic.create_purchase(context, translate_purchase(args))
    print(f"Recorded purchase {purchase.id}: {purchase.quantity} x {purchase.product_name} = {purchase.total}")
    return 0


def run_edit_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    purchase = core_logic.update_purchase(context, translate_purchase(args))
    print(f"Updated purchase {purchase.id}: {purchase.quantity} x {purchase.product_name} = {purchase.total}")
    return 0


def run_delete_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_purchase(context, args.id)
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sale = core_logic.create_sale(context, translate_sale(args))
    print(f"Recorded sale {sale.id}: {sale.quantity} x {sale.product_name} to {sale.client_name} = {sale.total}")
    return 0


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_sale(context, args.id)
    return 0


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    expense = core_logic.create_expense(context, translate_expense(args))
    print(f"Recorded expense {expense.id}: {expense.title} = {expense.amount}")
    return 0


def run_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    order = core_logic.create_order(context, translate_order(args))
    print(f"Created order {order.id} for {order.client_name}: {order.total}")
    return 0


def run_order_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    order = core_logic.set_order_status(context, args.id, OrderStatus(args.status))
    print(f"Order {order.id} is now {order.status.value}")
    return 0


def run_seed(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    created = core_logic.seed_demo_data(context)
    print(", ".join(f"{table}: {count}" for table, count in created.items()))
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.list_products(context):
        print(
            f"{product.id:>4}  {product.name:<24} {product.quantity:>6}  "
            f"min {product.minimum_stock:>4}  {product_status(product).value}"
        )
    print(f"Stock value: {reports.calculate_stock_valuation(context)}")
    return 0


def run_alerts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    alerts = reports.list_inventory_alerts(context)
    for level in ("critical", "low"):
        for product in alerts[level]:
            print(f"{level.upper():<8} {product.id:>4}  {product.name} ({product.quantity}/{product.minimum_stock})")
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = reports.calculate_financial_summary(context, args.start, args.end)
    for key in ("purchases", "sales", "expenses", "profit"):
        print(f"{key.capitalize():<10} {summary[key]:>12}")
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for order in reports.list_upcoming_orders(context, on=args.on):
        when = order.scheduled_date or order.date
        print(
            f"{order.id:>4}  {when.isoformat()}  {order.status.value:<10} "
            f"{order.client_name} @ {order.client_address}: {order.quantity} x {order.product_name}"
        )
    return 0


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None, user_id: Optional[str] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context and bind the requested user namespace."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    core_logic.bind_user(context, user_id or context.settings.default_user_id)
    return context


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


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into exit codes."""
    log.error("%s", error)
    if isinstance(error, BusinessRuleViolation):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, NoUserBoundError):
        return 4
    if isinstance(error, StorageIOError):
        return 5
    if isinstance(error, ValueError):
        return 6
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(args.config, args.user)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes and not context.settings.autosave:
            core_logic.persist_context(context)
        return exit_code
    except Exception as error:
        return handle_cli_error(error)
