"""Command-line entry points for Outvoicing.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the business layer and printing the
results. The CLI works on the demo business seeded from
:mod:`outvoicing.demo_data`, with the company profile taken from
``config.ini``. Nothing is persisted between runs.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, demo_data, exporter, log, payments, reports
from .back_office import low_stock_products
from .constants import InvoiceStatus


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
        prog="outvoicing-cli",
        description="Command-line tools for the Outvoicing back office.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Evaluate date-sensitive reports as of this ISO date.",
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
    """Declare commands that change the in-memory state or produce files."""
    specs = {
        "convert": register_convert_command(subparsers),
        "reorder": register_reorder_command(subparsers),
        "pay": register_pay_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "dashboard": _simple_command("dashboard", "Display the dashboard summary.", run_dashboard),
        "todo": _simple_command("todo", "Display the daily to-do feed.", run_todo),
        "revenue": _simple_command("revenue", "Display monthly paid revenue.", run_revenue),
        "top-services": _simple_command("top-services", "Display the most billed services.", run_top_services),
        "profit": _simple_command("profit", "Display revenue, cost, and profit summaries.", run_profit),
        "quotes": _simple_command("quotes", "List quotes.", run_quotes),
        "low-stock": _simple_command("low-stock", "List products at or below their reorder point.", run_low_stock),
        "invoices": register_invoices_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _simple_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Build a spec for a command that takes no options of its own."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_invoices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoices``."""
    name = "invoices"
    help_text = "List invoices, optionally filtered by status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", choices=[member.value for member in InvoiceStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoices)


def register_convert_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``convert``."""
    name = "convert"
    help_text = "Convert a quote into a new draft invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--quote-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_convert)


def register_reorder_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reorder``."""
    name = "reorder"
    help_text = "Generate a purchase order for an invoice's stock shortfall."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reorder)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Show the payment gateway hand-off for an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--base-url", default=payments.DEFAULT_BASE_URL)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export invoices issued in a date range to CSV or Excel."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=date.fromisoformat, default=None)
        parser.add_argument("--end", type=date.fromisoformat, default=None)
        parser.add_argument("--format", dest="fmt", choices=exporter.SUPPORTED_FORMATS, default="csv")
        parser.add_argument("--output-dir", type=Path, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(
    config_path: Optional[Path] = None,
    today: Optional[date] = None,
) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations, seeded with the demo business."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return replace(context, state=demo_data.build_demo_state(context.state.company, today=today))


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


def format_money(amount: Decimal) -> str:
    return f"R {core_logic.quantize_money(amount):,.2f}"


def _today(args: argparse.Namespace) -> Optional[date]:
    return getattr(args, "today", None)


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = reports.build_dashboard(context, _today(args))
    print(f"Outstanding:        {format_money(summary.outstanding_total)} ({summary.open_invoice_count} open invoices)")
    print(f"Overdue:            {format_money(summary.overdue_total)} ({summary.overdue_count} overdue invoices)")
    print(f"Paid (last 30 days): {format_money(summary.revenue_last_30_days)}")
    print(f"Profit margin:      {summary.profitability.margin}%")
    print(f"To-do items:        {len(summary.todo)}")
    print(f"Low stock products: {len(summary.low_stock)}")
    print("Recent invoices:")
    for invoice in summary.recent_invoices:
        print(f"  {invoice.invoice_number}  {invoice.client.name:<30} {format_money(invoice.total):>14}  {invoice.status.value}")
    return 0


def run_todo(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    state = context.state
    feed = reports.build_daily_todo(state.invoices.values(), state.quotes.values(), state.tasks.values(), _today(args))
    if not feed:
        print("Nothing to do today.")
    for item in feed:
        print(f"[{item.kind.value}] {item.text}")
    return 0


def run_revenue(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for bucket in reports.monthly_revenue(context.state.invoices.values()):
        print(f"{bucket.label}  {format_money(bucket.total)}")
    return 0


def run_top_services(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for usage in reports.top_services(context.state.invoices.values()):
        print(f"{usage.description}: {usage.quantity} units")
    return 0


def run_profit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the profit reporting workflow."""
    summary = reports.calculate_profit_summary(context.state.invoices.values())
    print(f"Revenue: {format_money(summary.revenue)}")
    print(f"Cost:    {format_money(summary.cost)}")
    print(f"Profit:  {format_money(summary.profit)}")
    print(f"Margin:  {summary.margin}%")
    return 0


def run_invoices(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List invoices with their status as of the evaluation date."""
    today = _today(args)
    wanted = InvoiceStatus(args.status) if args.status else None
    for invoice in context.state.invoices:
        status = core_logic.effective_invoice_status(invoice, today)
        if wanted is not None and status != wanted:
            continue
        print(
            f"{invoice.invoice_number}  {invoice.issue_date.isoformat()}  {invoice.client.name:<30} "
            f"{format_money(invoice.total):>14}  {status.value}"
        )
    return 0


def run_quotes(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for quote in context.state.quotes:
        print(
            f"{quote.quote_number}  expires {quote.expiry_date.isoformat()}  {quote.client.name:<30} "
            f"{format_money(quote.total):>14}  {quote.status.value}"
        )
    return 0


def run_low_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in low_stock_products(context.state.products.values()):
        print(f"{product.sku}  {product.name}: {product.current_stock} in stock (reorder at {product.reorder_point})")
    return 0


def run_convert(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Convert a quote and save the resulting draft invoice."""
    quote = core_logic.get_quote(context, args.quote_id)
    draft = core_logic.convert_quote_to_invoice(quote)
    invoice = core_logic.save_invoice(context, draft, today=_today(args))
    print(f"Created {invoice.invoice_number} ({invoice.status.value}) from {quote.quote_number}: {format_money(invoice.total)}")
    return 0


def run_reorder(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Generate a purchase order, or report that none is needed."""
    order = core_logic.generate_purchase_order(context, args.invoice_id, today=_today(args))
    if order is None:
        print("No purchase order needed: all items are in stock.")
        return 0
    print(f"Created purchase order {order.po_number} for {order.supplier} ({order.status.value})")
    for line in order.items:
        print(f"  {line.product_name}: {line.quantity}")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    invoice = core_logic.get_invoice(context, args.invoice_id)
    instruction = payments.initiate_payment(invoice, context.state.company, base_url=args.base_url)
    if isinstance(instruction, payments.PaymentRedirect):
        print(f"{instruction.method} {instruction.url}")
        for key, value in instruction.fields.items():
            print(f"  {key}={value}")
    else:
        print(f"Yoco popup with key {instruction.public_key}: {instruction.currency} {instruction.amount_in_cents} cents")
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    report = reports.filter_invoices_by_date(
        context.state.invoices.values(), args.start, args.end, today=_today(args)
    )
    output_dir = args.output_dir or context.settings.export_dir
    written = exporter.export_report(report, output_dir, args.fmt)
    print(f"Exported {len(report.invoices)} invoice(s) to {written}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None), _today(args))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
