"""Command-line entry points for the POS ledger engine.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the components
and printing their results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import cashflow, core_logic, log, reports, set_console_level, shifts, stock_ledger
from .constants import Collection, ShiftType, StockChangeType
from .records import deserialize_sale


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-ledger",
        description="Reconciliation and validation tools for the POS ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the current directory by default).",
    )
    parser.add_argument("--verbose", action="store_true", help="Show informational log messages on the console.")
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
    """Declare mutating CLI commands such as shift and stock changes."""
    specs = {
        "open-shift": register_open_shift_command(subparsers),
        "close-shift": register_close_shift_command(subparsers),
        "stock-change": register_stock_change_command(subparsers),
        "sale-stock": register_sale_stock_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "active-shifts": register_active_shifts_command(subparsers),
        "shift-report": register_shift_report_command(subparsers),
        "stock-history": register_stock_history_command(subparsers),
        "stock-audit": register_stock_audit_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "cashflow": register_cashflow_command(subparsers),
        "profit": register_profit_command(subparsers),
        "product-profit": register_product_profit_command(subparsers),
        "data-quality": register_data_quality_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def add_period_arguments(parser: argparse.ArgumentParser) -> None:
    """Attach the shared ``--period`` / ``--start`` / ``--end`` options."""
    parser.add_argument("--period", choices=cashflow.PERIODS, default="today")
    parser.add_argument("--start", default=None, help="First day (YYYY-MM-DD); overrides --period.")
    parser.add_argument("--end", default=None, help="Last day included (YYYY-MM-DD).")


def register_open_shift_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``open-shift``."""
    name = "open-shift"
    help_text = "Open a cash-drawer shift for a cashier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--cashier-id", required=True)
        parser.add_argument("--cashier-name", required=True)
        parser.add_argument("--starting-cash", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_open_shift, mutates=True)


def register_close_shift_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``close-shift``."""
    name = "close-shift"
    help_text = "Close a shift with the counted drawer cash."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--shift-id", required=True)
        parser.add_argument("--actual-cash", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_close_shift, mutates=True)


def register_stock_change_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-change``."""
    name = "stock-change"
    help_text = "Set a product's stock and record the movement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--new-quantity", required=True, type=int)
        parser.add_argument("--reason", required=True)
        parser.add_argument("--actor-name", required=True)
        parser.add_argument(
            "--change-type",
            choices=[member.value for member in StockChangeType],
            default=StockChangeType.ADJUSTMENT.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_change, mutates=True)


def register_sale_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale-stock``."""
    name = "sale-stock"
    help_text = "Deduct a stored sale transaction's items from stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--actor-name", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale_stock, mutates=True)


def register_active_shifts_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``active-shifts``."""
    name = "active-shifts"
    help_text = "List the shifts that are still open."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_active_shifts)


def register_shift_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``shift-report``."""
    name = "shift-report"
    help_text = "Summarise the shifts of a period per cashier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_period_arguments(parser)
        parser.add_argument("--cashier-id", default=None)
        parser.add_argument("--shift-type", choices=[kind.value for kind in ShiftType], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_shift_report)


def register_stock_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-history``."""
    name = "stock-history"
    help_text = "Display the stock movements of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_history)


def register_stock_audit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-audit``."""
    name = "stock-audit"
    help_text = "Check that every product's movements add up to its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_audit)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "Display products that are running low or out of stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--threshold", type=int, default=None)
        parser.add_argument("--branch-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock)


def register_cashflow_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cashflow``."""
    name = "cashflow"
    help_text = "Display the cashflow with its running balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_period_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cashflow_report)


def register_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``profit``."""
    name = "profit"
    help_text = "Display revenue, cost, and profit summaries."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_period_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_profit_report)


def register_product_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``product-profit``."""
    name = "product-profit"
    help_text = "Display profit per product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_period_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_product_profit_report)


def register_data_quality_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``data-quality``."""
    name = "data-quality"
    help_text = "Summarise excluded transactions and fallback usage."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_data_quality_report)


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


def translate_open_shift(args: argparse.Namespace) -> core_logic.OpenShiftCommand:
    """Translate CLI args into an open-shift command object."""
    return core_logic.OpenShiftCommand(
        cashier_id=args.cashier_id,
        cashier_name=args.cashier_name,
        starting_cash=Decimal(args.starting_cash),
        notes=args.notes,
    )


def translate_close_shift(args: argparse.Namespace) -> core_logic.CloseShiftCommand:
    """Translate CLI args into a close-shift command object."""
    return core_logic.CloseShiftCommand(
        shift_id=args.shift_id,
        actual_cash=Decimal(args.actual_cash),
        notes=args.notes,
    )


def translate_stock_change(args: argparse.Namespace) -> core_logic.StockChangeCommand:
    """Translate CLI args into a stock change command object."""
    return core_logic.StockChangeCommand(
        product_id=args.product_id,
        new_quantity=args.new_quantity,
        reason=args.reason,
        actor_name=args.actor_name,
        change_type=StockChangeType(args.change_type),
    )


def translate_window(context: core_logic.RuntimeContext, args: argparse.Namespace) -> Tuple[datetime, datetime]:
    """Translate ``--period`` or ``--start``/``--end`` into a local window."""
    if args.start is None:
        return cashflow.resolve_period(args.period, context.now(), context.tz)
    first = date.fromisoformat(args.start)
    last = date.fromisoformat(args.end) if args.end else first
    if last < first:
        raise ValueError("--end must not precede --start")
    start = datetime(first.year, first.month, first.day, tzinfo=context.tz)
    end = datetime(last.year, last.month, last.day, tzinfo=context.tz) + timedelta(days=1)
    return start, end


def run_open_shift(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Open a shift and print its identifier."""
    shift = shifts.open_shift(context, translate_open_shift(args))
    print(f"Opened {shift.shift_type.value} shift {shift.shift_id} ({shifts.shift_time_range(shift.shift_type)})")
    return 0


def run_close_shift(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Close a shift and print the reconciliation."""
    shift = shifts.close_shift(context, translate_close_shift(args))
    print(f"Shift {shift.shift_id} closed")
    print(f"  Starting cash: {shift.starting_cash}")
    print(f"  Cash sales:    {shift.cash_sales}")
    print(f"  Expected cash: {shift.expected_cash}")
    print(f"  Counted cash:  {shift.ending_cash}")
    print(f"  Difference:    {shift.difference}")
    return 0


def run_stock_change(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Record a stock change."""
    movement = stock_ledger.record_movement(context, translate_stock_change(args))
    print(
        f"{movement.product_name}: {movement.quantity_before} -> {movement.quantity_after} "
        f"({movement.quantity_changed:+d})"
    )
    return 0


def run_sale_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Deduct a stored sale from stock."""
    raw = next(
        (
            record
            for record in context.store.read(Collection.SALE_TRANSACTIONS)
            if str(record.get("id")) == args.transaction_id
        ),
        None,
    )
    if raw is None:
        raise core_logic.MissingReferenceError(f"Transaction '{args.transaction_id}' not found")
    movements = stock_ledger.record_sale_movements(context, deserialize_sale(raw, tz=context.tz), args.actor_name)
    for movement in movements:
        print(f"{movement.product_name}: {movement.quantity_before} -> {movement.quantity_after}")
    return 0


def run_active_shifts(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List active shifts."""
    for shift in shifts.list_active_shifts(context):
        print(f"{shift.shift_id}\t{shift.cashier_name}\t{shift.starting_cash}")
    return 0


def run_shift_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print per-cashier shift totals for the selected window."""
    start, end = translate_window(context, args)
    shift_type = ShiftType(args.shift_type) if args.shift_type else None
    report = shifts.shift_report(context, start, end, cashier_id=args.cashier_id, shift_type=shift_type)
    for stats in report.cashiers:
        split = " ".join(f"{kind.value}={count}" for kind, count in stats.shift_breakdown.items())
        print(
            f"{stats.cashier_name}\tshifts {stats.shift_count}\tsales {stats.total_sales}\t"
            f"cash {stats.cash_sales}\ttransactions {stats.transaction_count}\t"
            f"difference {stats.total_difference}\t{split}"
        )
    print(f"Shifts: {len(report.shifts)}  Sales: {report.total_sales}  Transactions: {report.total_transactions}")
    return 0


def run_stock_history(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a product's movements with the replayed stock."""
    history = stock_ledger.history_for(context, args.product_id)
    for movement in history:
        print(
            f"{movement.timestamp}\t{movement.change_type.value}\t"
            f"{movement.quantity_before} -> {movement.quantity_after}\t{movement.reason}"
        )
    print(f"Replayed stock: {stock_ledger.replay_stock(history)}")
    return 0


def run_stock_audit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the products whose ledgers are inconsistent; exit 2 if any."""
    audits = stock_ledger.audit_stock_ledger(context)
    for audit in audits:
        print(f"{audit.product_id}\tstored {audit.recorded_stock}\treplayed {audit.replayed_stock}")
    if not audits:
        print("Stock ledger is consistent.")
    return 2 if audits else 0


def run_low_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print low and out-of-stock products."""
    for product in stock_ledger.low_stock(context, args.threshold, args.branch_id):
        print(f"LOW\t{product.product_id}\t{product.name}\t{product.stock}")
    for product in stock_ledger.out_of_stock(context, args.branch_id):
        print(f"OUT\t{product.product_id}\t{product.name}\t{product.stock}")
    return 0


def run_cashflow_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the cashflow report of the selected window."""
    start, end = translate_window(context, args)
    report = cashflow.reconstruct_cashflow(context, start, end)
    print(f"Opening balance: {report.opening_balance}")
    for entry in report.entries:
        sign = "+" if entry.type.value == "income" else "-"
        print(
            f"{entry.date:%Y-%m-%d %H:%M}\t{entry.category}\t{entry.description}\t"
            f"{sign}{entry.amount}\t{entry.running_balance}"
        )
    print(f"Income: {report.total_income}  Expense: {report.total_expense}  Net: {report.net_cashflow}")
    print(f"Closing balance: {report.closing_balance}")
    if report.skipped_records:
        print(f"Skipped records: {report.skipped_records}")
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the profit and loss statement."""
    start, end = translate_window(context, args)
    statement = reports.profit_and_loss(context, start, end)
    print(f"Revenue:           {statement.revenue}")
    print(f"COGS:              {statement.cogs}")
    print(f"Gross profit:      {statement.gross_profit}")
    print(f"Operational costs: {statement.operational_costs}")
    print(f"Net profit:        {statement.net_profit}")
    print(f"Margin:            {statement.margin_percent:.2f}%")
    if statement.estimated_transactions:
        print(f"Transactions with estimated costs: {statement.estimated_transactions}")
    return 0


def run_product_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print profit per product."""
    start, end = translate_window(context, args)
    for row in reports.product_profit(context, start, end):
        flag = " *" if row.has_estimation else ""
        print(f"{row.product_name}\t{row.quantity}\t{row.revenue}\t{row.cost}\t{row.profit}{flag}")
    return 0


def run_data_quality_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the data quality summary."""
    summary = reports.data_quality_summary(context)
    print(f"Transactions:            {summary.total_transactions}")
    print(f"Reportable:              {summary.reportable_transactions}")
    print(f"Excluded:                {summary.excluded_transactions}")
    print(f"Estimated costs:         {summary.estimated_cost_transactions}")
    print(f"Product name fallbacks:  {summary.name_fallback_lines}")
    print(f"Cashier name fallbacks:  {summary.cashier_fallback_transactions}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.ConcurrencyConflict):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def run_and_persist(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Execute a mutating command and save the workbook.

    When another session saved the workbook first, the context is reloaded
    from disk and the command runs again on the fresh data, up to the
    configured number of write retries.

    Raises:
        ConcurrencyConflict: If every save lost the race.
    """
    attempts = context.settings.write_retries
    for attempt in range(1, attempts + 1):
        exit_code = dispatch_command(context, args, command_table)
        if exit_code != 0:
            return exit_code
        try:
            persist_workbook(context)
            return exit_code
        except core_logic.ConcurrencyConflict:
            if attempt == attempts:
                raise
            log.warning("Workbook changed on disk during %s; reloading (attempt %d of %d)", args.command, attempt, attempts)
            context = core_logic.refresh_context(context)
    raise AssertionError("unreachable")


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if args.verbose:
        set_console_level(logging.INFO)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        spec = command_table.get(args.command)
        if spec is not None and spec.mutates:
            return run_and_persist(context, args, command_table)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
