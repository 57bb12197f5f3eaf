"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import logging
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping

import pytest

from conftest import millis
from pos_ledger import CONSOLE_HANDLER_NAME, cli, core_logic, log
from pos_ledger.constants import Collection, StockChangeType


WRITE_COMMANDS = {
    "open-shift",
    "close-shift",
    "stock-change",
    "sale-stock",
}

READ_COMMANDS = {
    "active-shifts",
    "shift-report",
    "stock-history",
    "stock-audit",
    "low-stock",
    "cashflow",
    "profit",
    "product-profit",
    "data-quality",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "pos-ledger"
    assert "ledger" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire mutating and reporting sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert {name for name, spec in command_table.items() if spec.mutates} == WRITE_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
    for name in WRITE_COMMANDS:
        assert name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return read-only CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert not any(spec.mutates for spec in specs.values())
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


# ---------------------------------------------------------------------------
# Command registrations
# ---------------------------------------------------------------------------


def _parse(register, argv):
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    register(subparsers).register(subparsers)
    return parser.parse_args(argv)


def test_register_open_shift_command_configures_arguments():
    namespace = _parse(
        cli.register_open_shift_command,
        ["open-shift", "--cashier-id", "C1", "--cashier-name", "Rani", "--starting-cash", "100000"],
    )

    assert namespace.command == "open-shift"
    assert namespace.cashier_id == "C1"
    assert namespace.starting_cash == "100000"
    assert namespace.notes is None


def test_register_close_shift_command_configures_arguments():
    namespace = _parse(
        cli.register_close_shift_command,
        ["close-shift", "--shift-id", "S1", "--actual-cash", "345000", "--notes", "Kurang"],
    )

    assert namespace.shift_id == "S1"
    assert namespace.actual_cash == "345000"
    assert namespace.notes == "Kurang"


def test_register_stock_change_command_configures_arguments():
    """--new-quantity is parsed as an int and the change type defaults to adjustment."""

    namespace = _parse(
        cli.register_stock_change_command,
        ["stock-change", "--product-id", "P1", "--new-quantity", "12", "--reason", "Opname", "--actor-name", "Rani"],
    )

    assert namespace.new_quantity == 12
    assert namespace.change_type == StockChangeType.ADJUSTMENT.value


def test_register_stock_change_command_rejects_unknown_change_type():
    with pytest.raises(SystemExit):
        _parse(
            cli.register_stock_change_command,
            [
                "stock-change",
                "--product-id",
                "P1",
                "--new-quantity",
                "1",
                "--reason",
                "x",
                "--actor-name",
                "Rani",
                "--change-type",
                "theft",
            ],
        )


def test_register_low_stock_command_configures_arguments():
    namespace = _parse(cli.register_low_stock_command, ["low-stock", "--threshold", "5", "--branch-id", "B1"])

    assert namespace.threshold == 5
    assert namespace.branch_id == "B1"


@pytest.mark.parametrize(
    ("register", "name"),
    [
        (cli.register_cashflow_command, "cashflow"),
        (cli.register_profit_command, "profit"),
        (cli.register_product_profit_command, "product-profit"),
        (cli.register_shift_report_command, "shift-report"),
    ],
)
def test_period_commands_default_to_today(register, name):
    namespace = _parse(register, [name])

    assert namespace.period == "today"
    assert namespace.start is None
    assert namespace.end is None


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_load_runtime_context_supports_defaults(monkeypatch):
    """Without --config the core layer searches for config.ini itself."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path is None
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context() is sentinel_context


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(context):
    """dispatch_command should call the executor associated with the command."""

    called = {}

    def execute(ctx: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        called["context"] = ctx
        return 0

    table = {"alpha": cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), execute)}
    assert cli.dispatch_command(context, argparse.Namespace(command="alpha"), table) == 0
    assert called["context"] is context


def test_dispatch_command_handles_unknown_commands(context):
    """dispatch_command should raise a clear error for unknown commands."""

    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should index specs by their command names."""

    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_open_shift_returns_command():
    args = argparse.Namespace(cashier_id="C1", cashier_name="Rani", starting_cash="100000.50", notes=None)

    command = cli.translate_open_shift(args)

    assert isinstance(command, core_logic.OpenShiftCommand)
    assert command.starting_cash == Decimal("100000.50")
    assert command.timestamp is None


def test_translate_close_shift_returns_command():
    command = cli.translate_close_shift(argparse.Namespace(shift_id="S1", actual_cash="345000", notes="x"))

    assert command == core_logic.CloseShiftCommand(shift_id="S1", actual_cash=Decimal("345000"), notes="x")


def test_translate_stock_change_returns_command():
    args = argparse.Namespace(product_id="P1", new_quantity=5, reason="Rusak", actor_name="Rani", change_type="adjustment")

    command = cli.translate_stock_change(args)

    assert command.change_type is StockChangeType.ADJUSTMENT
    assert command.new_quantity == 5


def test_translate_window_uses_period_by_default(context):
    start, end = cli.translate_window(context, argparse.Namespace(period="week", start=None, end=None))

    assert (start, end) == (datetime(2025, 1, 13, tzinfo=UTC), datetime(2025, 1, 20, tzinfo=UTC))


def test_translate_window_includes_the_end_day(context):
    args = argparse.Namespace(period="today", start="2025-01-10", end="2025-01-12")

    start, end = cli.translate_window(context, args)

    assert (start, end) == (datetime(2025, 1, 10, tzinfo=UTC), datetime(2025, 1, 13, tzinfo=UTC))


def test_translate_window_rejects_reversed_dates(context):
    with pytest.raises(ValueError):
        cli.translate_window(context, argparse.Namespace(period="today", start="2025-01-12", end="2025-01-10"))


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def test_run_open_and_close_shift_print_reconciliation(context, clock, capsys):
    cli.run_open_shift(
        context,
        argparse.Namespace(cashier_id="C1", cashier_name="Rani", starting_cash="100000", notes=None),
    )
    shift_id = context.store.read(Collection.SHIFTS)[0]["id"]

    assert cli.run_close_shift(context, argparse.Namespace(shift_id=shift_id, actual_cash="90000", notes=None)) == 0

    output = capsys.readouterr().out
    assert "Opened pagi shift" in output
    assert "Expected cash: 100000" in output
    assert "Difference:    -10000" in output


def test_run_sale_stock_reports_missing_transaction(context):
    with pytest.raises(core_logic.MissingReferenceError):
        cli.run_sale_stock(context, argparse.Namespace(transaction_id="T404", actor_name="Rani"))


def test_run_sale_stock_deducts_stored_sale(context, seed, make_sale, make_product, capsys):
    seed(Collection.PRODUCTS, [make_product("P1", name="Hakau")])
    cli.run_stock_change(
        context,
        argparse.Namespace(product_id="P1", new_quantity=10, reason="Stok awal", actor_name="Rani", change_type="restock"),
    )
    seed(Collection.SALE_TRANSACTIONS, [make_sale("T1", timestamp=millis())])

    assert cli.run_sale_stock(context, argparse.Namespace(transaction_id="T1", actor_name="Rani")) == 0

    assert "Hakau: 10 -> 8" in capsys.readouterr().out
    assert context.store.read(Collection.PRODUCTS)[0]["stock"] == 8


def test_run_stock_audit_exit_code_reflects_consistency(context, seed, make_product, capsys):
    seed(Collection.PRODUCTS, [make_product("P1", stock=0)])
    assert cli.run_stock_audit(context, argparse.Namespace()) == 0

    seed(Collection.PRODUCTS, [make_product("P1", stock=4)])
    assert cli.run_stock_audit(context, argparse.Namespace()) == 2
    assert "P1\tstored 4\treplayed 0" in capsys.readouterr().out


def test_run_cashflow_report_prints_balances(context, seed, make_sale, capsys):
    seed(Collection.SALE_TRANSACTIONS, [make_sale("T1", timestamp=millis())])

    cli.run_cashflow_report(context, argparse.Namespace(period="today", start=None, end=None))

    output = capsys.readouterr().out
    assert "Opening balance: 0" in output
    assert "Closing balance: 20000" in output


def test_run_shift_report_prints_cashier_totals(context, clock, capsys):
    cli.run_open_shift(
        context,
        argparse.Namespace(cashier_id="C1", cashier_name="Rani", starting_cash="100000", notes=None),
    )
    shift_id = context.store.read(Collection.SHIFTS)[0]["id"]
    cli.run_close_shift(context, argparse.Namespace(shift_id=shift_id, actual_cash="99000", notes=None))

    args = argparse.Namespace(period="today", start=None, end=None, cashier_id=None, shift_type="pagi")
    assert cli.run_shift_report(context, args) == 0

    output = capsys.readouterr().out
    assert "Rani\tshifts 1\tsales 0\tcash 0\ttransactions 0\tdifference -1000\tpagi=1 siang=0 malam=0" in output
    assert "Shifts: 1" in output


def test_run_profit_report_invokes_reports(context, monkeypatch, capsys):
    called = {}

    def fake_profit(ctx, start, end):
        called["window"] = (start, end)
        return cli.reports.ProfitAndLoss(
            start=start,
            end=end,
            revenue=Decimal("100"),
            cogs=Decimal("60"),
            operational_costs=Decimal("10"),
            transaction_count=1,
            estimated_transactions=1,
        )

    monkeypatch.setattr(cli.reports, "profit_and_loss", fake_profit)

    assert cli.run_profit_report(context, argparse.Namespace(period="today", start=None, end=None)) == 0
    output = capsys.readouterr().out
    assert "Net profit:        30" in output
    assert "Margin:            30.00%" in output
    assert called["window"][0] == datetime(2025, 1, 15, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.NegativeStockError("negative"), 2),
        (FileNotFoundError("missing"), 3),
        (core_logic.ConcurrencyConflict("stale"), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_handle_cli_error_logs_human_readable_message(caplog: pytest.LogCaptureFixture):
    """handle_cli_error should emit a user-friendly log message."""

    caplog.set_level("ERROR")
    cli.handle_cli_error(core_logic.BusinessRuleViolation("invalid"))
    assert any("invalid" in record.getMessage() for record in caplog.records)


def test_persist_workbook_saves_changes(runtime_context, monkeypatch):
    """persist_workbook should request the data layer to save the workbook."""

    called = {}

    def fake_persist(context: core_logic.RuntimeContext) -> None:
        called["context"] = context

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    cli.persist_workbook(runtime_context)
    assert called["context"] is runtime_context


def test_persist_workbook_handles_read_only_workbooks(runtime_context, monkeypatch):
    """persist_workbook should handle read-only workbook scenarios gracefully."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(runtime_context)


def test_run_and_persist_reloads_after_lost_save(runtime_context, monkeypatch):
    """A save that loses the race reloads the workbook and runs the command again."""

    fresh = core_logic.RuntimeContext(settings=runtime_context.settings, store=runtime_context.store, clock=runtime_context.clock)
    dispatched = []
    saves = []

    def fake_persist(context: core_logic.RuntimeContext) -> None:
        saves.append(context)
        if len(saves) == 1:
            raise core_logic.ConcurrencyConflict("stale")

    monkeypatch.setattr(cli, "dispatch_command", lambda context, *_: dispatched.append(context) or 0)
    monkeypatch.setattr(cli, "persist_workbook", fake_persist)
    monkeypatch.setattr(cli.core_logic, "refresh_context", lambda _: fresh)

    assert cli.run_and_persist(runtime_context, argparse.Namespace(command="open-shift"), {}) == 0
    assert dispatched == [runtime_context, fresh]
    assert saves == [runtime_context, fresh]


def test_run_and_persist_gives_up_after_configured_retries(runtime_context, monkeypatch):
    dispatched = []

    def always_stale(_: core_logic.RuntimeContext) -> None:
        raise core_logic.ConcurrencyConflict("stale")

    monkeypatch.setattr(cli, "dispatch_command", lambda context, *_: dispatched.append(context) or 0)
    monkeypatch.setattr(cli, "persist_workbook", always_stale)
    monkeypatch.setattr(cli.core_logic, "refresh_context", lambda context: context)

    with pytest.raises(core_logic.ConcurrencyConflict):
        cli.run_and_persist(runtime_context, argparse.Namespace(command="open-shift"), {})
    assert len(dispatched) == runtime_context.settings.write_retries


def test_run_and_persist_skips_save_on_failure(runtime_context, monkeypatch):
    monkeypatch.setattr(cli, "dispatch_command", lambda *_: 2)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    assert cli.run_and_persist(runtime_context, argparse.Namespace(command="stock-change"), {}) == 2


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def _patch_main(monkeypatch, runtime_context, command: str, *, mutates: bool, **namespace):
    parser = _stub_parser(command=command, **namespace)
    command_table = {command: cli.CommandSpec(command, "help", lambda _: parser, lambda *_: 0, mutates=mutates)}
    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)


def test_main_executes_specified_command(monkeypatch, runtime_context):
    """main should execute the command parsed from argv and persist writes."""

    _patch_main(monkeypatch, runtime_context, "open-shift", mutates=True)
    called = {}

    def fake_dispatch(context: core_logic.RuntimeContext, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["context"] = context
        called["args"] = args
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: called.setdefault("persisted", ctx))

    exit_code = cli.main(["open-shift"])
    assert exit_code == 0
    assert called["context"] is runtime_context
    assert called["persisted"] is runtime_context
    assert called["args"].command == "open-shift"


def test_main_does_not_persist_reports(monkeypatch, runtime_context):
    """Read-only commands never write the workbook back."""

    _patch_main(monkeypatch, runtime_context, "profit", mutates=False)
    monkeypatch.setattr(cli, "dispatch_command", lambda *_: 0)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    assert cli.main(["profit"]) == 0


def test_main_handles_business_rule_errors(monkeypatch, runtime_context):
    """main should surface business rule violations as non-zero exits."""

    _patch_main(monkeypatch, runtime_context, "open-shift", mutates=True)

    def fake_dispatch(*_: object) -> int:
        raise core_logic.ShiftAlreadyActiveError("busy")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)
    assert cli.main(["open-shift"]) == 99
    assert isinstance(handled["error"], core_logic.BusinessRuleViolation)


def test_main_verbose_lowers_console_level(monkeypatch, runtime_context):
    _patch_main(monkeypatch, runtime_context, "profit", mutates=False, verbose=True)
    monkeypatch.setattr(cli, "dispatch_command", lambda *_: 0)
    handler = next(h for h in log.handlers if h.get_name() == CONSOLE_HANDLER_NAME)
    monkeypatch.setattr(handler, "level", handler.level)

    cli.main(["--verbose", "profit"])

    assert handler.level == logging.INFO


def test_main_runs_against_config_on_disk(config_file, capsys):
    """A real invocation loads the workbook named by --config."""

    assert cli.main(["--config", str(config_file), "active-shifts"]) == 0
    assert cli.main(["--config", str(config_file), "stock-audit"]) == 0
    assert "consistent" in capsys.readouterr().out


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.ini"), "active-shifts"]) == 3


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str, verbose: bool = False, config: Path | None = None) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command, verbose=verbose, config=config)

    return _Stub(prog="test")
