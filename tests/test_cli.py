"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from outvoicing import cli, core_logic


WRITE_COMMANDS = {
    "convert",
    "reorder",
    "pay",
    "export",
}

READ_COMMANDS = {
    "dashboard",
    "todo",
    "revenue",
    "top-services",
    "profit",
    "invoices",
    "quotes",
    "low-stock",
}


def _registered_choices(parser: argparse.ArgumentParser):
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return action.choices
    return {}


def _run(config_path: Path, *arguments: str) -> int:
    return cli.main(["--config", str(config_path), "--today", "2024-08-05", *arguments])


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "outvoicing-cli"
    assert "Outvoicing" in (parser.description or "")


def test_build_parser_parses_today_as_date():
    """--today should be parsed into a date."""

    parser = cli.build_parser()
    namespace = parser.parse_args(["--today", "2024-08-05"])
    assert namespace.today == date(2024, 8, 5)


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire every reporting and mutating sub-command."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    choices = _registered_choices(cli_parser)
    for name in WRITE_COMMANDS | READ_COMMANDS:
        assert name in choices


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text


# ---------------------------------------------------------------------------
# Command registrations
# ---------------------------------------------------------------------------


def test_register_export_command_configures_arguments():
    """register_export_command should define range, format and output options."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = cli.register_export_command(subparsers)
    spec.register(subparsers)
    namespace = parser.parse_args(
        ["export", "--start", "2024-07-01", "--end", "2024-07-31", "--format", "xlsx", "--output-dir", "out"]
    )
    assert namespace.start == date(2024, 7, 1)
    assert namespace.end == date(2024, 7, 31)
    assert namespace.fmt == "xlsx"
    assert namespace.output_dir == Path("out")


def test_register_invoices_command_limits_status_choices():
    """register_invoices_command should only accept known invoice statuses."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_invoices_command(subparsers).register(subparsers)

    assert parser.parse_args(["invoices", "--status", "Overdue"]).status == "Overdue"
    with pytest.raises(SystemExit):
        parser.parse_args(["invoices", "--status", "Lost"])


def test_register_convert_command_requires_quote_id():
    """register_convert_command should require --quote-id."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = cli.register_convert_command(subparsers)
    spec.register(subparsers)

    assert spec.name == "convert"
    assert parser.parse_args(["convert", "--quote-id", "Q-001"]).quote_id == "Q-001"
    with pytest.raises(SystemExit):
        parser.parse_args(["convert"])


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file):
    """load_runtime_context should load settings and seed the demo business."""

    context = cli.load_runtime_context(config_file, date(2024, 8, 5))

    assert context.settings.company.name == "Test Company"
    assert context.state.company.name == "Test Company"
    assert len(context.state.invoices) == 4


def test_load_runtime_context_supports_defaults(monkeypatch, tmp_path):
    """load_runtime_context should resolve config.ini from the working directory."""

    config_path = tmp_path / "config.ini"
    seen = {}

    def fake_loader(path: Path | None) -> core_logic.RuntimeContext:
        seen["path"] = path
        raise FileNotFoundError(path)

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        cli.load_runtime_context()
    assert seen["path"] == config_path


def test_load_runtime_context_rejects_schema_mismatch(config_factory):
    """Schema mismatches should stop the CLI before any command runs."""

    bundle = config_factory(schema_version="0.1.0")

    with pytest.raises(RuntimeError):
        cli.load_runtime_context(bundle.config_path)


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(demo_context):
    """dispatch_command should call the executor associated with the command."""

    calls = []
    spec = cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: calls.append(c) or 0)

    result = cli.dispatch_command(demo_context, argparse.Namespace(command="alpha"), {"alpha": spec})

    assert result == 0
    assert calls == [demo_context]


def test_dispatch_command_handles_unknown_commands(demo_context):
    """dispatch_command should raise a clear error for unknown commands."""

    with pytest.raises(KeyError):
        cli.dispatch_command(demo_context, argparse.Namespace(command="unknown"), {})


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


def test_format_money_uses_rand_and_separators():
    """format_money should render amounts in Rand with thousands separators."""

    assert cli.format_money(Decimal("51750")) == "R 51,750.00"


# ---------------------------------------------------------------------------
# End-to-end command runs
# ---------------------------------------------------------------------------


def test_main_dashboard_prints_summary(config_file, capsys):
    """The dashboard reports outstanding and overdue balances."""

    assert _run(config_file, "dashboard") == 0

    output = capsys.readouterr().out
    assert "R 15,525.00 (2 open invoices)" in output
    assert "R 5,750.00 (1 overdue invoices)" in output
    assert "Profit margin:      53.17%" in output


def test_main_todo_lists_feed(config_file, capsys):
    """The to-do command prints each reminder with its kind."""

    assert _run(config_file, "todo") == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "[invoice] Follow up on overdue invoice INV-0003 for Innovate Solutions Pty Ltd.",
        '[task] Task due today: "Develop user auth".',
    ]


def test_main_invoices_filters_effective_status(config_file, capsys):
    """Invoices past due are listed as Overdue on the evaluation date."""

    assert cli.main(["--config", str(config_file), "--today", "2024-08-20", "invoices", "--status", "Overdue"]) == 0

    output = capsys.readouterr().out
    assert "INV-0002" in output
    assert "INV-0003" in output
    assert "INV-0001" not in output


def test_main_convert_saves_new_invoice(config_file, capsys):
    """Converting a quote stores a draft invoice numbered from the counter."""

    assert _run(config_file, "convert", "--quote-id", "Q-001") == 0

    assert capsys.readouterr().out.strip() == "Created INV-0005 (Draft) from Q-001: R 51,750.00"


def test_main_reorder_reports_shortfall(config_file, capsys):
    """Reordering an invoice with a shortage prints the purchase order."""

    assert _run(config_file, "reorder", "--invoice-id", "INV-0004") == 0

    output = capsys.readouterr().out
    assert "Created purchase order PO-0001 for Default Supplier (Draft)" in output
    assert "Standard Widget: 5" in output


def test_main_reorder_without_shortfall(config_file, capsys):
    """Invoices without inventory lines need no purchase order."""

    assert _run(config_file, "reorder", "--invoice-id", "INV-0001") == 0

    assert "No purchase order needed" in capsys.readouterr().out


def test_main_pay_prints_gateway_form(config_file, capsys):
    """The pay command prints the PayFast form fields."""

    assert _run(config_file, "pay", "--invoice-id", "INV-0002", "--base-url", "https://app.test") == 0

    output = capsys.readouterr().out
    assert "POST https://sandbox.payfast.co.za/eng/process" in output
    assert "  m_payment_id=INV-0002" in output
    assert "  amount=9775.00" in output


def test_main_export_writes_file(config_file, tmp_path, capsys):
    """The export command writes the report into the output directory."""

    output_dir = tmp_path / "reports"

    exit_code = _run(
        config_file,
        "export",
        "--start",
        "2024-07-01",
        "--end",
        "2024-07-31",
        "--format",
        "xlsx",
        "--output-dir",
        str(output_dir),
    )

    assert exit_code == 0
    assert (output_dir / "sales_report_2024-07-01_to_2024-07-31.xlsx").exists()
    assert "Exported 3 invoice(s)" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.MissingReferenceError("missing invoice"), 2),
        (FileNotFoundError("missing"), 3),
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


def test_main_maps_failures_to_exit_codes(config_file, config_factory, tmp_path):
    """main should translate domain and configuration errors into exit codes."""

    assert _run(config_file, "reorder", "--invoice-id", "INV-9999") == 2
    assert _run(tmp_path / "absent.ini", "dashboard") == 3
    assert _run(config_factory(schema_version="0.1.0").config_path, "dashboard") == 1
