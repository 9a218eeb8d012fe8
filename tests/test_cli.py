"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable
from unittest.mock import Mock

import pytest

from lpg_ledger import cli
from lpg_ledger.constants import Brand, CylinderSize, InventoryCategory, InvoiceType, PaymentMethod
from lpg_ledger.data_manager import GatewayError
from lpg_ledger.errors import BusinessRuleViolation, MissingReferenceError, StoreError
from lpg_ledger.models import CustomExpenseType, SaleItem
from lpg_ledger.store import StateStore


WRITE_COMMANDS = {
    "add-customer",
    "add-stock",
    "sale",
    "expense",
    "delete-sale",
    "delete-expense",
    "delete-customer",
}

READ_COMMANDS = {
    "stock",
    "daily",
    "monthly",
    "invoice",
    "customers",
}


def _parse(argv: Iterable[str]) -> argparse.Namespace:
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    return parser.parse_args(list(argv))


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "lpg-cli"
    assert "LPG" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire reads and writes into one table."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_configures_parsers(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    for name, spec in specs.items():
        assert isinstance(spec, cli.CommandSpec)
        assert name in subparsers_action.choices


def test_register_read_commands_configures_parsers(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)

    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


def test_global_date_option_is_parsed():
    args = _parse(["--date", "2024-05-15", "daily"])

    assert args.date == date(2024, 5, 15)
    assert args.command == "daily"


def test_sale_command_collects_repeated_items():
    """Each ``--item`` adds one line of four values."""

    args = _parse(
        [
            "sale",
            "--customer-id",
            "c1",
            "--item",
            "PTT",
            "48 kg",
            "2",
            "400",
            "--item",
            "WP",
            "15 kg",
            "1",
            "300",
            "--when",
            "2024-05-15T10:30",
        ]
    )

    assert args.item == [["PTT", "48 kg", "2", "400"], ["WP", "15 kg", "1", "300"]]
    assert args.when == datetime(2024, 5, 15, 10, 30)
    assert args.payment == PaymentMethod.CASH.value


def test_sale_command_requires_an_item():
    with pytest.raises(SystemExit):
        _parse(["sale", "--customer-id", "c1"])


def test_delete_command_uses_record_id():
    args = _parse(["delete-sale", "--id", "s1", "--yes"])

    assert args.record_id == "s1"
    assert args.yes is True


def test_dispatch_command_invokes_executor(store):
    executor = Mock(return_value=0)
    table = {"stock": cli.CommandSpec("stock", "help", lambda _: None, executor)}
    args = argparse.Namespace(command="stock")

    assert cli.dispatch_command(store, args, table) == 0
    executor.assert_called_once_with(store, args)


def test_dispatch_command_handles_unknown_commands(store):
    with pytest.raises(KeyError):
        cli.dispatch_command(store, argparse.Namespace(command="nope"), {})
    with pytest.raises(KeyError):
        cli.dispatch_command(store, argparse.Namespace(), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_detects_duplicate_commands(command_spec_iterable):
    with pytest.raises(ValueError, match="alpha"):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def test_translate_add_customer_builds_borrowed_list():
    args = _parse(
        [
            "add-customer",
            "--name",
            "Noodle Shop",
            "--branch",
            "North",
            "--price",
            "410",
            "--borrow",
            "PTT",
            "48 kg",
            "2",
        ]
    )

    customer = cli.translate_add_customer(args)

    assert customer.price == Decimal("410")
    assert customer.borrowed_total() == 2
    assert customer.cylinder_size is CylinderSize.S48


def test_translate_sale_derives_total_from_lines():
    """The total is the sum of line totals less the gas return credit."""

    args = _parse(
        [
            "sale",
            "--customer-id",
            "c1",
            "--item",
            "PTT",
            "48 kg",
            "2",
            "400",
            "--item",
            "WP",
            "15 kg",
            "1",
            "300",
            "--return-kg",
            "5",
            "--return-price",
            "10",
            "--invoice-type",
            InvoiceType.TAX_INVOICE.value,
        ]
    )

    sale = cli.translate_sale(args)

    assert sale.total_amount == Decimal("1050")
    assert sale.quantity == 3
    assert sale.items[1] == SaleItem.build(Brand.WP, CylinderSize.S15, 1, Decimal("300"))
    assert sale.is_tax_invoice


def test_translate_add_stock_requires_brand_and_size_for_gas():
    args = _parse(["add-stock", "--brand", "PTT", "--total", "10", "--full", "5"])

    with pytest.raises(BusinessRuleViolation):
        cli.translate_add_stock(args)


def test_translate_add_stock_requires_name_for_accessories():
    args = _parse(["add-stock", "--category", InventoryCategory.ACCESSORY.value, "--total", "3", "--full", "3"])

    with pytest.raises(BusinessRuleViolation):
        cli.translate_add_stock(args)


def test_translate_add_stock_parses_cost():
    args = _parse(
        ["add-stock", "--brand", "WP", "--size", "15 kg", "--total", "10", "--full", "5", "--cost-price", "300"]
    )

    item = cli.translate_add_stock(args)

    assert item.cost_price == Decimal("300")
    assert item.low_stock_threshold is None


def test_translate_expense_keeps_custom_type():
    args = _parse(
        ["expense", "--type", "Permits", "--amount", "120", "--when", "2024-05-15T08:00", "--refill", "PTT", "48 kg", "2"]
    )

    expense = cli.translate_expense(args)

    assert expense.category == CustomExpenseType("Permits")
    assert expense.refill_items[0].quantity == 2
    assert expense.amount == Decimal("120")


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def test_run_sale_invokes_store(sale_factory, capsys):
    store = Mock(spec=StateStore)
    store.create_sale.return_value = sale_factory(id="s-9")
    args = _parse(["sale", "--customer-id", "c1", "--item", "PTT", "48 kg", "2", "400"])

    assert cli.run_sale(store, args) == 0

    submitted = store.create_sale.call_args.args[0]
    assert submitted.total_amount == Decimal("800")
    assert "s-9" in capsys.readouterr().out


def test_run_delete_sale_reports_cancellation(capsys):
    store = Mock(spec=StateStore)
    store.delete_sale.return_value = False

    assert cli.run_delete_sale(store, _parse(["delete-sale", "--id", "s1"])) == 0

    store.delete_sale.assert_called_once_with("s1")
    assert capsys.readouterr().out.strip() == "Cancelled"


def test_run_stock_report_flags_low_stock(stocked_store, capsys):
    stocked_store.inventory[0] = replace(stocked_store.inventory[0], full=2)

    cli.run_stock_report(stocked_store, argparse.Namespace())

    out = capsys.readouterr().out.splitlines()
    assert out[0] == "PTT 48 kg: total=20 full=2 empty=16 on_loan=2  LOW"
    assert out[1] == "WP 15 kg: total=10 full=5 empty=5 on_loan=0"


def test_format_invoice_prints_vat_for_tax_invoice(store, sale_factory):
    sale = sale_factory(
        customer_id="walk-in",
        items=(SaleItem.build(Brand.PTT, CylinderSize.S48, 1, Decimal("1000")),),
        invoice_type=InvoiceType.TAX_INVOICE,
        return_kg=Decimal("5"),
        return_price=Decimal("10"),
        total_amount=Decimal("950"),
    )

    lines = cli.format_invoice(store, sale)

    assert "Customer: Walk-in customer" in lines
    assert "Gas return: -50" in lines
    assert "VAT: 66.50" in lines
    assert "Grand total: 1016.50" in lines


def test_format_invoice_omits_vat_on_receipt(store, sale_factory):
    lines = cli.format_invoice(store, sale_factory())

    assert not any(line.startswith("VAT") for line in lines)
    assert lines[-1] == "Grand total: 800"


# ---------------------------------------------------------------------------
# Error handling and confirmation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (BusinessRuleViolation("invalid"), 2),
        (MissingReferenceError("unknown sale"), 2),
        (FileNotFoundError("missing"), 3),
        (StoreError("rejected"), 4),
        (GatewayError("42501", "permission denied"), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert caplog.records


def test_handle_cli_error_logs_translated_gateway_message(caplog: pytest.LogCaptureFixture):
    caplog.set_level("ERROR")
    cli.handle_cli_error(GatewayError("42703", 'column "items" does not exist'))
    assert any("schema repair" in record.getMessage() for record in caplog.records)


def test_build_confirm_honours_yes_flag(monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "y")

    assert cli.build_confirm(argparse.Namespace(yes=True))("Delete?") is True
    assert cli.build_confirm(argparse.Namespace()) is cli.confirm_on_stdin
    assert cli.confirm_on_stdin("Delete?") is True


def test_confirm_on_stdin_defaults_to_no(monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "")
    assert cli.confirm_on_stdin("Delete?") is False


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_handles_store_errors(monkeypatch):
    """main should surface failures through handle_cli_error."""

    def fake_load(*_, **__):
        raise StoreError("Failed to load data")

    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "load_store", fake_load)
    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)

    assert cli.main(["stock"]) == 99
    assert isinstance(handled["error"], StoreError)


def test_main_runs_against_real_workbook(config_factory, capsys):
    """Stock, sale, and daily commands operate on the configured workbook."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path), "--date", "2024-05-15"]

    assert cli.main([*base, "add-stock", "--brand", "PTT", "--size", "48 kg", "--total", "10", "--full", "6", "--cost-price", "350"]) == 0
    assert cli.main([*base, "sale", "--customer-id", "nobody", "--item", "PTT", "48 kg", "2", "400", "--when", "2024-05-15T10:00"]) == 0
    capsys.readouterr()

    assert cli.main([*base, "stock"]) == 0
    assert capsys.readouterr().out.strip() == "PTT 48 kg: total=10 full=4 empty=6 on_loan=0"

    assert cli.main([*base, "daily"]) == 0
    out = capsys.readouterr().out
    assert "Income: 800" in out
    assert "Gross profit: 100" in out
    assert "Walk-in customer: 800" in out


def test_main_reports_missing_config(tmp_path, caplog):
    caplog.set_level("ERROR")
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stock"]) == 3
