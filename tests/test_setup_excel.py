"""Tests for the workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

from lpg_ledger import setup_excel
from lpg_ledger.data_manager import SHEET_COLUMNS


def test_create_master_workbook_writes_headers(tmp_path):
    """Every collection sheet starts with its bold column header row."""

    destination = setup_excel.create_master_workbook(tmp_path / "out" / "ledger.xlsx")

    workbook = openpyxl.load_workbook(destination)
    assert workbook.sheetnames == list(SHEET_COLUMNS)
    for name, columns in SHEET_COLUMNS.items():
        header = [cell.value for cell in workbook[name][1]]
        assert header == list(columns)
        assert workbook[name].cell(row=1, column=1).font.bold


def test_create_master_workbook_refuses_overwrite(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "ledger.xlsx")

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(destination)

    assert setup_excel.create_master_workbook(destination, overwrite=True) == destination


def test_load_data_file_resolves_relative_entry(config_factory):
    bundle = config_factory(make_relative=True)
    assert setup_excel.load_data_file(bundle.config_path) == bundle.workbook_path.resolve()


def test_main_reports_existing_workbook(config_file, capsys):
    """The configured workbook already exists, so main refuses without --force."""

    assert setup_excel.main(["--config", str(config_file)]) == 1
    out = capsys.readouterr().out
    assert "[ERROR]" in out
    assert "--force" in out


def test_main_force_recreates_workbook(config_factory, capsys):
    bundle = config_factory()

    assert setup_excel.main(["--config", str(bundle.config_path), "--force"]) == 0
    assert "[SUCCESS]" in capsys.readouterr().out
    assert bundle.workbook_path.exists()


def test_main_reports_missing_config(tmp_path, capsys):
    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out


def test_main_reports_incomplete_config(tmp_path, capsys):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[Company]\nName = X\n", encoding="utf-8")

    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "Missing required configuration entry" in capsys.readouterr().out
