"""Tests for the master workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

from lineitem_erp import setup_workbook
from lineitem_erp.constants import Collection


def test_create_master_workbook_writes_every_sheet(tmp_path):
    """Each collection should get a sheet with its header row."""

    path = setup_workbook.create_master_workbook(tmp_path / "book.xlsx")
    workbook = openpyxl.load_workbook(path)
    assert set(workbook.sheetnames) == set(setup_workbook.SHEET_COLUMNS)
    header = [cell.value for cell in workbook[Collection.PRODUCT_INVENTORY.value][1]]
    assert header == list(setup_workbook.SHEET_COLUMNS[Collection.PRODUCT_INVENTORY.value])


def test_create_master_workbook_refuses_overwrite(tmp_path):
    """An existing file should only be replaced when overwrite is set."""

    path = setup_workbook.create_master_workbook(tmp_path / "book.xlsx")
    with pytest.raises(FileExistsError):
        setup_workbook.create_master_workbook(path)
    assert setup_workbook.create_master_workbook(path, overwrite=True) == path


def test_load_settings_resolves_relative_data_file(tmp_path):
    """DataFile entries should be anchored to the config directory."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = data/book.xlsx\n\n[Defaults]\nDefaultUser = U1\n", encoding="utf-8")
    settings = setup_workbook.load_settings(config_path)
    assert settings.data_file == (tmp_path / "data" / "book.xlsx").resolve()
    assert settings.default_user_id == "U1"


def test_main_reports_missing_config(tmp_path, capsys):
    """main should print an error and exit 1 without a config file."""

    assert setup_workbook.main(["--config", str(tmp_path / "missing.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out


def test_main_creates_workbook_from_config(tmp_path, capsys):
    """main should build the workbook named in the config and then refuse a rerun."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = book.xlsx\n\n[Defaults]\nDefaultUser = U1\n", encoding="utf-8")

    assert setup_workbook.main(["--config", str(config_path)]) == 0
    assert (tmp_path / "book.xlsx").exists()
    assert setup_workbook.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
