"""Tests for the workbook bootstrap script."""

from __future__ import annotations

from pathlib import Path

import openpyxl
import pytest

from inventory_ledger import setup_workbook
from inventory_ledger.constants import Collection


def test_create_master_workbook_creates_collection_sheets(tmp_path: Path):
    """One sheet per collection, each with the document header row."""

    destination = setup_workbook.create_master_workbook(tmp_path / "data" / "ledger.xlsx")

    workbook = openpyxl.load_workbook(destination)
    assert workbook.sheetnames == [collection.value for collection in Collection]
    assert [cell.value for cell in workbook["invoices"][1]] == ["DocumentID", "Version", "Payload"]


def test_create_master_workbook_refuses_overwrite(tmp_path: Path):
    """Existing files are only replaced when asked to."""

    destination = setup_workbook.create_master_workbook(tmp_path / "ledger.xlsx", collections=("products",))

    with pytest.raises(FileExistsError):
        setup_workbook.create_master_workbook(destination)
    setup_workbook.create_master_workbook(destination, overwrite=True)


def test_main_creates_workbook_from_config(config_factory, capsys):
    """The script reads DataFile from the config and reports success."""

    bundle = config_factory()
    bundle.workbook_path.unlink()

    assert setup_workbook.main(["--config", str(bundle.config_path)]) == 0
    assert bundle.workbook_path.exists()
    assert "[SUCCESS]" in capsys.readouterr().out


def test_main_reports_existing_workbook(config_factory, capsys):
    """Without --force an existing workbook is left alone."""

    bundle = config_factory()

    assert setup_workbook.main(["--config", str(bundle.config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_workbook.main(["--config", str(bundle.config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path: Path, capsys):
    """A missing config file is reported, not raised."""

    assert setup_workbook.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
