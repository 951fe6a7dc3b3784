"""Shared pytest fixtures for the line-item engine tests.

Workbook-backed fixtures build a seeded master workbook on disk; store
fixtures work on an in-memory openpyxl workbook and never touch the disk.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable
from unittest.mock import Mock

import openpyxl
import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from lineitem_erp import cli, constants, core_logic, data_manager  # noqa: E402
from lineitem_erp.setup_workbook import create_master_workbook  # noqa: E402

DEFAULT_USER_ID = "U-DEFAULT"
CONFIG_TEMPLATE = """\
[System]
DataFile = {data_file}
CompanyName = {company_name}
SchemaVersion = {schema_version}

[Defaults]
DefaultUser = {default_user_id}

[Inventory]
AllowNegativeStock = {allow_negative}
"""

SEED_ROWS = {
    "products": [
        {"id": "P1", "name": "Calf Leather", "system_code": "PR-001", "main_unit": "m", "sub_unit": "cm", "stock": 0},
        {"id": "P2", "name": "Buckle", "system_code": "PR-002", "main_unit": "count", "sub_unit": "count", "stock": 0},
    ],
    "shelves": [
        {"id": "A", "name": "Shelf A", "system_code": "SH-A", "warehouse_id": "W1"},
        {"id": "B", "name": "Shelf B", "system_code": "SH-B", "warehouse_id": "W1"},
    ],
    "customers": [{"id": "C1", "name": "Mina", "created_at": "2024-01-01"}],
    "invoices": [{"id": "INV1", "customer_id": "C1", "status": "final", "invoice_date": "2024-02-01"}],
}


@dataclass(frozen=True)
class ConfigBundle:
    """A written config.ini and the workbook it points at."""

    config_path: Path
    workbook_path: Path


# ---------------------------------------------------------------------------
# Workbook and configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Create master workbooks under ``tmp_path``, seeded unless told otherwise."""

    counter = iter(range(1_000))

    def _create(*, seed: bool = True) -> Path:
        folder = tmp_path / f"data_{next(counter)}"
        folder.mkdir()
        return create_master_workbook(folder / "master_workbook.xlsx", seed_rows=SEED_ROWS if seed else None)

    return _create


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    return workbook_factory()


@pytest.fixture
def config_factory(workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Write a config.ini beside a fresh workbook and return both paths."""

    def _create(
        *,
        make_relative: bool = False,
        company_name: str = "Test Atelier",
        schema_version: str = constants.EXPECTED_SCHEMA_VERSION,
        default_user_id: str = DEFAULT_USER_ID,
        allow_negative: bool = False,
    ) -> ConfigBundle:
        workbook_path = workbook_factory()
        config_path = workbook_path.parent / "config.ini"
        config_path.write_text(
            CONFIG_TEMPLATE.format(
                data_file=workbook_path.name if make_relative else workbook_path,
                company_name=company_name,
                schema_version=schema_version,
                default_user_id=default_user_id,
                allow_negative="yes" if allow_negative else "no",
            ),
            encoding="utf-8",
        )
        return ConfigBundle(config_path=config_path, workbook_path=workbook_path)

    return _create


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Context loaded from a seeded workbook through the public loader."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Record store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> data_manager.WorkbookRecordStore:
    """Return an empty in-memory record store."""

    return data_manager.WorkbookRecordStore(openpyxl.Workbook())


@pytest.fixture
def seeded_store(store: data_manager.WorkbookRecordStore) -> data_manager.WorkbookRecordStore:
    """Return an in-memory store holding two products, two shelves and a customer."""

    for collection, rows in SEED_ROWS.items():
        store.write(collection, rows)
    return store


@pytest.fixture
def set_balance(seeded_store: data_manager.WorkbookRecordStore) -> Callable[[str, str, str], None]:
    """Write a shelf balance directly into ``product_inventory``."""

    def _apply(product_id: str, shelf_id: str, stock: str) -> None:
        seeded_store.write(
            "product_inventory",
            [{"product_id": product_id, "shelf_id": shelf_id, "stock": Decimal(stock), "warehouse_id": "W1"}],
            conflict_key=("product_id", "shelf_id"),
        )

    return _apply


def balance_of(store: data_manager.WorkbookRecordStore, product_id: str, shelf_id: str) -> Decimal:
    """Current balance of one product on one shelf, zero when absent."""

    rows = store.read("product_inventory", {"product_id": product_id, "shelf_id": shelf_id})
    return Decimal(rows[0]["stock"]) if rows else Decimal("0")


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Bare parser standing in for the top-level CLI parser."""

    return argparse.ArgumentParser(prog="lineitem-cli", description="Line-item CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Sub-command action of :func:`cli_parser`."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """A named command whose executor records that it ran."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Three uniquely named no-op command specs."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Settings pointing at a workbook path that does not need to exist."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        company_name="Test Atelier",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_user_id=DEFAULT_USER_ID,
    )


@pytest.fixture
def workbook() -> Mock:
    """Stand-in openpyxl workbook."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Runtime context over the mock workbook."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)
