"""Utility for initializing the line-item master workbook.

The module doubles as a script (``lineitem-setup``) and as a library used by
tests or other tooling. Each record collection gets its own worksheet with a
bold header row; the record store appends further columns on demand.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import log
from .constants import Collection
from .data_manager import CONFIG_FILE_NAME, encode_cell, read_config, resolve_data_file, save_workbook


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    Collection.PRODUCTS.value: [
        "id",
        "name",
        "system_code",
        "manual_code",
        "category",
        "colors",
        "main_unit",
        "sub_unit",
        "buy_price",
        "stock",
        "sub_stock",
    ],
    Collection.SHELVES.value: ["id", "name", "shelf_number", "system_code", "warehouse_id"],
    Collection.PRODUCT_INVENTORY.value: ["id", "product_id", "shelf_id", "warehouse_id", "stock"],
    Collection.STOCK_TRANSFERS.value: [
        "id",
        "product_id",
        "transfer_type",
        "delivered_qty",
        "required_qty",
        "from_shelf_id",
        "to_shelf_id",
        "invoice_id",
        "production_order_id",
        "sender_id",
        "receiver_id",
        "created_at",
    ],
    Collection.CHEQUES.value: [
        "id",
        "cheque_type",
        "status",
        "amount",
        "party_id",
        "party_type",
        "bank_account_id",
        "serial_no",
        "issue_date",
        "due_date",
        "metadata",
    ],
    Collection.CUSTOMERS.value: [
        "id",
        "name",
        "created_at",
        "purchase_count",
        "total_spend",
        "total_paid_amount",
        "first_purchase_date",
        "last_purchase_date",
        "rank",
    ],
    Collection.INVOICES.value: [
        "id",
        "customer_id",
        "status",
        "invoice_date",
        "created_at",
        "invoiceItems",
        "payments",
        "total_invoice_amount",
        "total_received_amount",
        "remaining_balance",
    ],
    Collection.PRODUCTION_ORDERS.value: ["id", "name", "status", "items_leather", "created_at"],
    Collection.CHANGELOGS.value: [
        "id",
        "module_id",
        "record_id",
        "action",
        "field_name",
        "old_value",
        "new_value",
        "user_id",
        "created_at",
    ],
    Collection.DYNAMIC_OPTIONS.value: ["id", "category", "label", "value", "is_active"],
}


HEADER_FONT = Font(bold=True)


@dataclass(frozen=True)
class SetupSettings:
    """The two configuration values the bootstrap needs."""

    data_file: Path
    default_user_id: str


def load_settings(config_path: Path) -> SetupSettings:
    """Read the workbook location and default user from ``config_path``.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        KeyError: If ``[System] DataFile`` or ``[Defaults] DefaultUser`` is
            missing.
    """

    parser = read_config(config_path)
    try:
        raw_data_file = parser.get("System", "DataFile")
        default_user_id = parser.get("Defaults", "DefaultUser")
    except configparser.Error as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    base_path = config_path.expanduser().resolve().parent
    return SetupSettings(
        data_file=resolve_data_file(raw_data_file, base_path),
        default_user_id=default_user_id,
    )


def _add_sheet(workbook: openpyxl.Workbook, title: str, columns: Sequence[str]) -> None:
    worksheet = workbook.create_sheet(title=title)
    worksheet.append(list(columns))
    for cell in worksheet[1]:
        cell.font = HEADER_FONT


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    seed_rows: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None,
    overwrite: bool = False,
) -> Path:
    """Write an empty master workbook to ``destination`` and return its path.

    ``seed_rows`` maps a sheet name to records appended below its header,
    laid out by column name.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is unset.
    """

    target = Path(destination).expanduser().resolve()
    if target.exists() and not overwrite:
        raise FileExistsError(f"Master workbook already exists: {target}")

    workbook = openpyxl.Workbook()
    # openpyxl always starts with one blank sheet.
    workbook.remove(workbook.worksheets[0])
    for title, columns in sheet_columns.items():
        _add_sheet(workbook, title, columns)

    for title, records in (seed_rows or {}).items():
        columns = sheet_columns[title]
        worksheet = workbook[title]
        for record in records:
            worksheet.append([encode_cell(record.get(column)) for column in columns])

    save_workbook(workbook, target)
    log.info("Created master workbook '%s' with %d sheet(s)", target, len(sheet_columns))
    return target


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config_path``."""

    return create_master_workbook(load_settings(config_path).data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="lineitem-setup",
        description="Create the master workbook named in config.ini.",
    )
    parser.add_argument("--config", default=CONFIG_FILE_NAME, help="Configuration file (default: %(default)s).")
    parser.add_argument("--force", action="store_true", help="Replace an existing workbook.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point of ``lineitem-setup``; returns the process exit code."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    print(f"Reading {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileExistsError as exc:
        print(f"[ERROR] {exc}. Pass --force to replace it.")
        return 1
    except (FileNotFoundError, KeyError) as exc:
        print(f"[ERROR] {exc}")
        return 1
    except OSError as exc:
        print(f"[ERROR] Could not write the workbook: {exc}")
        return 1

    print(f"[OK] Master workbook written to {output_path}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
