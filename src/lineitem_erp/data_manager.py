"""Data access layer for the line-item engine.

This module owns every interaction with ``config.ini`` and with the master
workbook. Business rules live elsewhere; the helpers here only know how to
find settings, open and persist the workbook, and treat each worksheet as a
record collection.

The public API covers three responsibilities:

1. Configuration handling: locating ``config.ini`` and parsing it into
   :class:`ConfigSettings`.
2. Workbook lifecycle: opening, reloading, and saving the Excel file.
3. Record storage: :class:`WorkbookRecordStore` implements the four record
   store primitives (``read``, ``write``, ``delete``, ``update_field``) on top
   of one worksheet per collection.
"""


from __future__ import annotations

import configparser
import json
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import openpyxl
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .errors import MissingReferenceError, StoreError


CONFIG_FILE_NAME = "config.ini"
ID_COLUMN = "id"

Row = Dict[str, Any]


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    company_name: str
    schema_version: str
    default_user_id: str
    allow_negative_stock: bool = False


class RecordStore(Protocol):
    """Primitive operations every persistence backend must offer."""

    def read(self, collection: str, filters: Optional[Mapping[str, Any]] = None) -> List[Row]:
        ...

    def write(self, collection: str, rows: Sequence[Mapping[str, Any]], conflict_key: Optional[Sequence[str]] = None) -> List[Row]:
        ...

    def delete(self, collection: str, ids: Iterable[str]) -> None:
        ...

    def update_field(self, collection: str, record_id: str, patch: Mapping[str, Any]) -> Row:
        ...


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate ``config.ini``.

    An explicit path wins without any verification so callers can point at a
    non-standard location. Otherwise the search starts at the current working
    directory and climbs toward the filesystem root, returning the first
    ``CONFIG_FILE_NAME`` found.

    Args:
        explicit_path (Path | None): Optional override for the search.

    Returns:
        Path: The explicit path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no configuration file exists in any parent
            directory.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Parse ``config_path`` into a ``ConfigParser``.

    Raises:
        FileNotFoundError: If the file is missing after ``~`` expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def resolve_data_file(raw: str, base_path: Optional[Path] = None) -> Path:
    """Anchor a relative ``DataFile`` entry at ``base_path`` (or the cwd)."""

    data_file = Path(raw).expanduser()
    if data_file.is_absolute():
        return data_file
    return ((base_path or Path.cwd()) / data_file).resolve()


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``CompanyName`` and
    ``SchemaVersion``; ``[Defaults]`` must provide ``DefaultUser``. The
    optional ``[Inventory] AllowNegativeStock`` flag defaults to ``False``.
    A relative ``DataFile`` is anchored at ``base_path`` (or the working
    directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative data file entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``AllowNegativeStock`` is not a boolean literal.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        company_name = parser.get("System", "CompanyName")
        schema_version = parser.get("System", "SchemaVersion")
        default_user = parser.get("Defaults", "DefaultUser")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    allow_negative = parser.getboolean("Inventory", "AllowNegativeStock", fallback=False)

    return ConfigSettings(
        data_file=resolve_data_file(data_file_raw, base_path),
        company_name=company_name,
        schema_version=schema_version,
        default_user_id=default_user,
        allow_negative_stock=allow_negative,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Load the master workbook from ``data_file``.

    Raises:
        FileNotFoundError: If the workbook does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Write ``workbook`` to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reopen the workbook from disk, dropping unsaved in-memory edits."""

    return open_workbook(data_file)


def new_record_id() -> str:
    """Allocate a server-side record identity."""

    return uuid.uuid4().hex


def encode_cell(value: Any) -> Any:
    """Convert a Python value into something a worksheet cell can hold."""

    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, ensure_ascii=False, default=_json_default)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def decode_cell(value: Any) -> Any:
    """Convert a worksheet cell value back into a Python value."""

    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, str):
        stripped = value.strip()
        if stripped[:1] in ("[", "{"):
            try:
                return json.loads(stripped)
            except ValueError:
                return value
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _matches(value: Any, expected: Any) -> bool:
    if isinstance(expected, (list, tuple, set, frozenset)):
        return any(_matches(value, candidate) for candidate in expected)
    if value == expected:
        return True
    return value is not None and expected is not None and str(value) == str(expected)


class WorkbookRecordStore:
    """Record store backed by one worksheet per collection.

    Row 1 of each worksheet holds column names; columns are appended the first
    time a row carries a key the sheet has not seen. Every record has an
    ``id`` column populated with a generated identifier when the caller does
    not supply one. Lists and dictionaries are stored as JSON text.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    # -- worksheet helpers -------------------------------------------------

    def _sheet(self, collection: str) -> Worksheet:
        if collection in self.workbook.sheetnames:
            return self.workbook[collection]
        log.info("Creating worksheet for collection '%s'", collection)
        sheet = self.workbook.create_sheet(title=collection)
        sheet.cell(row=1, column=1, value=ID_COLUMN)
        return sheet

    @staticmethod
    def _header_map(sheet: Worksheet) -> Dict[str, int]:
        return {
            cell.value: index + 1
            for index, cell in enumerate(sheet[1])
            if cell.value is not None
        }

    def _ensure_columns(self, sheet: Worksheet, keys: Iterable[str]) -> Dict[str, int]:
        header_map = self._header_map(sheet)
        if ID_COLUMN not in header_map:
            next_column = (max(header_map.values()) if header_map else 0) + 1
            sheet.cell(row=1, column=next_column, value=ID_COLUMN)
            header_map[ID_COLUMN] = next_column
        for key in keys:
            if key not in header_map:
                next_column = max(header_map.values()) + 1
                sheet.cell(row=1, column=next_column, value=key)
                header_map[key] = next_column
        return header_map

    def _iter_records(self, sheet: Worksheet):
        header_map = self._header_map(sheet)
        for row_index, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            if not any(cell is not None for cell in raw):
                continue
            record = {
                key: decode_cell(raw[column - 1]) if column - 1 < len(raw) else None
                for key, column in header_map.items()
            }
            yield row_index, record

    def _locate(self, sheet: Worksheet, criteria: Mapping[str, Any]) -> Optional[int]:
        for row_index, record in self._iter_records(sheet):
            if all(_matches(record.get(key), value) for key, value in criteria.items()):
                return row_index
        return None

    def _put(self, sheet: Worksheet, row_index: int, values: Mapping[str, Any]) -> None:
        header_map = self._ensure_columns(sheet, values.keys())
        for key, value in values.items():
            sheet.cell(row=row_index, column=header_map[key], value=encode_cell(value))

    def _record_at(self, sheet: Worksheet, row_index: int) -> Row:
        header_map = self._header_map(sheet)
        return {
            key: decode_cell(sheet.cell(row=row_index, column=column).value)
            for key, column in header_map.items()
        }

    # -- record store primitives -------------------------------------------

    def read(self, collection: str, filters: Optional[Mapping[str, Any]] = None) -> List[Row]:
        """Return every record of ``collection`` matching ``filters``.

        Filter values match by equality; a list, tuple or set matches any of
        its members.
        """

        sheet = self._sheet(collection)
        criteria = dict(filters or {})
        return [
            record
            for _, record in self._iter_records(sheet)
            if all(_matches(record.get(key), value) for key, value in criteria.items())
        ]

    def get(self, collection: str, record_id: Any) -> Optional[Row]:
        """Return the record with ``record_id`` or ``None``."""

        if record_id is None or record_id == "":
            return None
        matches = self.read(collection, {ID_COLUMN: record_id})
        return matches[0] if matches else None

    def write(self, collection: str, rows: Sequence[Mapping[str, Any]], conflict_key: Optional[Sequence[str]] = None) -> List[Row]:
        """Insert or update ``rows`` and return them as stored.

        With ``conflict_key`` an existing record whose key columns equal the
        row's is updated in place; otherwise rows carrying a known ``id`` are
        updated and the rest appended with a fresh identifier.

        Raises:
            StoreError: If a value cannot be stored in a worksheet cell.
        """

        sheet = self._sheet(collection)
        written: List[Row] = []
        try:
            for row in rows:
                values = dict(row)
                row_index: Optional[int] = None
                if conflict_key:
                    row_index = self._locate(sheet, {key: values.get(key) for key in conflict_key})
                elif values.get(ID_COLUMN):
                    row_index = self._locate(sheet, {ID_COLUMN: values[ID_COLUMN]})

                if row_index is None:
                    values[ID_COLUMN] = values.get(ID_COLUMN) or new_record_id()
                    row_index = sheet.max_row + 1
                else:
                    values.pop(ID_COLUMN, None)
                self._put(sheet, row_index, values)
                written.append(self._record_at(sheet, row_index))
        except (TypeError, ValueError) as exc:
            log.error("Write to '%s' failed: %s", collection, exc)
            raise StoreError(f"Unable to write to '{collection}': {exc}") from exc

        log.debug("Wrote %d record(s) to '%s'", len(written), collection)
        return written

    def delete(self, collection: str, ids: Iterable[str]) -> None:
        """Remove the records whose ``id`` is in ``ids``; unknown ids are ignored."""

        targets = {str(record_id) for record_id in ids if record_id}
        if not targets:
            return
        sheet = self._sheet(collection)
        doomed = [
            row_index
            for row_index, record in self._iter_records(sheet)
            if str(record.get(ID_COLUMN)) in targets
        ]
        for row_index in sorted(doomed, reverse=True):
            sheet.delete_rows(row_index)
        log.debug("Deleted %d record(s) from '%s'", len(doomed), collection)

    def update_field(self, collection: str, record_id: str, patch: Mapping[str, Any]) -> Row:
        """Overwrite selected fields of one record and return it.

        Raises:
            MissingReferenceError: If no record has ``record_id``.
            StoreError: If a value cannot be stored in a worksheet cell.
        """

        sheet = self._sheet(collection)
        row_index = self._locate(sheet, {ID_COLUMN: record_id})
        if row_index is None:
            log.warning("Update of unknown record '%s' in '%s'", record_id, collection)
            raise MissingReferenceError(f"Unknown {collection} id: {record_id}")
        values = {key: value for key, value in patch.items() if key != ID_COLUMN}
        try:
            self._put(sheet, row_index, values)
        except (TypeError, ValueError) as exc:
            log.error("Update of '%s' in '%s' failed: %s", record_id, collection, exc)
            raise StoreError(f"Unable to update '{collection}' record '{record_id}': {exc}") from exc
        return self._record_at(sheet, row_index)


__all__ = [
    "CONFIG_FILE_NAME",
    "ConfigSettings",
    "RecordStore",
    "WorkbookRecordStore",
    "find_config_file",
    "read_config",
    "resolve_data_file",
    "parse_settings",
    "open_workbook",
    "save_workbook",
    "refresh_workbook",
    "new_record_id",
    "encode_cell",
    "decode_cell",
]
