"""Append-only change log of row-collection saves.

Each save records the full before and after row arrays of one block. Option
values and relation ids are rendered with their display labels so that the
log reads the way the grid did at the time of the save.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from . import log
from .constants import Collection, FieldType
from .data_manager import RecordStore
from .errors import StoreError
from .row_rules import BlockSpec, Row


CHANGELOGS = Collection.CHANGELOGS.value
DYNAMIC_OPTIONS = Collection.DYNAMIC_OPTIONS.value


@dataclass(frozen=True)
class ChangeLogEntry:
    """Before/after snapshot of one block of one record."""

    module_id: str
    record_id: str
    block_id: str
    before: Sequence[Mapping[str, Any]]
    after: Sequence[Mapping[str, Any]]
    user_id: Optional[str] = None
    action: str = "update"
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)


def _relation_label(record: Mapping[str, Any]) -> str:
    base = record.get("name") or record.get("title") or record.get("system_code") or record.get("id")
    code = record.get("system_code")
    if code and str(code) != str(base):
        return f"{base} ({code})"
    return str(base)


def _map_value(value: Any, labels: Mapping[str, str]) -> Any:
    if value is None:
        return None
    if isinstance(value, list):
        return [_map_value(item, labels) for item in value]
    if isinstance(value, Mapping):
        if value.get("label"):
            return value["label"]
        return labels.get(str(value.get("value")), value.get("value"))
    return labels.get(str(value), value)


def column_label_maps(store: RecordStore, block: BlockSpec, rows: Sequence[Mapping[str, Any]]) -> Dict[str, Dict[str, str]]:
    """Build a value-to-label map for every option or relation column of ``block``."""

    maps: Dict[str, Dict[str, str]] = {}
    categories = sorted({column.options_category for column in block.columns if column.options_category})
    dynamic: Dict[str, Dict[str, str]] = {}
    if categories:
        for option in store.read(DYNAMIC_OPTIONS, {"category": categories}):
            if option.get("is_active") is False or option.get("value") is None:
                continue
            dynamic.setdefault(str(option["category"]), {})[str(option["value"])] = str(
                option.get("label") or option["value"]
            )

    for column in block.columns:
        if column.options:
            maps[column.key] = {
                str(option["value"]): str(option.get("label") or option["value"])
                for option in column.options
                if option.get("value") is not None
            }
        elif column.options_category:
            maps[column.key] = dynamic.get(column.options_category, {})
        elif column.field_type is FieldType.RELATION and column.relation_target:
            ids = sorted({str(row[column.key]) for row in rows if row.get(column.key)})
            if not ids:
                continue
            records = store.read(column.relation_target, {"id": ids})
            maps[column.key] = {str(record["id"]): _relation_label(record) for record in records}
    return maps


def humanize_rows(store: RecordStore, block: BlockSpec, rows: Sequence[Mapping[str, Any]]) -> List[Row]:
    """Replace option values and relation ids in ``rows`` by their labels."""

    maps = column_label_maps(store, block, rows)
    humanized: List[Row] = []
    for row in rows:
        next_row: Row = dict(row)
        for key, labels in maps.items():
            if key in next_row:
                next_row[key] = _map_value(next_row[key], labels)
        humanized.append(next_row)
    return humanized


def append_change_log(store: RecordStore, entry: ChangeLogEntry, block: Optional[BlockSpec] = None) -> Optional[Row]:
    """Persist ``entry``; a failure is logged and never raised.

    Returns:
        Row | None: The stored change-log record, or ``None`` on failure.
    """

    try:
        before: Sequence[Mapping[str, Any]] = entry.before
        after: Sequence[Mapping[str, Any]] = entry.after
        if block is not None:
            before = humanize_rows(store, block, before)
            after = humanize_rows(store, block, after)
        record = {
            "module_id": entry.module_id,
            "record_id": entry.record_id,
            "action": entry.action,
            "field_name": entry.block_id,
            "old_value": json.dumps(list(before), ensure_ascii=False, default=_json_default),
            "new_value": json.dumps(list(after), ensure_ascii=False, default=_json_default),
            "user_id": entry.user_id,
            "created_at": entry.timestamp.isoformat(),
        }
        stored = store.write(CHANGELOGS, [record])[0]
    except (StoreError, TypeError, ValueError) as exc:
        log.warning("Change log for %s '%s' (%s) not written: %s", entry.module_id, entry.record_id, entry.block_id, exc)
        return None

    log.info("Change log written for %s '%s' (%s)", entry.module_id, entry.record_id, entry.block_id)
    return stored


def read_change_log(store: RecordStore, module_id: str, record_id: str) -> List[Row]:
    """Change-log records of one record, oldest first."""

    records = store.read(CHANGELOGS, {"module_id": module_id, "record_id": record_id})
    return sorted(records, key=lambda record: str(record.get("created_at") or ""))


__all__ = [
    "ChangeLogEntry",
    "column_label_maps",
    "humanize_rows",
    "append_change_log",
    "read_change_log",
]
