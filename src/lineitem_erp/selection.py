"""Binding reference records onto rows.

A production-order component row acquires its concrete product (and the
shelf it is withdrawn from) by *binding* a product record: visible columns
are copied from the product, the copied columns outside the block's
editable-after-selection allow-list become locked, and the product identity
is kept on ``selected_*`` attributes. Unbinding is destructive: locked
fields are cleared rather than restored.

Relation picks copy matching columns from the picked record without locking
anything, and barcode scans resolve a product by id or by one of its codes.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from . import log
from .constants import BlockKind, Collection
from .data_manager import RecordStore
from .row_rules import (
    LOCKED_FIELDS,
    ROW_KEY,
    BlockSpec,
    FieldSpec,
    Row,
    apply_field_change,
    calculate_row,
    refresh_derived,
    visible_columns,
)
from .units import convert_quantity, is_manual_unit


SELECTED_PRODUCT_ID = "selected_product_id"
SELECTED_PRODUCT_NAME = "selected_product_name"
SELECTED_SHELF_ID = "selected_shelf_id"
SELECTION_KEYS = (SELECTED_PRODUCT_ID, SELECTED_PRODUCT_NAME, SELECTED_SHELF_ID)
STORED_LOCKS = "selection_locked_fields"

SCAN_CODE_FIELDS = ("system_code", "manual_code", "name")


def _recompute_total(row: Row, block: BlockSpec) -> None:
    if block.has_column("total_price") or "total_price" in row:
        row["total_price"] = calculate_row(row, block.row_calculation)


def bind(
    row: Mapping[str, Any],
    record: Mapping[str, Any],
    block: BlockSpec,
    *,
    can_view_field: Optional[Callable[[str], bool]] = None,
    shelf_id: Optional[str] = None,
) -> Row:
    """Apply ``record`` onto ``row`` and lock the copied fields.

    Each visible column is sourced from the record field named by
    ``block.selection_field_map`` (or the column's own key). Copied columns
    outside ``block.editable_after_selection`` are added to the row's lock
    set, which is rebuilt from scratch on every bind.

    Args:
        row (Mapping[str, Any]): Row being bound; left untouched.
        record (Mapping[str, Any]): Reference record, usually a product.
        block (BlockSpec): Definition of the row's collection.
        can_view_field (Callable[[str], bool] | None): Visibility predicate;
            hidden columns are neither copied nor locked.
        shelf_id (str | None): Withdrawal location chosen with the record.

    Returns:
        Row: Bound copy of ``row`` with its derived fields recomputed.
    """

    next_row: Row = copy.deepcopy(dict(row))
    locked: set[str] = set()

    for column in visible_columns(block, can_view_field):
        if column.key in SELECTION_KEYS:
            continue
        source_key = block.selection_field_map.get(column.key, column.key)
        if source_key not in record:
            continue
        next_row[column.key] = copy.deepcopy(record[source_key])
        if column.key not in block.editable_after_selection:
            locked.add(column.key)

    if "main_unit" in record:
        next_row["main_unit"] = record["main_unit"]
        if "main_unit" not in block.editable_after_selection:
            locked.add("main_unit")

    next_row[SELECTED_PRODUCT_ID] = record.get("id")
    next_row[SELECTED_PRODUCT_NAME] = record.get("name")
    next_row[SELECTED_SHELF_ID] = shelf_id
    refresh_derived(next_row, block)
    next_row[LOCKED_FIELDS] = sorted(locked)

    log.info(
        "Bound record '%s' to row '%s' (%d locked field(s))",
        record.get("id"),
        next_row.get(ROW_KEY),
        len(locked),
    )
    return next_row


def unbind(row: Mapping[str, Any]) -> Row:
    """Clear the selection and every locked field of ``row``."""

    next_row: Row = copy.deepcopy(dict(row))
    for key in SELECTION_KEYS:
        next_row[key] = None
    for key in next_row.get(LOCKED_FIELDS) or ():
        next_row[key] = None
    next_row[LOCKED_FIELDS] = []
    next_row.pop(STORED_LOCKS, None)
    log.info("Cleared selection on row '%s'", next_row.get(ROW_KEY))
    return next_row


def select_shelf(row: Mapping[str, Any], shelf_id: Optional[str]) -> Row:
    """Set the withdrawal shelf of a bound row."""

    next_row: Row = copy.deepcopy(dict(row))
    next_row[SELECTED_SHELF_ID] = shelf_id
    return next_row


def store_locks(row: Mapping[str, Any]) -> Row:
    """Copy the lock set of a bound row onto its persisted lock column."""

    next_row: Row = dict(row)
    if next_row.get(SELECTED_PRODUCT_ID):
        next_row[STORED_LOCKS] = sorted(next_row.get(LOCKED_FIELDS) or ())
    else:
        next_row.pop(STORED_LOCKS, None)
    return next_row


def relock_rows(rows: Iterable[Mapping[str, Any]], block: BlockSpec) -> List[Row]:
    """Restore selection locks for rows loaded from storage.

    Bound rows get back the lock set saved with them. Rows saved without one
    lock their populated, editable columns outside the allow-list.
    """

    relocked: List[Row] = []
    for row in rows:
        next_row: Row = dict(row)
        if next_row.get(SELECTED_PRODUCT_ID):
            stored = next_row.get(STORED_LOCKS)
            if isinstance(stored, list):
                locked = set(stored)
            else:
                locked = set(next_row.get(LOCKED_FIELDS) or ())
                for column in block.columns:
                    if column.key in block.editable_after_selection or column.key in SELECTION_KEYS:
                        continue
                    if column.readonly or next_row.get(column.key) is None:
                        continue
                    locked.add(column.key)
            next_row[LOCKED_FIELDS] = sorted(locked)
        relocked.append(next_row)
    return relocked


def apply_relation_record(
    row: Mapping[str, Any],
    key: str,
    value: Any,
    record: Optional[Mapping[str, Any]],
    block: BlockSpec,
) -> Row:
    """Set a relation column and copy matching columns from the picked record.

    Nothing is locked by a relation pick. Picking the product of an invoice
    item also adopts the product's units, recomputes the sub quantity, and
    resets the withdrawal shelf.
    """

    next_row = apply_field_change(row, key, value, block)
    if not value or record is None:
        return next_row

    locked = set(next_row.get(LOCKED_FIELDS) or ())
    for column in block.columns:
        if column.key == key or column.key in locked:
            continue
        if column.key in record:
            next_row[column.key] = copy.deepcopy(record[column.key])

    if block.kind is BlockKind.INVOICE_ITEMS and key == "product_id":
        next_row["main_unit"] = record.get("main_unit") or next_row.get("main_unit")
        next_row["sub_unit"] = record.get("sub_unit") or next_row.get("sub_unit")
        if not is_manual_unit(next_row.get("sub_unit")):
            if next_row.get("main_unit") and next_row.get("sub_unit"):
                next_row["sub_quantity"] = convert_quantity(
                    next_row.get(block.quantity_key), next_row["main_unit"], next_row["sub_unit"]
                )
        next_row["source_shelf_id"] = None

    _recompute_total(next_row, block)
    return next_row


def resolve_scan(
    store: RecordStore,
    raw: Optional[str],
    *,
    module_id: Optional[str] = None,
    record_id: Optional[str] = None,
) -> Optional[Row]:
    """Resolve a scanned code to a product record.

    A scan that already carries a product id is looked up directly; otherwise
    the trimmed text is matched against the product's system code, manual
    code, and name, in that order.
    """

    products = Collection.PRODUCTS.value
    if record_id and module_id in (None, products):
        matches = store.read(products, {"id": record_id})
        if matches:
            return matches[0]
        log.warning("Scanned product id '%s' not found", record_id)
        return None

    text = (raw or "").strip()
    if not text:
        return None
    for field_name in SCAN_CODE_FIELDS:
        matches = store.read(products, {field_name: text})
        if matches:
            log.info("Scan '%s' resolved by %s to product '%s'", text, field_name, matches[0].get("id"))
            return matches[0]
    log.warning("Scan '%s' matched no product", text)
    return None


# ---------------------------------------------------------------------------
# Candidate filtering
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProductFilter:
    """One active constraint narrowing the product candidates of a row."""

    filter_key: str
    value: Any
    field_type: Any
    options: Sequence[Mapping[str, Any]] = ()


def _parse_potential_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    stripped = value.strip()
    if stripped[:1] not in ("[", "{"):
        return value
    try:
        return json.loads(stripped)
    except ValueError:
        return value


def _label_of(value: Any, options: Sequence[Mapping[str, Any]]) -> Any:
    if isinstance(value, Mapping):
        return value.get("label") or value.get("value")
    for option in options:
        if option.get("value") == value and option.get("label"):
            return option["label"]
    return value


def _as_values(value: Any, options: Sequence[Mapping[str, Any]]) -> List[Any]:
    parsed = _parse_potential_json(value)
    items = parsed if isinstance(parsed, list) else [parsed]
    values = []
    for item in items:
        resolved = _label_of(item, options)
        if isinstance(resolved, str):
            resolved = resolved.strip()
        if resolved not in (None, ""):
            values.append(resolved)
    return values


def build_product_filters(
    block: BlockSpec,
    row: Mapping[str, Any],
    dynamic_options: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None,
) -> List[ProductFilter]:
    """Collect filters from the row's filterable columns that hold a value."""

    dynamic_options = dynamic_options or {}
    filters: List[ProductFilter] = []
    for column in block.columns:
        if not column.filterable:
            continue
        options = _column_options(column, dynamic_options)
        values = _as_values(row.get(column.key), options)
        if not values:
            continue
        filters.append(
            ProductFilter(
                filter_key=column.filter_key or column.key,
                value=values,
                field_type=column.field_type,
                options=options,
            )
        )
    return filters


def _column_options(column: FieldSpec, dynamic_options: Mapping[str, Sequence[Mapping[str, Any]]]) -> Sequence[Mapping[str, Any]]:
    if column.options_category:
        return dynamic_options.get(column.options_category, ())
    return column.options


def filter_candidates(records: Iterable[Mapping[str, Any]], filters: Sequence[ProductFilter]) -> List[Mapping[str, Any]]:
    """Keep records satisfying every filter; multi-valued sides match on overlap."""

    def matches(record: Mapping[str, Any], product_filter: ProductFilter) -> bool:
        record_values = _as_values(record.get(product_filter.filter_key), product_filter.options)
        return any(value in record_values for value in product_filter.value)

    return [record for record in records if all(matches(record, f) for f in filters)]


def load_candidates(
    store: RecordStore,
    block: BlockSpec,
    row: Mapping[str, Any],
    dynamic_options: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None,
) -> List[Mapping[str, Any]]:
    """Return the products a row may be bound to."""

    filters = build_product_filters(block, row, dynamic_options)
    products = store.read(Collection.PRODUCTS.value)
    candidates = filter_candidates(products, filters)
    log.debug("Row '%s' has %d candidate product(s)", row.get(ROW_KEY), len(candidates))
    return candidates


__all__ = [
    "SELECTED_PRODUCT_ID",
    "SELECTED_PRODUCT_NAME",
    "SELECTED_SHELF_ID",
    "bind",
    "unbind",
    "select_shelf",
    "store_locks",
    "relock_rows",
    "apply_relation_record",
    "resolve_scan",
    "ProductFilter",
    "build_product_filters",
    "filter_candidates",
    "load_candidates",
]
