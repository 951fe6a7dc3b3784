"""Business logic layer for the line-item engine.

This module hosts :class:`RowCollectionEditor`, the state machine that owns
the working copy of one row collection while it is being edited, and the save
pipeline that turns the working copy into durable records. The pipeline runs
strictly in order:

1. structural validation of the rows,
2. ledger reconciliation (stock movements and shelf inventory),
3. cheque reconciliation (payments),
4. the row-collection write,
5. derived statistics sync (customer totals),
6. the change-log append.

A failure at any step aborts the remaining steps and puts the editor back in
``EDITING`` with the working copy intact. Steps that already completed are not
rolled back.

The runtime helpers at the bottom of the module (:func:`record_movement` and
friends) are thin entry points used by the command-line front-end.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook

from . import changelog, cheques, customer_stats, data_manager, inventory_ledger, log, selection
from .blocks import INVOICE_ITEMS_BLOCK, PAYMENTS_BLOCK, STOCK_MOVEMENTS_BLOCK
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    BlockKind,
    ChequeType,
    Collection,
    EditorState,
)
from .data_manager import RecordStore
from .errors import MissingReferenceError, ValidationError
from .numeric import to_decimal
from .row_rules import (
    READONLY_FLAG,
    ROW_ID,
    ROW_KEY,
    BlockSpec,
    Row,
    apply_field_change,
    calculate_row,
    calculate_summary,
    clone_row,
    new_row,
    new_row_key,
    prepare_working_copy,
    strip_client_fields,
)


EMBEDDED_KINDS = frozenset(
    {BlockKind.GENERIC, BlockKind.INVOICE_ITEMS, BlockKind.PAYMENTS, BlockKind.PRODUCTION_BOM}
)
INVOICE_SUMMARY_FIELDS = {
    "total": "total_invoice_amount",
    "received": "total_received_amount",
    "remaining": "remaining_balance",
}


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the engine."""

    settings: data_manager.ConfigSettings
    workbook: Workbook

    @property
    def store(self) -> data_manager.WorkbookRecordStore:
        return data_manager.WorkbookRecordStore(self.workbook)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context ready for editors and CLI helpers.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work against a workbook of another schema version.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Write in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, discarding unsaved modifications.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------


def get_record(store: RecordStore, collection: str, record_id: Any) -> Row:
    """Return one record or raise :class:`MissingReferenceError`."""

    matches = store.read(collection, {"id": record_id})
    if not matches:
        log.warning("Record '%s' not found in '%s'", record_id, collection)
        raise MissingReferenceError(f"Unknown {collection} id: {record_id}")
    return matches[0]


def rows_from_record(store: RecordStore, module_id: str, record_id: Any, block_id: str) -> List[Row]:
    """Copy the rows stored under ``block_id`` of another record, without identities."""

    record = get_record(store, module_id, record_id)
    rows = record.get(block_id) or []
    copied: List[Row] = []
    for row in rows if isinstance(rows, list) else ():
        next_row = strip_client_fields(row)
        next_row.pop(ROW_ID, None)
        next_row[ROW_KEY] = new_row_key()
        copied.append(next_row)
    return copied


def load_option_lists(store: RecordStore, block: BlockSpec) -> Dict[str, List[Dict[str, Any]]]:
    """Fetch the selectable options of every column of ``block``.

    Dynamic categories come from the ``dynamic_options`` collection and
    relation columns list their target records. The result is for display
    only and plays no part in saving.
    """

    options: Dict[str, List[Dict[str, Any]]] = {}
    categories = sorted({column.options_category for column in block.columns if column.options_category})
    if categories:
        for option in store.read(Collection.DYNAMIC_OPTIONS.value, {"category": categories}):
            if option.get("is_active") is False:
                continue
            options.setdefault(str(option["category"]), []).append(
                {"label": option.get("label") or option.get("value"), "value": option.get("value")}
            )
    for column in block.columns:
        if column.options:
            options[column.key] = [dict(option) for option in column.options]
        elif column.relation_target:
            options[column.key] = [
                {"label": record.get("name") or record.get("system_code") or record.get("id"), "value": record.get("id")}
                for record in store.read(column.relation_target)
            ]
    log.debug("Loaded %d option list(s) for block '%s'", len(options), block.block_id)
    return options


# ---------------------------------------------------------------------------
# Row-collection editor
# ---------------------------------------------------------------------------


@dataclass
class RowCollectionEditor:
    """Edit session for the rows of one block of one record.

    ``module_id`` and ``record_id`` name the owning record: a product for
    stock movements, a product or shelf for shelf inventory, and the parent
    record whose field stores the rows for every other block kind.
    """

    store: RecordStore
    block: BlockSpec
    module_id: str
    record_id: str
    user_id: Optional[str] = None
    allow_negative_stock: bool = False
    can_view_field: Optional[Callable[[str], bool]] = None
    state: EditorState = EditorState.VIEWING
    rows: List[Row] = field(default_factory=list)
    working_copy: Optional[List[Row]] = None
    last_error: Optional[Exception] = None

    # -- state handling ----------------------------------------------------

    def _transition(self, target: EditorState) -> None:
        log.debug("Editor '%s/%s' %s -> %s", self.block.block_id, self.record_id, self.state.value, target.value)
        self.state = target

    def _require(self, *states: EditorState) -> None:
        if self.state not in states:
            raise RuntimeError(
                f"Operation not allowed while editor is {self.state.value}"
            )

    def _rows(self) -> List[Row]:
        self._require(EditorState.EDITING)
        if self.working_copy is None:
            self.working_copy = []
        return self.working_copy

    def _index_of(self, row_key: Any) -> int:
        for index, row in enumerate(self._rows()):
            if str(row.get(ROW_KEY)) == str(row_key):
                return index
        raise MissingReferenceError(f"Unknown row key: {row_key}")

    def row(self, row_key: Any) -> Row:
        return self._rows()[self._index_of(row_key)]

    def _replace(self, row_key: Any, next_row: Row) -> Row:
        rows = self._rows()
        rows[self._index_of(row_key)] = next_row
        return next_row

    def _product_units(self) -> Optional[Mapping[str, Any]]:
        if self.block.kind is not BlockKind.STOCK_MOVEMENTS:
            return None
        matches = self.store.read(Collection.PRODUCTS.value, {"id": self.record_id})
        if not matches:
            return None
        return {"main_unit": matches[0].get("main_unit"), "sub_unit": matches[0].get("sub_unit")}

    # -- loading -----------------------------------------------------------

    def _scope_key(self) -> str:
        return "shelf_id" if self.module_id == Collection.SHELVES.value else "product_id"

    def load(self) -> List[Row]:
        """Read the persisted rows of the collection into :attr:`rows`."""

        kind = self.block.kind
        if kind is BlockKind.STOCK_MOVEMENTS:
            rows = inventory_ledger.load_movement_rows(self.store, self.record_id)
        elif kind is BlockKind.SHELF_INVENTORY:
            rows = self.store.read(Collection.PRODUCT_INVENTORY.value, {self._scope_key(): self.record_id})
        else:
            stored = get_record(self.store, self.module_id, self.record_id).get(self.block.block_id) or []
            rows = [dict(row) for row in stored] if isinstance(stored, list) else []
            if kind is BlockKind.PRODUCTION_BOM:
                rows = selection.relock_rows(rows, self.block)
        self.rows = rows
        log.debug("Loaded %d row(s) for '%s/%s'", len(rows), self.block.block_id, self.record_id)
        return list(rows)

    # -- editing -----------------------------------------------------------

    def start_edit(self) -> List[Row]:
        """Clone the persisted rows into a normalised working copy."""

        self._require(EditorState.VIEWING, EditorState.CANCELLED)
        self.working_copy = prepare_working_copy(self.rows, self.block, product_units=self._product_units())
        self.last_error = None
        self._transition(EditorState.EDITING)
        return self.working_copy

    def set_field(self, row_key: Any, field_key: str, value: Any) -> Row:
        """Apply one edit through the rule pipeline."""

        return self._replace(row_key, apply_field_change(self.row(row_key), field_key, value, self.block))

    def pick_relation(self, row_key: Any, field_key: str, value: Any) -> Row:
        """Set a relation column and copy matching fields from the picked record."""

        column = self.block.column(field_key)
        record = None
        if value and column is not None and column.relation_target:
            matches = self.store.read(column.relation_target, {"id": value})
            record = matches[0] if matches else None
        next_row = selection.apply_relation_record(self.row(row_key), field_key, value, record, self.block)
        return self._replace(row_key, next_row)

    def add_row(self) -> Row:
        row = new_row(self.block, can_view_field=self.can_view_field, product_units=self._product_units())
        self._rows().append(row)
        return row

    def _reject_readonly(self, row: Mapping[str, Any], action: str) -> None:
        if self.block.readonly or row.get(READONLY_FLAG):
            log.error("Cannot %s read-only row '%s'", action, row.get(ROW_KEY))
            raise ValidationError(f"Row '{row.get(ROW_KEY)}' is read-only and cannot be {action}d")

    def copy_row(self, row_key: Any) -> Row:
        """Insert a copy of a row right after it."""

        index = self._index_of(row_key)
        source = self._rows()[index]
        self._reject_readonly(source, "copy")
        copied = clone_row(source)
        self._rows().insert(index + 1, copied)
        return copied

    def remove_row(self, row_key: Any) -> None:
        index = self._index_of(row_key)
        self._reject_readonly(self._rows()[index], "remove")
        del self._rows()[index]

    def bind_selection(self, row_key: Any, record: Mapping[str, Any], shelf_id: Optional[str] = None) -> Row:
        next_row = selection.bind(
            self.row(row_key), record, self.block, can_view_field=self.can_view_field, shelf_id=shelf_id
        )
        return self._replace(row_key, next_row)

    def clear_selection(self, row_key: Any) -> Row:
        return self._replace(row_key, selection.unbind(self.row(row_key)))

    def populate_from(self, module_id: str, record_id: Any, block_id: Optional[str] = None) -> List[Row]:
        """Start a working copy from the rows of another record."""

        copied = rows_from_record(self.store, module_id, record_id, block_id or self.block.block_id)
        if self.state is not EditorState.EDITING:
            self.start_edit()
        self.working_copy = prepare_working_copy(copied, self.block, product_units=self._product_units())
        log.info("Populated '%s' with %d row(s) from %s '%s'", self.block.block_id, len(copied), module_id, record_id)
        return self.working_copy

    def cancel(self) -> None:
        """Discard the working copy without any I/O."""

        self._require(EditorState.EDITING)
        self._transition(EditorState.CANCELLED)
        self.working_copy = None
        self._transition(EditorState.VIEWING)

    # -- saving ------------------------------------------------------------

    def save(self) -> List[Row]:
        """Run the save pipeline and return the committed rows.

        Raises:
            ValidationError: If the rows are malformed; nothing was written.
            ReconciliationConflict: If a ledger or cheque precondition failed.
            StoreError: If the record store rejected a write.
        """

        rows = [dict(row) for row in self._rows()]
        self._transition(EditorState.SAVING)
        try:
            committed = self._run_pipeline(rows)
        except Exception as exc:
            self.last_error = exc
            log.error("Save of '%s/%s' failed: %s", self.block.block_id, self.record_id, exc)
            self._transition(EditorState.EDITING)
            raise

        # Rows are committed here; change-log failures are only logged.
        try:
            changelog.append_change_log(
                self.store,
                changelog.ChangeLogEntry(
                    module_id=self.module_id,
                    record_id=self.record_id,
                    block_id=self.block.block_id,
                    before=[strip_client_fields(row) for row in self.rows],
                    after=[strip_client_fields(row) for row in committed],
                    user_id=self.user_id,
                ),
                self.block,
            )
        except Exception:
            log.exception("Change log for '%s/%s' was not written", self.block.block_id, self.record_id)
        self.rows = committed
        self.working_copy = None
        self.last_error = None
        self._transition(EditorState.VIEWING)
        log.info("Saved %d row(s) to '%s/%s'", len(committed), self.block.block_id, self.record_id)
        return committed

    def _run_pipeline(self, rows: List[Row]) -> List[Row]:
        kind = self.block.kind
        if kind is BlockKind.STOCK_MOVEMENTS:
            return self._save_movements(rows)
        if kind is BlockKind.SHELF_INVENTORY:
            return self._save_shelf_inventory(rows)
        return self._save_embedded(rows)

    def _save_movements(self, rows: List[Row]) -> List[Row]:
        product_id = self.record_id
        inventory_ledger.validate_movement_rows(inventory_ledger.manual_rows(rows))
        inventory_ledger.reconcile(
            self.store, product_id, self.rows, rows, allow_negative=self.allow_negative_stock
        )

        kept_ids = {str(row[ROW_ID]) for row in rows if row.get(ROW_ID)}
        removed = [
            row[ROW_ID]
            for row in inventory_ledger.manual_rows(self.rows)
            if row.get(ROW_ID) and str(row[ROW_ID]) not in kept_ids
        ]
        transfers = Collection.STOCK_TRANSFERS.value
        if removed:
            self.store.delete(transfers, removed)
        payload = inventory_ledger.build_transfer_payload(rows, product_id, self.user_id)
        if payload:
            self.store.write(transfers, payload)
        return inventory_ledger.load_movement_rows(self.store, product_id)

    def _validate_shelf_rows(self, rows: Sequence[Mapping[str, Any]]) -> None:
        for index, row in enumerate(rows, start=1):
            if to_decimal(row.get("stock")) < 0 and not self.allow_negative_stock:
                log.error("Shelf inventory row %d has negative stock", index)
                raise ValidationError(f"Row {index}: stock cannot be negative")

    def _save_shelf_inventory(self, rows: List[Row]) -> List[Row]:
        scope = self._scope_key()
        other = "product_id" if scope == "shelf_id" else "shelf_id"
        inventory = Collection.PRODUCT_INVENTORY.value

        candidates = [row for row in rows if row.get(other)]
        self._validate_shelf_rows(candidates)
        payload = []
        for row in candidates:
            record = strip_client_fields(row)
            record.pop(ROW_ID, None)
            record[scope] = self.record_id
            record["stock"] = to_decimal(row.get("stock"))
            payload.append(record)
        payload = inventory_ledger.dedupe_inventory_rows(payload)

        keys = {(str(row["product_id"]), str(row["shelf_id"])) for row in payload}
        removed = [
            row[ROW_ID]
            for row in self.rows
            if row.get(ROW_ID) and (str(row.get("product_id")), str(row.get("shelf_id"))) not in keys
        ]
        if removed:
            self.store.delete(inventory, removed)
        if payload:
            self.store.write(inventory, payload, conflict_key=inventory_ledger.INVENTORY_CONFLICT_KEY)

        affected = sorted({str(row.get("product_id")) for row in [*self.rows, *payload] if row.get("product_id")})
        inventory_ledger.sync_product_stock(self.store, affected)
        return self.store.read(inventory, {scope: self.record_id})

    def cheque_context(self, parent: Mapping[str, Any]) -> cheques.ChequeContext:
        if parent.get("supplier_id") and not parent.get("customer_id"):
            return cheques.ChequeContext(
                module_id=self.module_id,
                record_id=self.record_id,
                party_id=parent.get("supplier_id"),
                party_type="supplier",
                cheque_type=ChequeType.ISSUED,
            )
        return cheques.ChequeContext(
            module_id=self.module_id,
            record_id=self.record_id,
            party_id=parent.get("customer_id"),
            party_type="customer" if parent.get("customer_id") else None,
        )

    def _save_embedded(self, rows: List[Row]) -> List[Row]:
        parent = get_record(self.store, self.module_id, self.record_id)

        if self.block.kind is BlockKind.PAYMENTS:
            rows = cheques.reconcile_payment_rows(
                self.store, rows, self.cheque_context(parent), previous_rows=self.rows
            )

        stored_rows: List[Row] = []
        for row in rows:
            if self.block.kind is BlockKind.PRODUCTION_BOM:
                row = selection.store_locks(row)
            record = strip_client_fields(row)
            if self.block.has_column("total_price"):
                record["total_price"] = calculate_row(row, self.block.row_calculation)
            stored_rows.append(record)

        patch: Dict[str, Any] = {self.block.block_id: stored_rows}
        if self.block.kind in (BlockKind.INVOICE_ITEMS, BlockKind.PAYMENTS):
            merged = {**parent, **patch}
            summary = calculate_summary(merged, (INVOICE_ITEMS_BLOCK, PAYMENTS_BLOCK))
            patch.update({INVOICE_SUMMARY_FIELDS[key]: value for key, value in summary.items()})
        updated = self.store.update_field(self.module_id, self.record_id, patch)

        if self.block.kind in (BlockKind.INVOICE_ITEMS, BlockKind.PAYMENTS) and parent.get("customer_id"):
            customer_stats.sync_customer_stats(self.store, [parent["customer_id"]])

        committed = updated.get(self.block.block_id) or []
        if self.block.kind is BlockKind.PRODUCTION_BOM:
            committed = selection.relock_rows(committed, self.block)
        return list(committed)


def open_editor(
    context: RuntimeContext,
    block: BlockSpec,
    module_id: str,
    record_id: str,
    *,
    can_view_field: Optional[Callable[[str], bool]] = None,
) -> RowCollectionEditor:
    """Create an editor bound to the runtime workbook and load its rows."""

    editor = RowCollectionEditor(
        store=context.store,
        block=block,
        module_id=module_id,
        record_id=record_id,
        user_id=context.settings.default_user_id,
        allow_negative_stock=context.settings.allow_negative_stock,
        can_view_field=can_view_field,
    )
    editor.load()
    return editor


# ---------------------------------------------------------------------------
# Stock movement entry points
# ---------------------------------------------------------------------------


def _movement_editor(context: RuntimeContext, product_id: str) -> RowCollectionEditor:
    get_record(context.store, Collection.PRODUCTS.value, product_id)
    editor = open_editor(context, STOCK_MOVEMENTS_BLOCK, Collection.PRODUCTS.value, product_id)
    editor.start_edit()
    return editor


def _fill_movement(editor: RowCollectionEditor, row_key: Any, values: Mapping[str, Any]) -> None:
    for key in ("source", "voucher_type", "from_shelf_id", "to_shelf_id", "main_quantity", "sub_quantity"):
        if key in values and values[key] is not None:
            editor.set_field(row_key, key, values[key])


def list_movements(context: RuntimeContext, product_id: str) -> List[Row]:
    """Return the persisted movements of a product, oldest first."""

    get_record(context.store, Collection.PRODUCTS.value, product_id)
    return inventory_ledger.load_movement_rows(context.store, product_id)


def record_movement(context: RuntimeContext, product_id: str, **values: Any) -> List[Row]:
    """Append one manual movement to a product and save.

    Keyword arguments name movement fields (``voucher_type``, ``source``,
    ``main_quantity``, ``from_shelf_id``, ``to_shelf_id``, ``sub_quantity``).
    """

    editor = _movement_editor(context, product_id)
    row = editor.add_row()
    _fill_movement(editor, row[ROW_KEY], values)
    return editor.save()


def edit_movement(context: RuntimeContext, product_id: str, movement_id: str, **values: Any) -> List[Row]:
    """Change fields of a persisted manual movement and save."""

    editor = _movement_editor(context, product_id)
    _fill_movement(editor, movement_id, values)
    return editor.save()


def delete_movement(context: RuntimeContext, product_id: str, movement_id: str) -> List[Row]:
    """Remove a persisted manual movement and save."""

    editor = _movement_editor(context, product_id)
    editor.remove_row(movement_id)
    return editor.save()


def stock_by_shelf(context: RuntimeContext, product_id: str) -> Dict[str, Decimal]:
    """Current balance of a product per shelf."""

    balances = context.store.read(Collection.PRODUCT_INVENTORY.value, {"product_id": product_id})
    return {str(row["shelf_id"]): to_decimal(row.get("stock")) for row in balances}


def change_history(context: RuntimeContext, module_id: str, record_id: str) -> List[Row]:
    return changelog.read_change_log(context.store, module_id, record_id)


__all__ = [
    "RuntimeContext",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "get_record",
    "rows_from_record",
    "load_option_lists",
    "RowCollectionEditor",
    "open_editor",
    "list_movements",
    "record_movement",
    "edit_movement",
    "delete_movement",
    "stock_by_shelf",
    "change_history",
]
