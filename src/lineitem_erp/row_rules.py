"""Cascading field rules applied to a single grid row.

Every edit of a row goes through :func:`apply_field_change`, which runs a
fixed pipeline so that derived values never depend on the order in which the
user touched the cells:

1. coerce the new value according to the column's :class:`FieldType` and run
   the side effects registered for the block kind and field;
2. derive the dimensioned quantity (``length × width``);
3. convert the main quantity into the sub unit;
4. recompute ``total_price`` when a pricing-relevant value changed.

The module performs no I/O. Rows are plain dictionaries; the reserved keys
``key``, ``id``, ``_locked_fields`` and ``_readonly`` carry client identity,
server identity, selection locks and whole-row immutability.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from . import log
from .constants import (
    CATEGORICAL_FIELD_TYPES,
    CHEQUE_LINK_FIELDS,
    NUMERIC_FIELD_TYPES,
    BlockKind,
    FieldType,
    MovementSource,
    PaymentStatus,
    PaymentType,
    RowCalculationType,
    VoucherType,
)
from .errors import ValidationError
from .numeric import is_blank, normalize_numeric_string, to_decimal
from .units import convert_quantity, is_manual_unit


Row = Dict[str, Any]

ROW_KEY = "key"
ROW_ID = "id"
LOCKED_FIELDS = "_locked_fields"
READONLY_FLAG = "_readonly"
RESERVED_KEYS = frozenset({ROW_KEY, LOCKED_FIELDS, READONLY_FLAG})

DIMENSION_TOGGLE = "use_dimensions"
DIMENSION_KEYS = frozenset({"length", "width", DIMENSION_TOGGLE})
UNIT_KEYS = frozenset({"main_unit", "sub_unit"})
PRICING_KEYS = frozenset(
    {
        "quantity",
        "qty",
        "usage",
        "stock",
        "unit_price",
        "price",
        "buy_price",
        "discount",
        "vat",
        "discount_type",
        "vat_type",
        "length",
        "width",
        "main_quantity",
        "sub_quantity",
        DIMENSION_TOGGLE,
    }
)

DEFAULT_EDITABLE_AFTER_SELECTION = frozenset(
    {"buy_price", "length", "width", "usage", "waste_rate", "main_unit"}
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FieldSpec:
    """Static description of one grid column."""

    key: str
    field_type: FieldType = FieldType.TEXT
    title: str = ""
    default: Any = None
    filterable: bool = False
    filter_key: Optional[str] = None
    readonly: bool = False
    readonly_when: Optional[Tuple[str, Any]] = None
    options: Tuple[Mapping[str, Any], ...] = ()
    options_category: Optional[str] = None
    relation_target: Optional[str] = None

    @property
    def is_numeric(self) -> bool:
        return self.field_type in NUMERIC_FIELD_TYPES


@dataclass(frozen=True)
class BlockSpec:
    """Row-collection definition: its columns and the semantics attached to them."""

    block_id: str
    kind: BlockKind = BlockKind.GENERIC
    columns: Tuple[FieldSpec, ...] = ()
    row_calculation: RowCalculationType = RowCalculationType.SIMPLE_MULTIPLY
    editable_after_selection: FrozenSet[str] = DEFAULT_EDITABLE_AFTER_SELECTION
    selection_field_map: Mapping[str, str] = field(default_factory=dict)
    readonly: bool = False
    title: str = ""

    def column(self, key: str) -> Optional[FieldSpec]:
        for column in self.columns:
            if column.key == key:
                return column
        return None

    def has_column(self, key: str) -> bool:
        return self.column(key) is not None

    @property
    def column_keys(self) -> List[str]:
        return [column.key for column in self.columns]

    @property
    def quantity_key(self) -> str:
        """Field holding the main-unit quantity of a row."""

        if self.kind is BlockKind.STOCK_MOVEMENTS:
            return "main_quantity"
        return "quantity"

    @property
    def dimension_target(self) -> Optional[str]:
        """Field receiving ``length × width``, or ``None`` when not dimensioned."""

        if self.kind is BlockKind.INVOICE_ITEMS:
            return "quantity"
        if self.kind in (BlockKind.PRODUCTION_BOM, BlockKind.GENERIC):
            return "usage"
        return None

    @property
    def converts_units(self) -> bool:
        return self.kind in (BlockKind.INVOICE_ITEMS, BlockKind.STOCK_MOVEMENTS)


# ---------------------------------------------------------------------------
# Value coercion by field type
# ---------------------------------------------------------------------------


def _coerce_numeric(value: Any) -> Optional[str]:
    normalized = normalize_numeric_string(value)
    return normalized or None


def _coerce_categorical(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _coerce_checkbox(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no")
    return bool(value)


def _coerce_passthrough(value: Any) -> Any:
    return value


FIELD_COERCERS: Dict[FieldType, Callable[[Any], Any]] = {
    **{field_type: _coerce_numeric for field_type in NUMERIC_FIELD_TYPES},
    **{field_type: _coerce_categorical for field_type in CATEGORICAL_FIELD_TYPES},
    FieldType.CHECKBOX: _coerce_checkbox,
    FieldType.DATE: _coerce_passthrough,
    FieldType.DATETIME: _coerce_passthrough,
    FieldType.TEXT: _coerce_passthrough,
}


def coerce_value(column: Optional[FieldSpec], value: Any) -> Any:
    """Coerce ``value`` with the handler registered for the column type."""

    if column is None:
        return value
    return FIELD_COERCERS[column.field_type](value)


# ---------------------------------------------------------------------------
# Block-kind side effects
# ---------------------------------------------------------------------------


def _on_voucher_type(row: Row, value: Any) -> None:
    if value == VoucherType.INCOMING.value:
        row["from_shelf_id"] = None
    elif value == VoucherType.OUTGOING.value:
        row["to_shelf_id"] = None


def _on_movement_source(row: Row, value: Any) -> None:
    if value == MovementSource.WASTE.value:
        row["voucher_type"] = VoucherType.OUTGOING.value
        row["to_shelf_id"] = None


def _on_payment_type(row: Row, value: Any) -> None:
    if value != PaymentType.CHEQUE.value:
        for key in CHEQUE_LINK_FIELDS:
            if key in row:
                row[key] = None


def _on_cheque_link_mode(row: Row, value: Any) -> None:
    row["cheque_id"] = None
    row["cheque_is_auto"] = False


def _on_cheque_id(row: Row, value: Any) -> None:
    row["cheque_is_auto"] = False


def _on_invoice_product(row: Row, value: Any) -> None:
    row["source_shelf_id"] = None


def _on_selected_product(row: Row, value: Any) -> None:
    if not value:
        row["selected_shelf_id"] = None
        row["selected_product_name"] = None


SIDE_EFFECTS: Dict[Tuple[BlockKind, str], Callable[[Row, Any], None]] = {
    (BlockKind.STOCK_MOVEMENTS, "voucher_type"): _on_voucher_type,
    (BlockKind.STOCK_MOVEMENTS, "source"): _on_movement_source,
    (BlockKind.PAYMENTS, "payment_type"): _on_payment_type,
    (BlockKind.PAYMENTS, "cheque_link_mode"): _on_cheque_link_mode,
    (BlockKind.PAYMENTS, "cheque_id"): _on_cheque_id,
    (BlockKind.INVOICE_ITEMS, "product_id"): _on_invoice_product,
    (BlockKind.PRODUCTION_BOM, "selected_product_id"): _on_selected_product,
}


# ---------------------------------------------------------------------------
# Derived values
# ---------------------------------------------------------------------------


def _first_nonzero(*values: Optional[Decimal]) -> Decimal:
    for value in values:
        if value is not None and value != ZERO:
            return value
    return ZERO


def area_of(row: Mapping[str, Any]) -> Optional[Decimal]:
    """Return ``length × width`` when both are present, else ``None``."""

    length = row.get("length")
    width = row.get("width")
    if is_blank(length) or is_blank(width):
        return None
    return to_decimal(length) * to_decimal(width)


def row_quantity(row: Mapping[str, Any]) -> Decimal:
    """First non-zero of quantity, usage, area, qty and stock."""

    return _first_nonzero(
        to_decimal(row.get("quantity")),
        to_decimal(row.get("usage")),
        area_of(row),
        to_decimal(row.get("qty")),
        to_decimal(row.get("stock")),
    )


def row_price(row: Mapping[str, Any]) -> Decimal:
    """First non-zero of unit price, buy price and price."""

    return _first_nonzero(
        to_decimal(row.get("unit_price")),
        to_decimal(row.get("buy_price")),
        to_decimal(row.get("price")),
    )


def invoice_amounts(row: Mapping[str, Any]) -> Tuple[Decimal, Decimal]:
    """Return the discount and VAT amounts of an invoice row.

    Discounts are absolute amounts unless ``discount_type`` is ``"percent"``;
    VAT is a percentage of the discounted amount unless ``vat_type`` is
    ``"amount"``.
    """

    base_total = row_quantity(row) * row_price(row)
    discount_input = to_decimal(row.get("discount"))
    vat_input = to_decimal(row.get("vat"))
    discount_type = row.get("discount_type") or "amount"
    vat_type = row.get("vat_type") or "percent"

    if discount_type == "percent":
        discount_amount = base_total * discount_input / HUNDRED
    else:
        discount_amount = discount_input
    after_discount = base_total - discount_amount
    if vat_type == "percent":
        vat_amount = after_discount * vat_input / HUNDRED
    else:
        vat_amount = vat_input
    return discount_amount, vat_amount


def calculate_row(row: Mapping[str, Any], calculation: RowCalculationType = RowCalculationType.SIMPLE_MULTIPLY) -> Decimal:
    """Compute the monetary total of ``row`` under ``calculation``."""

    base_total = row_quantity(row) * row_price(row)
    if calculation is not RowCalculationType.INVOICE_ROW:
        return base_total
    discount_amount, vat_amount = invoice_amounts(row)
    return base_total - discount_amount + vat_amount


def is_dimensioned(row: Mapping[str, Any]) -> bool:
    """Return whether the row derives its quantity from length and width."""

    toggle = row.get(DIMENSION_TOGGLE)
    if toggle is not None:
        return _coerce_checkbox(toggle)
    return area_of(row) is not None


def calculate_summary(record: Mapping[str, Any], blocks: Sequence[BlockSpec]) -> Dict[str, Decimal]:
    """Aggregate the table blocks of ``record``.

    Records with an invoice-row block report invoice financials: the total of
    item rows, the sum of payment rows whose status is ``received``, and the
    remaining balance. Any other record reports the sum of all row totals.
    """

    def row_total(row: Mapping[str, Any], block: BlockSpec) -> Decimal:
        return _first_nonzero(to_decimal(row.get("total_price")), calculate_row(row, block.row_calculation))

    invoice_block = next(
        (block for block in blocks if block.row_calculation is RowCalculationType.INVOICE_ROW),
        None,
    )
    if invoice_block is not None:
        items = record.get(invoice_block.block_id) or []
        total = sum((row_total(item, invoice_block) for item in items), ZERO)
        payment_block = next((block for block in blocks if block.kind is BlockKind.PAYMENTS), None)
        payments = []
        if payment_block is not None:
            payments = record.get(payment_block.block_id) or []
        received = sum(
            (
                to_decimal(payment.get("amount"))
                for payment in payments
                if payment.get("status") == PaymentStatus.RECEIVED.value
            ),
            ZERO,
        )
        return {"total": total, "received": received, "remaining": total - received}

    grand_total = ZERO
    for block in blocks:
        for row in record.get(block.block_id) or []:
            grand_total += row_total(row, block)
    return {"total": grand_total}


# ---------------------------------------------------------------------------
# Field change pipeline
# ---------------------------------------------------------------------------


def is_field_editable(row: Mapping[str, Any], key: str, block: BlockSpec) -> bool:
    """Return whether ``key`` may be edited directly on ``row``."""

    if block.readonly or row.get(READONLY_FLAG):
        return False
    if key in (row.get(LOCKED_FIELDS) or ()):
        return False
    column = block.column(key)
    if column is None:
        return True
    if column.readonly:
        return False
    if column.readonly_when is not None:
        guard_key, guard_value = column.readonly_when
        if row.get(guard_key) == guard_value:
            return False
    return True


def _derive_dimensions(row: Row, block: BlockSpec) -> Set[str]:
    target = block.dimension_target
    if target is None or not is_dimensioned(row):
        return set()
    area = area_of(row)
    if area is None:
        return set()
    row[target] = area
    return {target}


def _derive_sub_quantity(row: Row, block: BlockSpec) -> Set[str]:
    if is_manual_unit(row.get("sub_unit")):
        return set()
    main_unit = row.get("main_unit")
    sub_unit = row.get("sub_unit")
    if main_unit and sub_unit:
        row["sub_quantity"] = convert_quantity(row.get(block.quantity_key), main_unit, sub_unit)
    else:
        row["sub_quantity"] = ZERO
    return {"sub_quantity"}


def apply_field_change(row: Mapping[str, Any], field_key: str, new_value: Any, block: BlockSpec) -> Row:
    """Return a copy of ``row`` with ``field_key`` set and dependents recomputed.

    Args:
        row (Mapping[str, Any]): Current working-copy row; left untouched.
        field_key (str): Column being edited.
        new_value (Any): Raw value reported by the form renderer.
        block (BlockSpec): Definition of the collection the row belongs to.

    Returns:
        Row: New row with the cascade applied.

    Raises:
        ValidationError: If the row is read-only, ``field_key`` is locked by
            a selection binding, or the column is read-only for this row.
    """

    if row.get(READONLY_FLAG):
        log.warning("Rejected edit of '%s' on read-only row '%s'", field_key, row.get(ROW_KEY))
        raise ValidationError(f"Row '{row.get(ROW_KEY)}' is read-only")
    if field_key in (row.get(LOCKED_FIELDS) or ()):
        log.warning("Rejected edit of locked field '%s' on row '%s'", field_key, row.get(ROW_KEY))
        raise ValidationError(f"Field '{field_key}' is locked by the current selection")
    if not is_field_editable(row, field_key, block):
        log.warning("Rejected edit of read-only field '%s' on row '%s'", field_key, row.get(ROW_KEY))
        raise ValidationError(f"Field '{field_key}' is read-only on row '{row.get(ROW_KEY)}'")

    next_row: Row = copy.deepcopy(dict(row))
    next_row[field_key] = coerce_value(block.column(field_key), new_value)

    # Side effects fire on a change of value only.
    side_effect = SIDE_EFFECTS.get((block.kind, field_key))
    if side_effect is not None and next_row[field_key] != row.get(field_key):
        side_effect(next_row, next_row[field_key])

    derived: Set[str] = set()
    if field_key in DIMENSION_KEYS:
        derived |= _derive_dimensions(next_row, block)

    quantity_touched = field_key == block.quantity_key or block.quantity_key in derived
    if block.converts_units and (quantity_touched or field_key in UNIT_KEYS):
        derived |= _derive_sub_quantity(next_row, block)

    if field_key in PRICING_KEYS or derived:
        if block.has_column("total_price") or "total_price" in next_row:
            next_row["total_price"] = calculate_row(next_row, block.row_calculation)

    log.debug("Applied '%s' on row '%s'; derived %s", field_key, next_row.get(ROW_KEY), sorted(derived))
    return next_row


def refresh_derived(row: Row, block: BlockSpec) -> Set[str]:
    """Recompute every derived field of ``row`` in place.

    Used after many fields change at once, such as a selection binding.
    """

    derived = _derive_dimensions(row, block)
    if block.converts_units:
        derived |= _derive_sub_quantity(row, block)
    if block.has_column("total_price") or "total_price" in row:
        row["total_price"] = calculate_row(row, block.row_calculation)
        derived.add("total_price")
    return derived


# ---------------------------------------------------------------------------
# Row construction and edit preparation
# ---------------------------------------------------------------------------


def new_row_key() -> str:
    """Allocate a client-side identity for an unsaved row."""

    return uuid.uuid4().hex


def visible_columns(block: BlockSpec, can_view_field: Optional[Callable[[str], bool]] = None) -> List[FieldSpec]:
    if can_view_field is None:
        return list(block.columns)
    return [column for column in block.columns if can_view_field(column.key) is not False]


def apply_defaults(row: Row, block: BlockSpec, product_units: Optional[Mapping[str, Any]] = None) -> Row:
    """Fill column defaults and kind-specific defaults the row lacks."""

    for column in block.columns:
        if column.key not in row and column.default is not None:
            row[column.key] = column.default
    if block.kind is BlockKind.INVOICE_ITEMS:
        row["discount_type"] = row.get("discount_type") or "amount"
        row["vat_type"] = row.get("vat_type") or "percent"
    if block.kind is BlockKind.STOCK_MOVEMENTS:
        units = product_units or {}
        row["voucher_type"] = row.get("voucher_type") or VoucherType.INCOMING.value
        row["source"] = row.get("source") or MovementSource.OPENING_BALANCE.value
        row["main_unit"] = row.get("main_unit") or units.get("main_unit")
        row["sub_unit"] = row.get("sub_unit") or units.get("sub_unit")
    return row


def new_row(
    block: BlockSpec,
    *,
    can_view_field: Optional[Callable[[str], bool]] = None,
    product_units: Optional[Mapping[str, Any]] = None,
) -> Row:
    """Build an empty row for ``block`` with its default values."""

    columns = visible_columns(block, can_view_field)
    keys = {column.key for column in columns}
    row: Row = {ROW_KEY: new_row_key()}
    for key, value in (("quantity", "1"), ("unit_price", "0"), ("discount", "0"), ("vat", "0")):
        if key in keys:
            row[key] = value
    if "total_price" in keys:
        row["total_price"] = ZERO
    for column in columns:
        if column.default is not None:
            row[column.key] = column.default

    apply_defaults(row, block, product_units)
    if block.kind is BlockKind.STOCK_MOVEMENTS:
        row["main_quantity"] = normalize_numeric_string(row.get("main_quantity")) or "0"
        row["sub_quantity"] = to_decimal(row.get("sub_quantity"))
    return row


def clone_row(row: Mapping[str, Any]) -> Row:
    """Copy ``row`` under a fresh client key and without server identity."""

    cloned = copy.deepcopy(dict(row))
    cloned.pop(ROW_ID, None)
    cloned[ROW_KEY] = new_row_key()
    return cloned


def normalize_row_for_edit(row: Mapping[str, Any], block: BlockSpec) -> Row:
    """Bring persisted values into the string forms the grid edits."""

    next_row: Row = dict(row)
    for column in block.columns:
        if column.key not in next_row or next_row[column.key] is None:
            continue
        if column.is_numeric:
            next_row[column.key] = _coerce_numeric(next_row[column.key])
        elif column.field_type in CATEGORICAL_FIELD_TYPES:
            next_row[column.key] = str(next_row[column.key])

    if block.kind is BlockKind.INVOICE_ITEMS and next_row.get("main_unit") and next_row.get("sub_unit"):
        _derive_sub_quantity(next_row, block)
    return next_row


def prepare_working_copy(
    rows: Iterable[Mapping[str, Any]],
    block: BlockSpec,
    *,
    product_units: Optional[Mapping[str, Any]] = None,
) -> List[Row]:
    """Clone persisted rows into an independent, normalised working copy."""

    prepared: List[Row] = []
    for index, row in enumerate(rows):
        next_row = normalize_row_for_edit(row, block)
        next_row[ROW_KEY] = row.get(ROW_KEY) or row.get(ROW_ID) or f"edit_{index}"
        if block.has_column("total_price"):
            next_row["total_price"] = calculate_row(next_row, block.row_calculation)
        apply_defaults(next_row, block, product_units)
        prepared.append(next_row)
    return copy.deepcopy(prepared)


def strip_client_fields(row: Mapping[str, Any]) -> Row:
    """Drop client-only keys before a row is persisted."""

    return {key: value for key, value in row.items() if key not in RESERVED_KEYS}


__all__ = [
    "Row",
    "FieldSpec",
    "BlockSpec",
    "ROW_KEY",
    "ROW_ID",
    "LOCKED_FIELDS",
    "READONLY_FLAG",
    "DIMENSION_TOGGLE",
    "PRICING_KEYS",
    "DEFAULT_EDITABLE_AFTER_SELECTION",
    "FIELD_COERCERS",
    "SIDE_EFFECTS",
    "coerce_value",
    "area_of",
    "row_quantity",
    "row_price",
    "invoice_amounts",
    "calculate_row",
    "calculate_summary",
    "is_dimensioned",
    "is_field_editable",
    "apply_field_change",
    "refresh_derived",
    "new_row_key",
    "visible_columns",
    "apply_defaults",
    "new_row",
    "clone_row",
    "normalize_row_for_edit",
    "prepare_working_copy",
    "strip_client_fields",
]
