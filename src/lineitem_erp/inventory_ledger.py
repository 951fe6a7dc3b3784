"""Stock ledger reconciliation for stock-movement rows.

Balances live in the ``product_inventory`` collection, one record per
``(product_id, shelf_id)`` pair. Movement rows never touch balances
directly: they are translated into signed :class:`InventoryDelta` values, and
a save applies the *difference* between the previously persisted rows and
the edited rows by reversing the former (``sign=-1``) and applying the latter
(``sign=+1``) as one aggregated mutation. Any add, edit, or delete is
therefore captured without diffing individual rows.

Every balance touched by a mutation is read and checked before anything is
written, so a mutation that would drive a shelf negative leaves the ledger
untouched.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import AUTOMATED_SOURCES, MANUAL_SOURCES, Collection, VoucherType
from .data_manager import RecordStore
from .errors import ReconciliationConflict, ValidationError
from .numeric import to_decimal
from .row_rules import READONLY_FLAG, ROW_KEY, Row
from .units import convert_quantity


INVENTORY = Collection.PRODUCT_INVENTORY.value
TRANSFERS = Collection.STOCK_TRANSFERS.value
PRODUCTS = Collection.PRODUCTS.value
SHELVES = Collection.SHELVES.value
INVENTORY_CONFLICT_KEY = ("product_id", "shelf_id")

ZERO = Decimal("0")


@dataclass(frozen=True)
class Movement:
    """Typed view of one stock-movement row."""

    voucher_type: str
    source: str
    main_quantity: Decimal
    sub_quantity: Decimal
    from_shelf_id: Optional[str]
    to_shelf_id: Optional[str]
    product_id: Optional[str]
    readonly: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any], product_id: Optional[str] = None) -> "Movement":
        return cls(
            voucher_type=str(row.get("voucher_type") or ""),
            source=str(row.get("source") or ""),
            main_quantity=abs(to_decimal(row.get("main_quantity"))),
            sub_quantity=abs(to_decimal(row.get("sub_quantity"))),
            from_shelf_id=_shelf(row.get("from_shelf_id")),
            to_shelf_id=_shelf(row.get("to_shelf_id")),
            product_id=_shelf(row.get("product_id")) or product_id,
            readonly=bool(row.get(READONLY_FLAG)),
        )


@dataclass(frozen=True)
class InventoryDelta:
    """Signed change to the balance of one product on one shelf."""

    product_id: str
    shelf_id: str
    delta: Decimal


def _shelf(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def manual_rows(rows: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Rows entered by hand, i.e. not materialised from automated sources."""

    return [row for row in rows if not row.get(READONLY_FLAG)]


def compute_deltas(rows: Iterable[Mapping[str, Any]], sign: int, product_id: Optional[str] = None) -> List[InventoryDelta]:
    """Translate movement rows into signed deltas.

    Incoming rows add to their destination shelf, outgoing rows subtract from
    their source shelf, and transfers produce one delta of each sign. Rows
    with no quantity, no product, or without the shelves their voucher type
    needs produce nothing.

    Args:
        rows (Iterable[Mapping[str, Any]]): Movement rows.
        sign (int): ``+1`` to apply the rows, ``-1`` to reverse them.
        product_id (str | None): Product for rows that do not name one.

    Returns:
        list[InventoryDelta]: One or two deltas per effective row.
    """

    deltas: List[InventoryDelta] = []
    multiplier = Decimal(sign)
    for row in rows:
        movement = Movement.from_row(row, product_id)
        quantity = movement.main_quantity
        if not quantity or not movement.product_id:
            continue
        pid = movement.product_id
        if movement.voucher_type == VoucherType.INCOMING.value and movement.to_shelf_id:
            deltas.append(InventoryDelta(pid, movement.to_shelf_id, quantity * multiplier))
        elif movement.voucher_type == VoucherType.OUTGOING.value and movement.from_shelf_id:
            deltas.append(InventoryDelta(pid, movement.from_shelf_id, -quantity * multiplier))
        elif (
            movement.voucher_type == VoucherType.TRANSFER.value
            and movement.from_shelf_id
            and movement.to_shelf_id
        ):
            deltas.append(InventoryDelta(pid, movement.from_shelf_id, -quantity * multiplier))
            deltas.append(InventoryDelta(pid, movement.to_shelf_id, quantity * multiplier))
    return deltas


def aggregate_deltas(deltas: Iterable[InventoryDelta]) -> "OrderedDict[Tuple[str, str], Decimal]":
    """Sum deltas per ``(product_id, shelf_id)``, dropping pairs that cancel out."""

    totals: "OrderedDict[Tuple[str, str], Decimal]" = OrderedDict()
    for item in deltas:
        if not item.product_id or not item.shelf_id or not item.delta:
            continue
        key = (item.product_id, item.shelf_id)
        totals[key] = totals.get(key, ZERO) + item.delta
    return OrderedDict((key, value) for key, value in totals.items() if value)


def validate_movement_rows(rows: Sequence[Mapping[str, Any]]) -> None:
    """Check editable movement rows before any ledger write.

    Raises:
        ValidationError: On the first row with a missing voucher type or
            source, a source that cannot be entered by hand, a non-positive
            quantity, or shelves that do not fit the voucher type.
    """

    for index, row in enumerate(rows, start=1):
        if row.get(READONLY_FLAG):
            continue
        movement = Movement.from_row(row)
        problem: Optional[str] = None
        if not movement.voucher_type:
            problem = "voucher type is required"
        elif not movement.source:
            problem = "source is required"
        elif movement.source not in MANUAL_SOURCES:
            problem = (
                f"source '{movement.source}' cannot be entered manually "
                f"(allowed: {', '.join(sorted(MANUAL_SOURCES))})"
            )
        elif movement.main_quantity <= ZERO:
            problem = "main quantity must be greater than zero"
        elif movement.voucher_type == VoucherType.INCOMING.value and not movement.to_shelf_id:
            problem = "incoming movements require a destination shelf"
        elif movement.voucher_type == VoucherType.OUTGOING.value and not movement.from_shelf_id:
            problem = "outgoing movements require a source shelf"
        elif movement.voucher_type == VoucherType.TRANSFER.value:
            if not movement.from_shelf_id or not movement.to_shelf_id:
                problem = "transfers require both a source and a destination shelf"
            elif movement.from_shelf_id == movement.to_shelf_id:
                problem = "transfer source and destination shelves must differ"
        elif movement.voucher_type not in {member.value for member in VoucherType}:
            problem = f"unknown voucher type '{movement.voucher_type}'"

        if problem is not None:
            log.error("Movement row %d (%s) rejected: %s", index, row.get(ROW_KEY), problem)
            raise ValidationError(f"Row {index}: {problem}")


def apply_deltas(store: RecordStore, deltas: Iterable[InventoryDelta], *, allow_negative: bool = False) -> List[Row]:
    """Apply ``deltas`` to shelf balances as one upsert.

    All affected balances are read and checked first; the write happens only
    when every resulting balance is acceptable.

    Args:
        store (RecordStore): Backend holding ``product_inventory``.
        deltas (Iterable[InventoryDelta]): Changes to apply.
        allow_negative (bool): Accept balances below zero.

    Returns:
        list[Row]: The balance records as written.

    Raises:
        ReconciliationConflict: If a balance would drop below zero.
    """

    aggregated = aggregate_deltas(deltas)
    if not aggregated:
        return []

    payload: List[Row] = []
    shortages: List[str] = []
    for (product_id, shelf_id), delta in aggregated.items():
        existing = store.read(INVENTORY, {"product_id": product_id, "shelf_id": shelf_id})
        current = to_decimal(existing[0].get("stock")) if existing else ZERO
        next_stock = current + delta
        if next_stock < ZERO and not allow_negative:
            shortages.append(f"{product_id}@{shelf_id} ({current} {delta:+})")
        record: Row = {"product_id": product_id, "shelf_id": shelf_id, "stock": next_stock}
        if existing and existing[0].get("warehouse_id") is not None:
            record["warehouse_id"] = existing[0]["warehouse_id"]
        payload.append(record)

    if shortages:
        log.error("Insufficient shelf stock: %s", ", ".join(shortages))
        raise ReconciliationConflict(f"Insufficient shelf stock: {', '.join(shortages)}")

    written = store.write(INVENTORY, payload, conflict_key=INVENTORY_CONFLICT_KEY)
    log.info("Applied %d inventory delta(s)", len(written))
    return written


def sync_product_stock(store: RecordStore, product_ids: Iterable[str]) -> Dict[str, Decimal]:
    """Recompute ``products.stock`` and ``products.sub_stock`` from shelf balances."""

    totals: Dict[str, Decimal] = {}
    for product_id in dict.fromkeys(pid for pid in product_ids if pid):
        balances = store.read(INVENTORY, {"product_id": product_id})
        total = sum((to_decimal(row.get("stock")) for row in balances), ZERO)
        products = store.read(PRODUCTS, {"id": product_id})
        if not products:
            log.warning("Stock sync skipped for unknown product '%s'", product_id)
            continue
        product = products[0]
        main_unit, sub_unit = product.get("main_unit"), product.get("sub_unit")
        sub_stock = convert_quantity(total, main_unit, sub_unit) if main_unit and sub_unit else ZERO
        store.update_field(PRODUCTS, product_id, {"stock": total, "sub_stock": sub_stock})
        totals[product_id] = total
        log.debug("Product '%s' stock synced to %s", product_id, total)
    return totals


def reconcile(
    store: RecordStore,
    product_id: Optional[str],
    previous_rows: Sequence[Mapping[str, Any]],
    next_rows: Sequence[Mapping[str, Any]],
    *,
    allow_negative: bool = False,
) -> List[InventoryDelta]:
    """Move the ledger from the effect of ``previous_rows`` to that of ``next_rows``.

    Read-only rows are excluded on both sides since their effect is owned by
    the automated process that created them.

    Returns:
        list[InventoryDelta]: The combined reversal and application deltas.

    Raises:
        ValidationError: If an editable row is malformed.
        ReconciliationConflict: If a balance would drop below zero.
    """

    editable = manual_rows(next_rows)
    validate_movement_rows(editable)

    deltas = compute_deltas(manual_rows(previous_rows), -1, product_id)
    deltas += compute_deltas(editable, 1, product_id)
    apply_deltas(store, deltas, allow_negative=allow_negative)

    affected = {item.product_id for item in deltas}
    if product_id:
        affected.add(product_id)
    sync_product_stock(store, sorted(affected))
    return deltas


# ---------------------------------------------------------------------------
# Persisted transfer mapping
# ---------------------------------------------------------------------------


def build_transfer_payload(rows: Iterable[Mapping[str, Any]], product_id: str, user_id: Optional[str]) -> List[Row]:
    """Map editable movement rows onto ``stock_transfers`` records."""

    now = datetime.now(UTC).isoformat()
    payload: List[Row] = []
    for row in manual_rows(rows):
        movement = Movement.from_row(row, product_id)
        record: Row = {
            "product_id": product_id,
            "transfer_type": movement.source or "inventory_count",
            "delivered_qty": movement.main_quantity,
            "required_qty": movement.sub_quantity,
            "invoice_id": None,
            "production_order_id": None,
            "from_shelf_id": movement.from_shelf_id,
            "to_shelf_id": movement.to_shelf_id,
            "sender_id": user_id,
            "receiver_id": user_id,
        }
        if row.get("id"):
            record["id"] = row["id"]
        else:
            record["created_at"] = now
        payload.append(record)
    return payload


def movement_rows_from_transfers(
    transfers: Iterable[Mapping[str, Any]],
    product: Optional[Mapping[str, Any]] = None,
) -> List[Row]:
    """Map ``stock_transfers`` records back onto grid rows, oldest first."""

    product = product or {}
    ordered = sorted(transfers, key=lambda item: str(item.get("created_at") or ""))
    rows: List[Row] = []
    for index, transfer in enumerate(ordered):
        source = str(transfer.get("transfer_type") or "").strip() or "inventory_count"
        from_shelf = _shelf(transfer.get("from_shelf_id"))
        to_shelf = _shelf(transfer.get("to_shelf_id"))
        if from_shelf and to_shelf:
            voucher_type = VoucherType.TRANSFER.value
        elif to_shelf:
            voucher_type = VoucherType.INCOMING.value
        else:
            voucher_type = VoucherType.OUTGOING.value
        rows.append(
            {
                "id": transfer.get("id"),
                ROW_KEY: transfer.get("id") or f"move_{index}",
                "voucher_type": voucher_type,
                "source": source,
                "main_unit": product.get("main_unit"),
                "main_quantity": abs(to_decimal(transfer.get("delivered_qty"))),
                "sub_unit": product.get("sub_unit"),
                "sub_quantity": abs(to_decimal(transfer.get("required_qty"))),
                "from_shelf_id": from_shelf,
                "to_shelf_id": to_shelf,
                "invoice_id": transfer.get("invoice_id"),
                "production_order_id": transfer.get("production_order_id"),
                "created_by": transfer.get("sender_id") or transfer.get("receiver_id"),
                "created_at": transfer.get("created_at"),
                READONLY_FLAG: (
                    source in AUTOMATED_SOURCES
                    or bool(transfer.get("invoice_id"))
                    or bool(transfer.get("production_order_id"))
                ),
            }
        )
    return rows


def load_movement_rows(store: RecordStore, product_id: str) -> List[Row]:
    """Read the persisted movements of one product as grid rows."""

    products = store.read(PRODUCTS, {"id": product_id})
    transfers = store.read(TRANSFERS, {"product_id": product_id})
    return movement_rows_from_transfers(transfers, products[0] if products else None)


def dedupe_inventory_rows(rows: Iterable[Mapping[str, Any]]) -> List[Row]:
    """Merge balance rows naming the same product and shelf by summing their stock."""

    merged: "OrderedDict[Tuple[str, str], Row]" = OrderedDict()
    for row in rows:
        key = (str(row.get("product_id")), str(row.get("shelf_id")))
        existing = merged.get(key)
        if existing is None:
            merged[key] = dict(row)
            continue
        existing["stock"] = to_decimal(existing.get("stock")) + to_decimal(row.get("stock"))
        if row.get("warehouse_id") is not None:
            existing["warehouse_id"] = row["warehouse_id"]
    return list(merged.values())


def shelf_options(store: RecordStore, product_id: str) -> List[Dict[str, Any]]:
    """Shelves holding positive stock of ``product_id``, fullest first."""

    balances = [
        row for row in store.read(INVENTORY, {"product_id": product_id})
        if to_decimal(row.get("stock")) > ZERO
    ]
    balances.sort(key=lambda row: to_decimal(row.get("stock")), reverse=True)
    shelves = {str(shelf.get("id")): shelf for shelf in store.read(SHELVES)}
    options: List[Dict[str, Any]] = []
    for row in balances:
        shelf = shelves.get(str(row.get("shelf_id")), {})
        parts = [shelf.get("system_code"), shelf.get("shelf_number") or shelf.get("name") or row.get("shelf_id")]
        label = " - ".join(str(part) for part in parts if part)
        options.append({"value": row.get("shelf_id"), "label": f"{label} (stock: {to_decimal(row.get('stock'))})"})
    return options


__all__ = [
    "Movement",
    "InventoryDelta",
    "manual_rows",
    "compute_deltas",
    "aggregate_deltas",
    "validate_movement_rows",
    "apply_deltas",
    "sync_product_stock",
    "reconcile",
    "build_transfer_payload",
    "movement_rows_from_transfers",
    "load_movement_rows",
    "dedupe_inventory_rows",
    "shelf_options",
]
