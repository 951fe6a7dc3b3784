"""Tests for stock-movement ledger reconciliation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from lineitem_erp import inventory_ledger
from lineitem_erp.errors import ReconciliationConflict, ValidationError

from conftest import balance_of


def _movement(voucher_type, quantity, *, source="opening_balance", from_shelf=None, to_shelf=None, **extra):
    row = {
        "key": extra.pop("key", f"{voucher_type}-{quantity}"),
        "voucher_type": voucher_type,
        "source": source,
        "main_quantity": quantity,
        "from_shelf_id": from_shelf,
        "to_shelf_id": to_shelf,
    }
    row.update(extra)
    return row


# ---------------------------------------------------------------------------
# Delta computation
# ---------------------------------------------------------------------------


def test_compute_deltas_by_voucher_type():
    """Incoming adds, outgoing subtracts and transfers do both."""

    rows = [
        _movement("incoming", "5", to_shelf="A"),
        _movement("outgoing", "2", source="waste", from_shelf="A"),
        _movement("transfer", "1", from_shelf="A", to_shelf="B"),
    ]
    deltas = inventory_ledger.compute_deltas(rows, 1, "P1")
    assert [(d.shelf_id, d.delta) for d in deltas] == [
        ("A", Decimal("5")),
        ("A", Decimal("-2")),
        ("A", Decimal("-1")),
        ("B", Decimal("1")),
    ]


def test_transfer_deltas_sum_to_zero():
    """A transfer should move stock without changing the product total."""

    deltas = inventory_ledger.compute_deltas([_movement("transfer", "3", from_shelf="A", to_shelf="B")], 1, "P1")
    assert sum(d.delta for d in deltas) == Decimal("0")


def test_reverse_sign_negates_every_delta():
    """sign=-1 should produce the exact reversal of sign=+1."""

    rows = [_movement("incoming", "4", to_shelf="A"), _movement("transfer", "1", from_shelf="A", to_shelf="B")]
    forward = inventory_ledger.compute_deltas(rows, 1, "P1")
    backward = inventory_ledger.compute_deltas(rows, -1, "P1")
    assert [d.delta for d in backward] == [-d.delta for d in forward]


def test_compute_deltas_skips_incomplete_rows():
    """Rows without quantity, product or the required shelves should not move stock."""

    rows = [
        _movement("incoming", "0", to_shelf="A"),
        _movement("incoming", "5"),
        _movement("transfer", "5", from_shelf="A"),
    ]
    assert inventory_ledger.compute_deltas(rows, 1, "P1") == []
    assert inventory_ledger.compute_deltas([_movement("incoming", "5", to_shelf="A")], 1) == []


def test_aggregate_deltas_drops_cancelled_pairs():
    """Deltas that cancel on a shelf should not produce a write."""

    deltas = inventory_ledger.compute_deltas([_movement("incoming", "5", to_shelf="A")], -1, "P1")
    deltas += inventory_ledger.compute_deltas([_movement("incoming", "5", to_shelf="A")], 1, "P1")
    assert inventory_ledger.aggregate_deltas(deltas) == {}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "row, message",
    [
        (_movement("", "1", to_shelf="A"), "voucher type is required"),
        (_movement("incoming", "1", source="", to_shelf="A"), "source is required"),
        (_movement("incoming", "1", source="sales_invoice", to_shelf="A"), "cannot be entered manually"),
        (_movement("incoming", "0", to_shelf="A"), "greater than zero"),
        (_movement("incoming", "1"), "destination shelf"),
        (_movement("outgoing", "1"), "source shelf"),
        (_movement("transfer", "1", from_shelf="A"), "both a source and a destination"),
        (_movement("transfer", "1", from_shelf="A", to_shelf="A"), "must differ"),
        (_movement("sideways", "1", to_shelf="A"), "unknown voucher type"),
    ],
)
def test_validate_movement_rows_rejects_malformed_rows(row, message):
    """validate_movement_rows should name the first problem it finds."""

    with pytest.raises(ValidationError, match=message):
        inventory_ledger.validate_movement_rows([row])


def test_validate_movement_rows_ignores_readonly_rows():
    """Automated rows are owned elsewhere and should not be validated."""

    row = _movement("outgoing", "1", source="sales_invoice", _readonly=True)
    inventory_ledger.validate_movement_rows([row])


def test_validation_error_reports_row_position():
    """The error should identify the offending row by its 1-based index."""

    rows = [_movement("incoming", "1", to_shelf="A"), _movement("incoming", "0", to_shelf="A")]
    with pytest.raises(ValidationError, match="Row 2"):
        inventory_ledger.validate_movement_rows(rows)


# ---------------------------------------------------------------------------
# Ledger application
# ---------------------------------------------------------------------------


def test_reconcile_applies_new_rows(seeded_store):
    """Saving a first incoming movement should credit the destination shelf."""

    inventory_ledger.reconcile(seeded_store, "P1", [], [_movement("incoming", "10", to_shelf="A")])
    assert balance_of(seeded_store, "P1", "A") == Decimal("10")
    product = seeded_store.get("products", "P1")
    assert product["stock"] == Decimal("10")
    assert product["sub_stock"] == Decimal("1000.000")


def test_reconcile_edit_applies_only_the_difference(seeded_store, set_balance):
    """Editing 10 to 6 should leave the shelf 4 lower, not 6 higher."""

    set_balance("P1", "A", "10")
    previous = [_movement("incoming", "10", to_shelf="A", id="T1")]
    edited = [_movement("incoming", "6", to_shelf="A", id="T1")]
    inventory_ledger.reconcile(seeded_store, "P1", previous, edited)
    assert balance_of(seeded_store, "P1", "A") == Decimal("6")


def test_reconcile_conserves_stock_when_retargeting_shelf(seeded_store, set_balance):
    """Moving an incoming row from shelf A to B should shift its quantity."""

    set_balance("P1", "A", "5")
    previous = [_movement("incoming", "5", to_shelf="A")]
    edited = [_movement("incoming", "5", to_shelf="B")]
    inventory_ledger.reconcile(seeded_store, "P1", previous, edited)
    assert balance_of(seeded_store, "P1", "A") == Decimal("0")
    assert balance_of(seeded_store, "P1", "B") == Decimal("5")
    assert seeded_store.get("products", "P1")["stock"] == Decimal("5")


def test_reconcile_ignores_readonly_rows_on_both_sides(seeded_store, set_balance):
    """Automated rows should neither be reversed nor re-applied."""

    set_balance("P1", "A", "3")
    automated = _movement("outgoing", "7", source="sales_invoice", from_shelf="A", _readonly=True)
    inventory_ledger.reconcile(seeded_store, "P1", [automated], [automated])
    assert balance_of(seeded_store, "P1", "A") == Decimal("3")


def test_negative_balance_raises_without_writing(seeded_store, set_balance):
    """A mutation that would overdraw any shelf should leave every balance untouched."""

    set_balance("P1", "A", "2")
    rows = [
        _movement("incoming", "4", to_shelf="B", key="in"),
        _movement("outgoing", "5", source="waste", from_shelf="A", key="out"),
    ]
    with pytest.raises(ReconciliationConflict, match="Insufficient shelf stock"):
        inventory_ledger.reconcile(seeded_store, "P1", [], rows)
    assert balance_of(seeded_store, "P1", "A") == Decimal("2")
    assert balance_of(seeded_store, "P1", "B") == Decimal("0")


def test_negative_balance_allowed_when_configured(seeded_store):
    """allow_negative should let a shelf drop below zero."""

    rows = [_movement("outgoing", "5", source="waste", from_shelf="A")]
    inventory_ledger.reconcile(seeded_store, "P1", [], rows, allow_negative=True)
    assert balance_of(seeded_store, "P1", "A") == Decimal("-5")


def test_apply_deltas_preserves_warehouse(seeded_store, set_balance):
    """Updating a balance should keep its warehouse reference."""

    set_balance("P1", "A", "1")
    deltas = [inventory_ledger.InventoryDelta("P1", "A", Decimal("2"))]
    written = inventory_ledger.apply_deltas(seeded_store, deltas)
    assert written[0]["warehouse_id"] == "W1"
    assert written[0]["stock"] == Decimal("3")
    assert len(seeded_store.read("product_inventory", {"product_id": "P1"})) == 1


def test_sync_product_stock_skips_unknown_products(seeded_store, set_balance, caplog):
    """Unknown products should be logged and skipped."""

    caplog.set_level("WARNING")
    set_balance("P1", "A", "2")
    set_balance("P1", "B", "3")
    totals = inventory_ledger.sync_product_stock(seeded_store, ["P1", "GHOST"])
    assert totals == {"P1": Decimal("5")}
    assert any("GHOST" in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Persisted transfer mapping
# ---------------------------------------------------------------------------


def test_build_transfer_payload_maps_manual_rows():
    """Editable rows should map onto stock_transfers records."""

    rows = [
        _movement("transfer", "2", source="inventory_count", from_shelf="A", to_shelf="B", sub_quantity="200"),
        _movement("incoming", "1", to_shelf="A", id="T9"),
        _movement("outgoing", "1", source="sales_invoice", from_shelf="A", _readonly=True),
    ]
    payload = inventory_ledger.build_transfer_payload(rows, "P1", "U1")
    assert len(payload) == 2
    first, second = payload
    assert first["transfer_type"] == "inventory_count"
    assert first["delivered_qty"] == Decimal("2")
    assert first["required_qty"] == Decimal("200")
    assert first["sender_id"] == "U1"
    assert "created_at" in first and "id" not in first
    assert second["id"] == "T9"
    assert "created_at" not in second


def test_movement_rows_from_transfers_derives_voucher_type_and_readonly():
    """Persisted transfers should map back to grid rows, oldest first."""

    transfers = [
        {"id": "T2", "transfer_type": "sales_invoice", "delivered_qty": 1, "from_shelf_id": "A", "invoice_id": "INV1", "created_at": "2024-02-02"},
        {"id": "T1", "transfer_type": "opening_balance", "delivered_qty": Decimal("5"), "to_shelf_id": "A", "created_at": "2024-02-01"},
        {"id": "T3", "transfer_type": "inventory_count", "delivered_qty": 2, "from_shelf_id": "A", "to_shelf_id": "B", "created_at": "2024-02-03"},
    ]
    rows = inventory_ledger.movement_rows_from_transfers(transfers, {"main_unit": "m", "sub_unit": "cm"})
    assert [row["key"] for row in rows] == ["T1", "T2", "T3"]
    assert [row["voucher_type"] for row in rows] == ["incoming", "outgoing", "transfer"]
    assert [row["_readonly"] for row in rows] == [False, True, False]
    assert rows[0]["main_unit"] == "m"


def test_dedupe_inventory_rows_sums_duplicates():
    """Duplicate product and shelf pairs should merge into one balance."""

    rows = [
        {"product_id": "P1", "shelf_id": "A", "stock": "2"},
        {"product_id": "P1", "shelf_id": "A", "stock": "3", "warehouse_id": "W2"},
        {"product_id": "P1", "shelf_id": "B", "stock": "1"},
    ]
    merged = inventory_ledger.dedupe_inventory_rows(rows)
    assert len(merged) == 2
    assert merged[0]["stock"] == Decimal("5")
    assert merged[0]["warehouse_id"] == "W2"


def test_shelf_options_lists_positive_stock_fullest_first(seeded_store, set_balance):
    """shelf_options should label each stocked shelf with its balance."""

    set_balance("P1", "A", "2")
    set_balance("P1", "B", "7")
    options = inventory_ledger.shelf_options(seeded_store, "P1")
    assert [option["value"] for option in options] == ["B", "A"]
    assert options[0]["label"] == "SH-B - Shelf B (stock: 7)"
