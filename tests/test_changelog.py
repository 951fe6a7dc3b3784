"""Tests for the change log of row-collection saves."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

from lineitem_erp import changelog
from lineitem_erp.blocks import PAYMENTS_BLOCK, PRODUCTION_BOM_BLOCK, STOCK_MOVEMENTS_BLOCK
from lineitem_erp.errors import StoreError


def _entry(**overrides):
    values = {
        "module_id": "products",
        "record_id": "P1",
        "block_id": STOCK_MOVEMENTS_BLOCK.block_id,
        "before": [],
        "after": [{"voucher_type": "incoming", "to_shelf_id": "A", "main_quantity": Decimal("10")}],
        "user_id": "U1",
        "timestamp": datetime(2024, 3, 1, 12, 0, tzinfo=UTC),
    }
    values.update(overrides)
    return changelog.ChangeLogEntry(**values)


def test_humanize_rows_uses_option_and_relation_labels(seeded_store):
    """Option values and relation ids should be rendered with their labels."""

    rows = [{"voucher_type": "incoming", "source": "waste", "to_shelf_id": "A", "main_quantity": "3"}]
    humanized = changelog.humanize_rows(seeded_store, STOCK_MOVEMENTS_BLOCK, rows)
    assert humanized[0]["voucher_type"] == "ورود"
    assert humanized[0]["source"] == "ضایعات"
    assert humanized[0]["to_shelf_id"] == "Shelf A (SH-A)"
    assert humanized[0]["main_quantity"] == "3"
    assert rows[0]["voucher_type"] == "incoming"


def test_humanize_rows_reads_dynamic_option_categories(seeded_store):
    """Columns backed by a dynamic category should use its active labels."""

    seeded_store.write(
        "dynamic_options",
        [
            {"category": "colors", "value": "blk", "label": "Black", "is_active": True},
            {"category": "colors", "value": "old", "label": "Retired", "is_active": False},
        ],
    )
    rows = [{"leather_colors": ["blk", "old"]}]
    humanized = changelog.humanize_rows(seeded_store, PRODUCTION_BOM_BLOCK, rows)
    assert humanized[0]["leather_colors"] == ["Black", "old"]


def test_append_change_log_writes_before_and_after(seeded_store):
    """append_change_log should persist one record with both snapshots."""

    stored = changelog.append_change_log(seeded_store, _entry(), STOCK_MOVEMENTS_BLOCK)
    assert stored is not None
    assert stored["field_name"] == "product_stock_movements"
    assert stored["user_id"] == "U1"
    assert stored["old_value"] == []
    assert stored["new_value"] == [{"voucher_type": "ورود", "to_shelf_id": "Shelf A (SH-A)", "main_quantity": "10"}]


def test_append_change_log_swallows_store_failures(caplog):
    """A failing change-log write should be logged and never raised."""

    caplog.set_level("WARNING")
    store = Mock()
    store.write.side_effect = StoreError("disk full")
    assert changelog.append_change_log(store, _entry()) is None
    assert any("disk full" in record.getMessage() for record in caplog.records)


def test_read_change_log_orders_oldest_first(seeded_store):
    """read_change_log should return one record's entries in time order."""

    changelog.append_change_log(seeded_store, _entry(timestamp=datetime(2024, 3, 2, tzinfo=UTC)))
    changelog.append_change_log(seeded_store, _entry(timestamp=datetime(2024, 3, 1, tzinfo=UTC)))
    changelog.append_change_log(seeded_store, _entry(record_id="P2"))
    history = changelog.read_change_log(seeded_store, "products", "P1")
    assert [entry["created_at"][:10] for entry in history] == ["2024-03-01", "2024-03-02"]


def test_payment_relations_without_values_are_skipped(seeded_store):
    """Relation columns left empty should not trigger lookups."""

    maps = changelog.column_label_maps(seeded_store, PAYMENTS_BLOCK, [{"payment_type": "cash"}])
    assert "cheque_id" not in maps
    assert maps["payment_type"]["cash"] == "نقد"
