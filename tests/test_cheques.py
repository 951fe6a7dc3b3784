"""Tests for cheque reconciliation of payment rows."""

from __future__ import annotations

from decimal import Decimal

import pytest

from lineitem_erp import cheques
from lineitem_erp.constants import ChequeType
from lineitem_erp.errors import MissingReferenceError, ReconciliationConflict, ValidationError


CONTEXT = cheques.ChequeContext(module_id="invoices", record_id="INV1", party_id="C1", party_type="customer")
OTHER = cheques.ChequeContext(module_id="invoices", record_id="INV2")


@pytest.fixture
def cheque_store(seeded_store):
    """Seeded store holding a spendable received cheque and an issued one."""

    seeded_store.write(
        "cheques",
        [
            {"id": "CH1", "cheque_type": "received", "status": "new", "amount": Decimal("500"), "metadata": {}},
            {"id": "CH2", "cheque_type": "issued", "status": "new", "amount": Decimal("300")},
            {"id": "CH3", "cheque_type": "received", "status": "cleared", "amount": Decimal("100")},
        ],
    )
    return seeded_store


def _existing(cheque_id, **extra):
    row = {
        "key": f"pay-{cheque_id}",
        "payment_type": "cheque",
        "cheque_link_mode": "existing",
        "cheque_id": cheque_id,
        "amount": "500",
        "status": "received",
    }
    row.update(extra)
    return row


def _new_cheque(**extra):
    row = {
        "key": "pay-new",
        "payment_type": "cheque",
        "cheque_link_mode": "create",
        "amount": "250",
        "cheque_serial_no": "A-100",
        "cheque_due_date": "2024-06-01",
        "bank_account_id": "BANK1",
        "date": "2024-03-01",
    }
    row.update(extra)
    return row


def _metadata(store, cheque_id):
    return store.get("cheques", cheque_id).get("metadata") or {}


# ---------------------------------------------------------------------------
# Existing cheque bindings
# ---------------------------------------------------------------------------


def test_binding_existing_cheque_marks_it_spent(cheque_store):
    """Spending a received cheque should stamp it with the saving record."""

    saved = cheques.reconcile_payment_row(cheque_store, _existing("CH1"), CONTEXT)
    metadata = _metadata(cheque_store, "CH1")
    assert metadata["spent_out"] is True
    assert metadata["spent_out_source_record_id"] == "INV1"
    assert metadata["spent_out_source_module"] == "invoices"
    assert saved["cheque_is_auto"] is False
    assert cheque_store.get("cheques", "CH1")["status"] == "new"


def test_rebinding_by_same_record_is_allowed(cheque_store):
    """A record re-saving its own binding should not conflict with itself."""

    cheques.reconcile_payment_row(cheque_store, _existing("CH1"), CONTEXT)
    cheques.reconcile_payment_row(cheque_store, _existing("CH1"), CONTEXT)
    assert _metadata(cheque_store, "CH1")["spent_out_source_record_id"] == "INV1"


def test_cheque_spent_by_another_record_conflicts_without_mutation(cheque_store):
    """A second record binding a spent cheque should fail and change nothing."""

    cheques.reconcile_payment_row(cheque_store, _existing("CH1"), CONTEXT)
    before = _metadata(cheque_store, "CH1")

    with pytest.raises(ReconciliationConflict, match="already spent"):
        cheques.reconcile_payment_rows(cheque_store, [_existing("CH1")], OTHER)
    assert _metadata(cheque_store, "CH1") == before


@pytest.mark.parametrize(
    "cheque_id, error, message",
    [
        ("CH2", ReconciliationConflict, "not a received cheque"),
        ("CH3", ReconciliationConflict, "cannot be spent"),
        ("NOPE", MissingReferenceError, "does not exist"),
    ],
)
def test_ineligible_cheques_are_rejected(cheque_store, cheque_id, error, message):
    """Only existing, new, received cheques may be bound."""

    with pytest.raises(error, match=message):
        cheques.check_existing_binding(cheque_store, cheque_id, CONTEXT)


def test_release_clears_only_own_stamp(cheque_store):
    """release_cheque should ignore stamps placed by another record."""

    cheques.reconcile_payment_row(cheque_store, _existing("CH1"), CONTEXT)
    assert cheques.release_cheque(cheque_store, "CH1", OTHER) is False
    assert cheques.release_cheque(cheque_store, "CH1", CONTEXT) is True
    assert _metadata(cheque_store, "CH1")["spent_out"] is False


def test_dropped_binding_is_released_on_collection_save(cheque_store):
    """A binding removed from the collection should free its cheque."""

    previous = [cheques.reconcile_payment_row(cheque_store, _existing("CH1"), CONTEXT)]
    cheques.reconcile_payment_rows(cheque_store, [], CONTEXT, previous_rows=previous)
    assert _metadata(cheque_store, "CH1")["spent_out"] is False


def test_switching_row_away_from_cheque_releases_binding(cheque_store):
    """Changing the payment type should clear link fields and release the cheque."""

    previous = cheques.reconcile_payment_row(cheque_store, _existing("CH1"), CONTEXT)
    cash = dict(previous, payment_type="cash")
    saved = cheques.reconcile_payment_row(cheque_store, cash, CONTEXT, previous=previous)
    assert saved["cheque_id"] is None
    assert saved["cheque_link_mode"] is None
    assert _metadata(cheque_store, "CH1")["spent_out"] is False


# ---------------------------------------------------------------------------
# Auto-generated cheques
# ---------------------------------------------------------------------------


def test_create_mode_generates_owned_cheque(cheque_store):
    """A cheque row without a binding should create a cheque owned by the row."""

    saved = cheques.reconcile_payment_row(cheque_store, _new_cheque(), CONTEXT)
    cheque = cheque_store.get("cheques", saved["cheque_id"])
    assert saved["cheque_is_auto"] is True
    assert saved["cheque_link_mode"] == "create"
    assert cheque["status"] == "new"
    assert cheque["cheque_type"] == "received"
    assert cheque["amount"] == Decimal("250")
    assert cheque["serial_no"] == "A-100"
    assert cheque["party_id"] == "C1"
    assert cheque["metadata"] == {"auto_generated": True, "source_module": "invoices", "source_record_id": "INV1"}


def test_owned_cheque_is_updated_not_duplicated(cheque_store):
    """Re-saving an owned cheque row should update the same cheque."""

    first = cheques.reconcile_payment_row(cheque_store, _new_cheque(), CONTEXT)
    count = len(cheque_store.read("cheques"))
    second = cheques.reconcile_payment_row(cheque_store, dict(first, amount="275"), CONTEXT)
    assert second["cheque_id"] == first["cheque_id"]
    assert len(cheque_store.read("cheques")) == count
    assert cheque_store.get("cheques", first["cheque_id"])["amount"] == Decimal("275")


def test_auto_cheque_row_switched_to_existing_spends_without_overwriting(cheque_store):
    """A row that owned an auto cheque and now binds another should stamp, not rewrite, it."""

    cheque_store.write(
        "cheques",
        [{"id": "CHB", "cheque_type": "received", "status": "new", "amount": Decimal("900"), "party_id": "OTHER"}],
    )
    owned = cheques.reconcile_payment_row(cheque_store, _new_cheque(), CONTEXT)
    switched = dict(owned, cheque_link_mode="existing", cheque_id="CHB")

    saved = cheques.reconcile_payment_rows(cheque_store, [switched], CONTEXT, previous_rows=[owned])[0]

    bound = cheque_store.get("cheques", "CHB")
    assert bound["amount"] == Decimal("900")
    assert bound["party_id"] == "OTHER"
    assert bound["metadata"]["spent_out_source_record_id"] == "INV1"
    assert saved["cheque_id"] == "CHB"
    assert saved["cheque_link_mode"] == "existing"
    assert saved["cheque_is_auto"] is False
    assert cheque_store.get("cheques", owned["cheque_id"])["amount"] == Decimal("250")


def test_create_row_never_updates_cheque_generated_for_another_record(cheque_store):
    """Only auto cheques generated for the saving record count as owned."""

    foreign = cheques.reconcile_payment_row(cheque_store, _new_cheque(), OTHER)
    saved = cheques.reconcile_payment_row(
        cheque_store, _new_cheque(cheque_id=foreign["cheque_id"], cheque_is_auto=True, amount="40"), CONTEXT
    )
    assert saved["cheque_id"] != foreign["cheque_id"]
    assert cheque_store.get("cheques", foreign["cheque_id"])["amount"] == Decimal("250")
    assert cheque_store.get("cheques", saved["cheque_id"])["amount"] == Decimal("40")


def test_issued_context_creates_issued_cheque(cheque_store):
    """Supplier payments should generate issued cheques."""

    context = cheques.ChequeContext(
        module_id="purchase_invoices",
        record_id="PI1",
        party_id="S1",
        party_type="supplier",
        cheque_type=ChequeType.ISSUED,
    )
    saved = cheques.reconcile_payment_row(cheque_store, _new_cheque(), context)
    assert cheque_store.get("cheques", saved["cheque_id"])["cheque_type"] == "issued"


def test_non_cheque_row_keeps_auto_cheque_and_warns(cheque_store, caplog):
    """Leaving the cheque type should keep an auto cheque and log it."""

    caplog.set_level("WARNING")
    owned = cheques.reconcile_payment_row(cheque_store, _new_cheque(), CONTEXT)
    saved = cheques.reconcile_payment_row(cheque_store, dict(owned, payment_type="cash"), CONTEXT)
    assert saved["cheque_id"] is None
    assert cheque_store.get("cheques", owned["cheque_id"]) is not None
    assert any("kept" in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Collection validation
# ---------------------------------------------------------------------------


def test_duplicate_binding_within_collection_is_rejected(cheque_store):
    """Two rows of one collection cannot spend the same cheque."""

    rows = [_existing("CH1", key="a"), _existing("CH1", key="b")]
    with pytest.raises(ValidationError, match="already used by row 1"):
        cheques.validate_payment_rows(cheque_store, rows, CONTEXT)


@pytest.mark.parametrize(
    "row, message",
    [
        (_new_cheque(amount="0"), "positive amount"),
        (_existing(None), "select the cheque"),
    ],
)
def test_validate_payment_rows_rejects_incomplete_rows(cheque_store, row, message):
    """Cheque rows need an amount and, when binding, a cheque."""

    with pytest.raises(ValidationError, match=message):
        cheques.validate_payment_rows(cheque_store, [row], CONTEXT)


def test_validation_failure_leaves_register_untouched(cheque_store):
    """An invalid row should stop the save before any cheque is created."""

    count = len(cheque_store.read("cheques"))
    rows = [_new_cheque(), _existing("CH2", key="bad")]
    with pytest.raises(ReconciliationConflict):
        cheques.reconcile_payment_rows(cheque_store, rows, CONTEXT)
    assert len(cheque_store.read("cheques")) == count


def test_cash_rows_pass_through(cheque_store):
    """Non-cheque rows should only have their cheque fields cleared."""

    rows = [{"key": "c", "payment_type": "cash", "amount": "10", "cheque_serial_no": "x"}]
    saved = cheques.reconcile_payment_rows(cheque_store, rows, CONTEXT)
    assert saved[0]["amount"] == "10"
    assert saved[0]["cheque_serial_no"] is None
