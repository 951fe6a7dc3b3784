"""Cheque register reconciliation for payment rows.

A payment row whose type is ``cheque`` either *binds* an existing received
cheque (which is then stamped as spent by the saving record) or *owns* an
auto-generated cheque that mirrors the row's party, bank, amount, and dates.
Owned cheques are updated in place on later saves instead of being created
again.

Saving a payment collection checks every explicit binding before any cheque
is touched, so an ineligible binding leaves the register unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from . import log
from .constants import (
    CHEQUE_LINK_FIELDS,
    ChequeLinkMode,
    ChequeStatus,
    ChequeType,
    Collection,
    PaymentType,
)
from .data_manager import RecordStore
from .errors import MissingReferenceError, ReconciliationConflict, ValidationError
from .numeric import to_decimal
from .row_rules import ROW_KEY, Row


CHEQUES = Collection.CHEQUES.value


@dataclass(frozen=True)
class ChequeContext:
    """Identity of the record whose payment rows are being saved."""

    module_id: str
    record_id: str
    party_id: Optional[str] = None
    party_type: Optional[str] = None
    cheque_type: ChequeType = ChequeType.RECEIVED


def is_cheque_row(row: Mapping[str, Any]) -> bool:
    return row.get("payment_type") == PaymentType.CHEQUE.value


def binds_existing(row: Mapping[str, Any]) -> bool:
    """True when the row spends an existing cheque.

    The link mode decides; a stale ``cheque_is_auto`` flag on the row does not
    turn a binding into ownership.
    """

    return (
        is_cheque_row(row)
        and row.get("cheque_link_mode") == ChequeLinkMode.EXISTING.value
        and bool(row.get("cheque_id"))
    )


def _metadata(cheque: Mapping[str, Any]) -> Dict[str, Any]:
    metadata = cheque.get("metadata")
    return dict(metadata) if isinstance(metadata, Mapping) else {}


def _load_cheque(store: RecordStore, cheque_id: Any) -> Optional[Row]:
    matches = store.read(CHEQUES, {"id": cheque_id})
    return matches[0] if matches else None


def owned_cheque(store: RecordStore, cheque_id: Any, context: ChequeContext) -> Optional[Row]:
    """Return ``cheque_id`` only if it was auto-generated for ``context``'s record."""

    if not cheque_id:
        return None
    cheque = _load_cheque(store, cheque_id)
    if cheque is None:
        return None
    metadata = _metadata(cheque)
    if metadata.get("auto_generated") and str(metadata.get("source_record_id")) == str(context.record_id):
        return cheque
    return None


def check_existing_binding(store: RecordStore, cheque_id: Any, context: ChequeContext) -> Row:
    """Return the cheque ``cheque_id`` if ``context`` may spend it.

    Raises:
        MissingReferenceError: If the cheque does not exist.
        ReconciliationConflict: If the cheque is not a new received cheque or
            is already spent by another record.
    """

    cheque = _load_cheque(store, cheque_id)
    if cheque is None:
        log.error("Cheque '%s' not found", cheque_id)
        raise MissingReferenceError(f"Cheque '{cheque_id}' does not exist")

    if cheque.get("cheque_type") != ChequeType.RECEIVED.value:
        log.error("Cheque '%s' is not a received cheque", cheque_id)
        raise ReconciliationConflict(f"Cheque '{cheque_id}' is not a received cheque")

    if cheque.get("status") != ChequeStatus.NEW.value:
        log.error("Cheque '%s' has status '%s'", cheque_id, cheque.get("status"))
        raise ReconciliationConflict(
            f"Cheque '{cheque_id}' has status '{cheque.get('status')}' and cannot be spent"
        )

    metadata = _metadata(cheque)
    spender = metadata.get("spent_out_source_record_id")
    if metadata.get("spent_out") and spender and str(spender) != str(context.record_id):
        log.error("Cheque '%s' is already spent by record '%s'", cheque_id, spender)
        raise ReconciliationConflict(f"Cheque '{cheque_id}' is already spent by record '{spender}'")

    return cheque


def _mark_spent(store: RecordStore, cheque: Mapping[str, Any], context: ChequeContext) -> Row:
    metadata = _metadata(cheque)
    metadata.update(
        {
            "spent_out": True,
            "spent_out_source_record_id": context.record_id,
            "spent_out_source_module": context.module_id,
        }
    )
    log.info("Cheque '%s' spent by %s '%s'", cheque.get("id"), context.module_id, context.record_id)
    return store.update_field(CHEQUES, cheque["id"], {"metadata": metadata})


def release_cheque(store: RecordStore, cheque_id: Any, context: ChequeContext) -> bool:
    """Clear the spent stamp on ``cheque_id`` if ``context`` placed it.

    Returns:
        bool: ``True`` when the stamp was cleared.
    """

    cheque = _load_cheque(store, cheque_id)
    if cheque is None:
        log.warning("Cannot release unknown cheque '%s'", cheque_id)
        return False
    metadata = _metadata(cheque)
    if not metadata.get("spent_out") or str(metadata.get("spent_out_source_record_id")) != str(context.record_id):
        return False
    metadata.update({"spent_out": False, "spent_out_source_record_id": None, "spent_out_source_module": None})
    store.update_field(CHEQUES, cheque["id"], {"metadata": metadata})
    log.info("Cheque '%s' released by %s '%s'", cheque_id, context.module_id, context.record_id)
    return True


def _cheque_fields(row: Mapping[str, Any], context: ChequeContext) -> Row:
    return {
        "cheque_type": context.cheque_type.value,
        "amount": to_decimal(row.get("amount")),
        "party_id": context.party_id,
        "party_type": context.party_type,
        "bank_account_id": row.get("bank_account_id"),
        "serial_no": row.get("cheque_serial_no"),
        "issue_date": row.get("date"),
        "due_date": row.get("cheque_due_date"),
    }


def _clear_link(row: Mapping[str, Any]) -> Row:
    next_row: Row = dict(row)
    for key in CHEQUE_LINK_FIELDS:
        next_row[key] = None
    return next_row


def reconcile_payment_row(
    store: RecordStore,
    row: Mapping[str, Any],
    context: ChequeContext,
    previous: Optional[Mapping[str, Any]] = None,
) -> Row:
    """Bring the cheque linked to one payment row in line with the row.

    Args:
        store (RecordStore): Backend holding the cheque register.
        row (Mapping[str, Any]): Payment row being saved.
        context (ChequeContext): Identity of the saving record.
        previous (Mapping[str, Any] | None): Persisted version of the row; a
            binding it held that the new row drops is released.

    Returns:
        Row: The payment row with its cheque link fields set.

    Raises:
        MissingReferenceError: If a bound cheque does not exist.
        ReconciliationConflict: If a bound cheque is not eligible.
    """

    previous_binding = previous.get("cheque_id") if previous is not None and binds_existing(previous) else None

    if not is_cheque_row(row):
        if previous_binding:
            release_cheque(store, previous_binding, context)
        if row.get("cheque_id") and row.get("cheque_is_auto"):
            log.warning(
                "Payment row '%s' is no longer a cheque; auto-generated cheque '%s' kept",
                row.get(ROW_KEY),
                row.get("cheque_id"),
            )
        return _clear_link(row)

    next_row: Row = dict(row)

    if binds_existing(row):
        cheque = check_existing_binding(store, row["cheque_id"], context)
        if previous_binding and str(previous_binding) != str(row["cheque_id"]):
            release_cheque(store, previous_binding, context)
        if row.get("cheque_is_auto"):
            log.warning(
                "Payment row '%s' now spends cheque '%s'; its auto-generated cheque is kept",
                row.get(ROW_KEY),
                row["cheque_id"],
            )
        _mark_spent(store, cheque, context)
        next_row["cheque_link_mode"] = ChequeLinkMode.EXISTING.value
        next_row["cheque_is_auto"] = False
        return next_row

    if previous_binding:
        release_cheque(store, previous_binding, context)

    fields = _cheque_fields(row, context)
    owned = owned_cheque(store, row.get("cheque_id"), context)
    if owned is not None:
        stored = store.update_field(CHEQUES, owned["id"], fields)
        log.info("Updated auto-generated cheque '%s'", stored.get("id"))
    else:
        fields.update(
            {
                "status": ChequeStatus.NEW.value,
                "metadata": {
                    "auto_generated": True,
                    "source_module": context.module_id,
                    "source_record_id": context.record_id,
                },
            }
        )
        stored = store.write(CHEQUES, [fields])[0]
        log.info("Created cheque '%s' for payment row '%s'", stored.get("id"), row.get(ROW_KEY))

    next_row["cheque_id"] = stored.get("id")
    next_row["cheque_is_auto"] = True
    next_row["cheque_link_mode"] = ChequeLinkMode.CREATE.value
    return next_row


def validate_payment_rows(store: RecordStore, rows: Sequence[Mapping[str, Any]], context: ChequeContext) -> None:
    """Check every cheque row of a payment collection without mutating anything.

    Raises:
        ValidationError: If a row binds no cheque in ``existing`` mode, has no
            positive amount, or binds a cheque another row already binds.
        MissingReferenceError: If a bound cheque does not exist.
        ReconciliationConflict: If a bound cheque is not eligible.
    """

    seen: Dict[str, int] = {}
    for index, row in enumerate(rows, start=1):
        if not is_cheque_row(row):
            continue
        if to_decimal(row.get("amount")) <= 0:
            log.error("Cheque payment row %d has no amount", index)
            raise ValidationError(f"Row {index}: cheque payments require a positive amount")
        if row.get("cheque_link_mode") == ChequeLinkMode.EXISTING.value and not row.get("cheque_id"):
            log.error("Cheque payment row %d binds no cheque", index)
            raise ValidationError(f"Row {index}: select the cheque to spend")
        if not binds_existing(row):
            continue
        cheque_id = str(row["cheque_id"])
        if cheque_id in seen:
            log.error("Cheque '%s' bound by rows %d and %d", cheque_id, seen[cheque_id], index)
            raise ValidationError(f"Row {index}: cheque '{cheque_id}' is already used by row {seen[cheque_id]}")
        seen[cheque_id] = index
        check_existing_binding(store, cheque_id, context)


def reconcile_payment_rows(
    store: RecordStore,
    rows: Sequence[Mapping[str, Any]],
    context: ChequeContext,
    previous_rows: Sequence[Mapping[str, Any]] = (),
) -> List[Row]:
    """Reconcile a whole payment collection against the cheque register.

    Existing cheques bound by ``previous_rows`` but by none of ``rows`` are
    released once every row has been reconciled.
    """

    validate_payment_rows(store, rows, context)

    reconciled = [reconcile_payment_row(store, row, context) for row in rows]

    kept = {str(row["cheque_id"]) for row in reconciled if binds_existing(row)}
    for row in previous_rows:
        if binds_existing(row) and str(row["cheque_id"]) not in kept:
            release_cheque(store, row["cheque_id"], context)
    return reconciled


__all__ = [
    "ChequeContext",
    "is_cheque_row",
    "binds_existing",
    "owned_cheque",
    "check_existing_binding",
    "release_cheque",
    "reconcile_payment_row",
    "validate_payment_rows",
    "reconcile_payment_rows",
]
