"""Exception hierarchy raised by the engine.

``ValidationError`` is raised before any I/O and is safe to retry after the
offending rows are corrected. ``ReconciliationConflict`` surfaces mid-save
when a ledger or cheque precondition no longer holds. ``StoreError`` wraps
failures reported by the record store.
"""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when rows fail structural validation before a save."""


class ReconciliationConflict(BusinessRuleViolation):
    """Raised when a ledger or cheque precondition fails during a save."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, shelf, cheque, or record is unknown."""


class StoreError(Exception):
    """Raised when the record store cannot complete a read or write."""


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "ReconciliationConflict",
    "MissingReferenceError",
    "StoreError",
]
