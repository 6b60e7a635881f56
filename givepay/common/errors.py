"""Typed failures raised by the reconciliation path.

Store errors are classified from driver error codes, never from message
text, so the dedup and lost-race recovery paths do not depend on wording.
"""

from dataclasses import dataclass

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

UNIQUE = "unique"
FOREIGN_KEY = "foreign_key"
NOT_NULL = "not_null"
CHECK = "check"
OTHER = "other"

_PG_CONSTRAINT_CODES = {
    "23505": UNIQUE,
    "23503": FOREIGN_KEY,
    "23502": NOT_NULL,
    "23514": CHECK,
}
_SQLITE_CONSTRAINT_NAMES = {
    "SQLITE_CONSTRAINT_UNIQUE": UNIQUE,
    "SQLITE_CONSTRAINT_PRIMARYKEY": UNIQUE,
    "SQLITE_CONSTRAINT_FOREIGNKEY": FOREIGN_KEY,
    "SQLITE_CONSTRAINT_NOTNULL": NOT_NULL,
    "SQLITE_CONSTRAINT_CHECK": CHECK,
}
# serialization_failure, deadlock_detected, query_canceled, lock_not_available
_PG_TRANSIENT_CODES = {"40001", "40P01", "57014", "55P03"}


class ReconciliationError(Exception):
    """Base class for failures surfaced by the donations service."""


class ValidationError(ReconciliationError):
    """Notification is malformed or misses a required field."""


class TransientStoreError(ReconciliationError):
    """Store was unreachable, saturated, timed out, or deadlocked. Safe to retry."""


class PoolSaturated(TransientStoreError):
    """Connection wait queue is full; the unit of work was not started."""


class IntegrityViolation(ReconciliationError):
    """Constraint violation not explained by an expected race."""

    def __init__(self, message: str, kind: str = OTHER, constraint: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.constraint = constraint


@dataclass(frozen=True)
class ConstraintViolation:
    kind: str
    constraint: str | None = None


def _sqlstate(orig) -> str | None:
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def classify_integrity_error(exc: IntegrityError) -> ConstraintViolation:
    """Return which kind of constraint (and which one, when known) was hit."""

    orig = exc.orig
    code = _sqlstate(orig)
    if code is not None:
        diag = getattr(orig, "diag", None)
        return ConstraintViolation(
            kind=_PG_CONSTRAINT_CODES.get(code, OTHER),
            constraint=getattr(diag, "constraint_name", None),
        )
    errorname = getattr(orig, "sqlite_errorname", None)
    return ConstraintViolation(kind=_SQLITE_CONSTRAINT_NAMES.get(errorname, OTHER))


def is_unique_violation(exc: IntegrityError) -> bool:
    return classify_integrity_error(exc).kind == UNIQUE


def is_transient(exc: BaseException) -> bool:
    """True for connectivity, pool, timeout, and lock-conflict failures."""

    if isinstance(exc, (PoolTimeoutError, TransientStoreError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        if _sqlstate(exc.orig) in _PG_TRANSIENT_CODES:
            return True
        return isinstance(exc, OperationalError)
    return False
