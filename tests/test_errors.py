"""Store error classification works from driver codes, not message text."""

from types import SimpleNamespace

from sqlalchemy.exc import DataError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from givepay.common.errors import (
    FOREIGN_KEY,
    OTHER,
    UNIQUE,
    PoolSaturated,
    TransientStoreError,
    ValidationError,
    classify_integrity_error,
    is_transient,
    is_unique_violation,
)
from givepay.services.donations.service import translate_store_error


class FakePgError(Exception):
    def __init__(self, sqlstate, constraint_name=None):
        super().__init__("duplicate key value violates unique constraint")
        self.sqlstate = sqlstate
        self.diag = SimpleNamespace(constraint_name=constraint_name)


class FakeSqliteError(Exception):
    def __init__(self, errorname):
        super().__init__("constraint failed")
        self.sqlite_errorname = errorname


def integrity(orig):
    return IntegrityError("INSERT ...", {}, orig)


def test_postgres_unique_violation_carries_constraint_name():
    violation = classify_integrity_error(integrity(FakePgError("23505", "uq_donors_email")))
    assert violation.kind == UNIQUE
    assert violation.constraint == "uq_donors_email"


def test_postgres_foreign_key_violation():
    assert classify_integrity_error(integrity(FakePgError("23503"))).kind == FOREIGN_KEY


def test_sqlite_primary_key_counts_as_unique():
    assert classify_integrity_error(integrity(FakeSqliteError("SQLITE_CONSTRAINT_PRIMARYKEY"))).kind == UNIQUE
    assert classify_integrity_error(integrity(FakeSqliteError("SQLITE_CONSTRAINT_FOREIGNKEY"))).kind == FOREIGN_KEY


def test_message_text_is_not_used():
    """A duplicate-sounding message without a code is not a dedup signal."""

    assert classify_integrity_error(integrity(Exception("Duplicate entry for key"))).kind == OTHER


def test_transient_classification():
    assert is_transient(OperationalError("SELECT 1", {}, Exception("server closed the connection")))
    assert is_transient(PoolTimeoutError("QueuePool limit reached"))
    assert is_transient(PoolSaturated("full"))
    assert is_transient(OperationalError("COMMIT", {}, FakePgError("40P01")))
    assert not is_transient(integrity(FakePgError("23505")))
    assert not is_transient(ValueError("bug"))


def test_unique_violation_shortcut():
    assert is_unique_violation(integrity(FakePgError("23505")))
    assert is_unique_violation(integrity(FakeSqliteError("SQLITE_CONSTRAINT_UNIQUE")))
    assert not is_unique_violation(integrity(FakePgError("23503")))


def test_oversized_value_is_a_client_error():
    """Values a column cannot hold fail every redelivery, so they are not retried."""

    translated = translate_store_error(DataError("INSERT ...", {}, FakePgError("22001")))
    assert isinstance(translated, ValidationError)
    translated = translate_store_error(OperationalError("COMMIT", {}, FakePgError("40001")))
    assert isinstance(translated, TransientStoreError)
