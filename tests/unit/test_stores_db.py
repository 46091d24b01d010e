"""Unit tests for PostgresIdentityStore against a scripted psycopg connection."""
from types import SimpleNamespace

import psycopg
import pytest
from psycopg.errors import InvalidDatetimeFormat, NotNullViolation, StringDataRightTruncation, UniqueViolation

from academy_iam.core.errors import (
    Conflict,
    NotFound,
    PartialDelete,
    RecordStoreUnavailable,
    SyncState,
    ValidationError,
)
from academy_iam.core.models import Identity, Role
from academy_iam.core.stores_db import PostgresIdentityStore
from academy_iam.core.synchronizer import IdentitySynchronizer

from tests.conftest import FakeCredentialProvider


def _row(user_id=1, firebase_uid="uid-1", email="a@x.com", user_type="Student", **extra):
    row = {
        "user_id": user_id,
        "firebase_uid": firebase_uid,
        "email": email,
        "full_name": "A",
        "user_type": user_type,
        "branch_id": None,
    }
    row.update(extra)
    return row


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, stmt, params=None):
        self.conn.executed.append((stmt, params))
        if self.conn.error is not None and (self.conn.fail_on is None or self.conn.fail_on in repr(stmt)):
            raise self.conn.error

    def fetchone(self):
        return self.conn.results.pop(0) if self.conn.results else None

    def fetchall(self):
        return self.conn.results.pop(0) if self.conn.results else []


class FakeConnection:
    """Records statements; ``results`` is consumed by fetchone/fetchall in order.

    ``error`` is raised by every statement, or only by those whose repr
    contains ``fail_on`` when it is set.
    """

    def __init__(self):
        self.executed = []
        self.results = []
        self.error = None
        self.fail_on = None
        self.connect_kwargs = []

    def __call__(self, dsn, **kwargs):
        self.connect_kwargs.append((dsn, kwargs))
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def cursor(self):
        return FakeCursor(self)


class _UidViolation(UniqueViolation):
    @property
    def diag(self):
        return SimpleNamespace(constraint_name="userstbl_firebase_uid_key")


@pytest.fixture()
def conn():
    return FakeConnection()


@pytest.fixture()
def db_store(conn):
    return PostgresIdentityStore("postgresql://test/academy", connect=conn, statement_timeout_ms=2500)


def test_rejects_invalid_table_name():
    with pytest.raises(ValueError):
        PostgresIdentityStore("postgresql://test/academy", table="users; drop table x")


def test_requires_dsn():
    with pytest.raises(RuntimeError):
        PostgresIdentityStore("")


def test_connects_in_autocommit_with_statement_timeout(db_store, conn):
    db_store.ping()

    dsn, kwargs = conn.connect_kwargs[0]
    assert dsn == "postgresql://test/academy"
    assert kwargs["autocommit"] is True
    assert kwargs["options"] == "-c statement_timeout=2500"
    assert conn.executed[0][0] == "select 1"


def test_find_maps_columns_to_identity(db_store, conn):
    conn.results.append(_row(user_type="Teacher", branch_id=3))

    identity = db_store.find_by_external_id_or_email("uid-1", "a@x.com")

    assert identity.external_id == "uid-1"
    assert identity.role is Role.TEACHER
    assert identity.branch_id == 3
    stmt, params = conn.executed[0]
    assert params == ("uid-1", "a@x.com", "uid-1")
    assert "order by case when firebase_uid" in repr(stmt)


def test_find_returns_none_without_row(db_store):
    assert db_store.find_by_external_id("missing") is None


def test_insert_sends_role_value_and_returns_row(db_store, conn):
    conn.results.append(_row(user_id=7, firebase_uid="uid-7", email="n@x.com", user_type="Admin"))

    identity = db_store.insert(Identity(email="n@x.com", full_name="N", role=Role.ADMIN, external_id="uid-7"))

    assert identity.user_id == 7
    _, params = conn.executed[0]
    assert params[0] == "uid-7"
    assert "Admin" in params
    assert not any(isinstance(p, Role) for p in params)


def test_unique_email_violation_is_conflict(db_store, conn):
    conn.error = UniqueViolation("duplicate key value violates unique constraint \"userstbl_email_key\"")

    with pytest.raises(Conflict) as exc_info:
        db_store.insert(Identity(email="n@x.com", full_name="N", role=Role.STUDENT))

    assert exc_info.value.message == "Email already exists"


def test_unique_uid_violation_names_firebase_uid(db_store, conn):
    conn.error = _UidViolation("duplicate key")

    with pytest.raises(Conflict) as exc_info:
        db_store.insert(Identity(email="n@x.com", full_name="N", role=Role.STUDENT, external_id="uid-1"))

    assert "Firebase UID" in exc_info.value.message


def test_other_integrity_error_is_validation_error(db_store, conn):
    conn.error = NotNullViolation("null value in column \"full_name\"")

    with pytest.raises(ValidationError):
        db_store.insert(Identity(email="n@x.com", full_name="", role=Role.STUDENT))


def test_connection_failure_is_store_unavailable(db_store, conn):
    conn.error = psycopg.OperationalError("server closed the connection unexpectedly")

    with pytest.raises(RecordStoreUnavailable):
        db_store.get(1)


def test_update_builds_assignments_for_given_fields(db_store, conn):
    conn.results.append(_row(full_name="New", phone_number="555"))

    identity = db_store.update("uid-1", {"full_name": "New", "phone_number": "555"})

    assert identity.full_name == "New"
    stmt, params = conn.executed[0]
    assert params == ["New", "555", "uid-1"]
    assert "Identifier('full_name')" in repr(stmt)


def test_update_rejects_unknown_fields(db_store, conn):
    with pytest.raises(ValidationError):
        db_store.update("uid-1", {"user_id": 5})
    assert conn.executed == []


def test_update_missing_row_is_not_found(db_store):
    with pytest.raises(NotFound):
        db_store.update_row(42, {"full_name": "X"})


def test_link_only_fills_null_uid(db_store, conn):
    conn.results.append(_row(firebase_uid="uid-9"))

    identity = db_store.link_external_id(1, "uid-9")

    assert identity.external_id == "uid-9"
    assert "firebase_uid is null" in repr(conn.executed[0][0])


def test_link_already_linked_row_conflicts(db_store, conn):
    # update matches nothing; follow-up get finds the row
    conn.results.extend([None, _row(firebase_uid="uid-other")])

    with pytest.raises(Conflict):
        db_store.link_external_id(1, "uid-9")


def test_delete_row_missing_is_not_found(db_store):
    with pytest.raises(NotFound):
        db_store.delete_row(99)


def test_list_runs_count_then_page(db_store, conn):
    conn.results.extend([{"total": 3}, [_row(user_id=2), _row(user_id=3, firebase_uid=None, email="b@x.com")]])

    rows, total = db_store.list(branch_id=1, role=Role.STUDENT, limit=2, offset=0)

    assert total == 3
    assert [r.user_id for r in rows] == [2, 3]
    assert conn.executed[0][1] == [1, "Student"]
    assert conn.executed[1][1] == [1, "Student", 2, 0]


def test_list_external_ids(db_store, conn):
    conn.results.append([{"firebase_uid": "uid-1"}, {"firebase_uid": "uid-2"}])

    assert db_store.list_external_ids() == {"uid-1", "uid-2"}


@pytest.mark.parametrize("error", [
    InvalidDatetimeFormat("invalid input syntax for type date"),
    StringDataRightTruncation("value too long for type character varying(20)"),
])
def test_data_error_is_validation_error(db_store, conn, error):
    conn.error = error

    with pytest.raises(ValidationError):
        db_store.insert(Identity(email="n@x.com", full_name="N", role=Role.STUDENT))


def test_unexpected_driver_error_is_store_unavailable(db_store, conn):
    conn.error = psycopg.ProgrammingError('relation "public.userstbl" does not exist')

    with pytest.raises(RecordStoreUnavailable):
        db_store.get(1)


# ─────────────────────────────────────────────────────────────────────────────
# Synchronizer over the PostgreSQL store
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def db_synchronizer(db_store, audit_events):
    return IdentitySynchronizer(FakeCredentialProvider(), db_store, audit_sink=audit_events)


def test_create_rejected_value_rolls_back_credential(db_synchronizer, conn):
    conn.error = StringDataRightTruncation("value too long for type character varying(20)")

    with pytest.raises(ValidationError) as exc_info:
        db_synchronizer.synchronize_create(
            "new@x.com", "Secret123!", "Teacher", {"full_name": "Ana", "phone_number": "5" * 40}
        )

    assert exc_info.value.state is SyncState.ROLLED_BACK
    assert db_synchronizer.provider.credentials == {}


def test_create_unexpected_driver_error_deletes_credential(db_synchronizer, conn, audit_events):
    conn.error = psycopg.ProgrammingError("permission denied for table userstbl")

    with pytest.raises(RecordStoreUnavailable) as exc_info:
        db_synchronizer.synchronize_create("new@x.com", "Secret123!", "Teacher", {"full_name": "Ana"})

    # Insert outcome cannot be confirmed while the store keeps failing
    assert exc_info.value.state is SyncState.INCONSISTENT
    assert db_synchronizer.provider.credentials == {}
    assert audit_events.events[-1][0] == "identity_inconsistent"


def test_delete_unexpected_driver_error_is_partial_delete(db_synchronizer, conn, audit_events):
    uid = db_synchronizer.provider.add("gone@x.com")
    conn.results.append(_row(user_id=4, firebase_uid=uid, email="gone@x.com"))
    conn.error = psycopg.ProgrammingError("permission denied for table userstbl")
    conn.fail_on = "delete from"

    with pytest.raises(PartialDelete) as exc_info:
        db_synchronizer.synchronize_delete(4)

    assert exc_info.value.state is SyncState.PARTIAL_DELETE
    assert uid not in db_synchronizer.provider.credentials
    assert audit_events.events[-1][0] == "identity_partial_delete"
