from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from authkernel.storage.errors import ConstraintViolation, StoreUnavailable
from authkernel.storage.models import SessionRecord, TokenPurpose
from authkernel.storage.postgres import REQUIRED_TABLES, PostgresStore
from authkernel.logging import get_logger

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, *responses):
        self.conn = FakeConnection(list(responses))

    def connection(self):
        return self.conn


def make_store(*responses) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*responses)
    store.logger = get_logger("test")
    return store


def statements(store):
    return store.pool.conn.statements


def test_schema_check_reports_missing_tables():
    store = make_store(FakeCursor(rows=[{"table_name": "app_user"}]))
    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()
    assert "auth_session" in str(excinfo.value)


def test_schema_check_passes_when_complete():
    store = make_store(FakeCursor(rows=[{"table_name": name} for name in REQUIRED_TABLES]))
    store._verify_required_schema()


def test_create_user_normalizes_email():
    row = {"id": "u1", "email": "a@example.com", "is_active": True, "email_verified_at": None, "created_at": NOW}
    store = make_store(FakeCursor(rows=[row]))
    user = store.create_user("  A@Example.com ")
    assert user.email == "a@example.com"
    sql, params = statements(store)[0]
    assert sql.startswith("INSERT INTO app_user")
    assert params[1] == "a@example.com"


def test_duplicate_email_maps_to_constraint_violation():
    store = make_store(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com")


def test_session_mirror_for_unknown_user():
    record = SessionRecord(
        id="s1",
        subject_id="ghost",
        created_at=NOW,
        expires_at=NOW + timedelta(days=7),
        client_fingerprint_hash="fp",
        client_agent="ua",
    )
    store = make_store(errors.ForeignKeyViolation("fk"))
    with pytest.raises(ConstraintViolation):
        store.create_session(record)


def test_resolve_session_principal_maps_joined_row():
    row = {
        "id": "s1",
        "user_id": "u1",
        "created_at": NOW,
        "expires_at": NOW + timedelta(hours=1),
        "client_fingerprint_hash": "fp",
        "client_agent": "ua",
        "revoked_at": None,
        "user_email": "u@example.com",
        "user_is_active": False,
        "user_email_verified_at": NOW,
        "user_created_at": NOW,
    }
    store = make_store(FakeCursor(rows=[row]))
    record, user = store.resolve_session_principal("s1")
    assert record.subject_id == "u1"
    assert user.email == "u@example.com"
    assert user.is_active is False
    assert user.email_verified
    assert len(statements(store)) == 1
    assert "JOIN app_user" in statements(store)[0][0]


def test_resolve_missing_session():
    store = make_store(FakeCursor())
    assert store.resolve_session_principal("nope") is None


def test_delete_user_sessions_keeps_excepted_id():
    store = make_store(FakeCursor(rowcount=3))
    assert store.delete_user_sessions("u1", except_session_id="keep") == 3
    sql, params = statements(store)[0]
    assert "id <> %s" in sql
    assert params == ("u1", "keep")


def test_get_user_roles():
    store = make_store(FakeCursor(rows=[{"name": "admin"}, {"name": "auditor"}]))
    assert store.get_user_roles("u1") == {"admin", "auditor"}


def test_consume_token_discards_siblings():
    store = make_store(FakeCursor(rows=[{"user_id": "u1", "purpose": "email_verification"}]))
    assert store.consume_one_time_token("t1", discard_siblings=True)
    assert len(statements(store)) == 2
    assert statements(store)[1][0].startswith("DELETE FROM one_time_token")
    assert statements(store)[1][1] == ("u1", "email_verification", "t1")


def test_consume_used_token_fails():
    store = make_store(FakeCursor())
    assert store.consume_one_time_token("t1", discard_siblings=True) is False
    assert len(statements(store)) == 1


def test_get_one_time_token_filters_by_purpose():
    store = make_store(FakeCursor())
    assert store.get_one_time_token("digest", TokenPurpose.PASSWORD_RESET) is None
    assert statements(store)[0][1] == ("digest", TokenPurpose.PASSWORD_RESET.value)


class ExhaustedPool:
    def connection(self):
        raise PoolTimeout("couldn't get a connection after 5.00 sec")


def test_statement_failure_maps_to_store_unavailable():
    store = make_store(errors.QueryCanceled("canceling statement due to statement timeout"))
    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_user_by_email("slow@example.com")
    assert "statement timeout" in excinfo.value.detail["error"]


def test_pool_timeout_maps_to_store_unavailable():
    store = make_store()
    store.pool = ExhaustedPool()
    with pytest.raises(StoreUnavailable):
        store.get_session("s1")


def test_integrity_errors_are_not_reported_as_outages():
    store = make_store(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("dup@example.com")
    assert not isinstance(excinfo.value, StoreUnavailable)
