from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors, sql

from taskdeck.storage.errors import ConstraintViolation
from taskdeck.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows, rowcount=None):
        self.rows = list(rows)
        self.rowcount = len(self.rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((query, params))
        response = self.responses.pop(0) if self.responses else FakeResult([])
        if isinstance(response, Exception):
            raise response
        return response

    @contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, responses=None):
        self.conn = FakeConnection(list(responses or []))
        self.checkouts = 0

    @contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


def _store(responses=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(responses)
    store._tx_conn = ContextVar("test_tx", default=None)
    store.logger = None
    return store


def _user_row(**overrides):
    row = {
        "id": 3,
        "email": "member@example.com",
        "password_hash": "$argon2id$...",
        "first_name": "Test",
        "last_name": "Member",
        "role_id": 4,
        "is_active": True,
        "is_email_verified": False,
        "profile_picture": None,
        "last_login": None,
        "login_attempts": 2,
        "locked_until": None,
        "created_at": NOW,
        "updated_at": None,
        "role_name": "user",
        "role_display_name": "User",
        "role_description": "Standard account",
        "role_permissions": ["tasks.create"],
        "role_is_active": True,
        "role_created_at": NOW,
        "role_updated_at": None,
    }
    row.update(overrides)
    return row


def _session_row(**overrides):
    row = {
        "id": 8,
        "user_id": 3,
        "session_token": "s" * 64,
        "refresh_token": "r" * 64,
        "expires_at": NOW + timedelta(days=7),
        "device_info": None,
        "ip_address": "10.0.0.1",
        "user_agent": "pytest",
        "is_active": True,
        "created_at": NOW,
        "updated_at": None,
    }
    row.update(overrides)
    return row


def test_user_rows_carry_their_role():
    store = _store([FakeResult([_user_row()])])

    user = store.get_user_by_email(" member@example.com ")

    assert user.id == 3
    assert user.login_attempts == 2
    assert user.role.id == 4
    assert user.role.name == "user"
    assert user.role.permissions == ["tasks.create"]
    query, params = store.pool.conn.executed[0]
    assert "JOIN roles" in query
    assert params == ("member@example.com",)


def test_permissions_are_decoded_from_json_text():
    assert PostgresStore._permissions('["a", "b"]') == ["a", "b"]
    assert PostgresStore._permissions("not json") == []
    assert PostgresStore._permissions(None) == []
    assert PostgresStore._permissions({"a": 1}) == []


def test_update_assignments_are_whitelisted():
    composed = PostgresStore._assignments(
        {"login_attempts": 0, "locked_until": None}, {"login_attempts", "locked_until"}
    )
    assert isinstance(composed, sql.Composed)

    with pytest.raises(ValueError):
        PostgresStore._assignments({"password_hash; DROP": 1}, {"login_attempts"})


def test_create_user_maps_unique_violation():
    store = _store([errors.UniqueViolation("duplicate key")])

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user(
            email="member@example.com",
            password_hash="x",
            first_name="Test",
            last_name="Member",
            role_id=4,
        )
    assert excinfo.value.field == "email"


def test_increment_login_attempts_returns_stored_count():
    store = _store([FakeResult([{"login_attempts": 4}])])

    assert store.increment_login_attempts(3) == 4
    query, params = store.pool.conn.executed[0]
    assert "login_attempts = login_attempts + 1" in query
    assert "RETURNING login_attempts" in query
    assert params == (3,)


def test_delete_role_maps_foreign_key_violation():
    store = _store([errors.ForeignKeyViolation("still referenced")])

    with pytest.raises(ConstraintViolation):
        store.delete_role(5)


def test_session_lookup_filters_inactive_and_expired():
    store = _store([FakeResult([_session_row()])])

    sess = store.get_active_session_by_refresh("r" * 64)

    assert sess.id == 8
    assert sess.ip_address == "10.0.0.1"
    query, _ = store.pool.conn.executed[0]
    assert "is_active = TRUE" in query
    assert "expires_at > now()" in query


def test_deactivate_sessions_reports_rowcount():
    store = _store([FakeResult([], rowcount=3)])

    assert store.deactivate_user_sessions(3, except_session_id=8) == 3
    _, params = store.pool.conn.executed[0]
    assert 8 in params


def test_transaction_reuses_one_connection():
    store = _store([FakeResult([{"login_attempts": 1}]), FakeResult([], rowcount=2)])

    with store.transaction():
        store.increment_login_attempts(3)
        store.deactivate_user_sessions(3)

    assert store.pool.checkouts == 1
    assert len(store.pool.conn.executed) == 2
    assert store._tx_conn.get() is None


def test_missing_tables_fail_startup():
    store = _store(
        [
            FakeResult([{"oid": "roles"}]),
            FakeResult([{"oid": None}]),
            FakeResult([{"oid": None}]),
        ]
    )

    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()
    assert "user_sessions, users" in str(excinfo.value)
