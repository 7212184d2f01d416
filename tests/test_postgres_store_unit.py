import contextlib
import uuid
from contextvars import ContextVar
from datetime import timedelta

import psycopg
import pytest
from psycopg import errors

from pastcare.storage.errors import ConstraintViolation, StoreUnavailable
from pastcare.storage.models import Role, utcnow
from pastcare.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, responses=None):
        self.statements = []
        self.responses = list(responses or [])

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        if self.responses:
            result = self.responses.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return FakeCursor()


class RecordingPool:
    def __init__(self, conn):
        self.conn = conn
        self.checkouts = 0

    @contextlib.contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


class FailingPool:
    def connection(self):
        raise psycopg.OperationalError("connection refused")


def make_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store._bound_conn = ContextVar(f"bound_{uuid.uuid4().hex}", default=None)
    return store


def test_user_token_lock_binds_one_connection():
    conn = FakeConnection()
    pool = RecordingPool(conn)
    store = make_store(pool)
    user_id = str(uuid.uuid4())

    with store.user_token_lock(user_id):
        store.count_valid_refresh_tokens(user_id, utcnow())
        store.list_valid_refresh_tokens(user_id, utcnow())
        with store.user_token_lock(user_id):
            store.revoke_user_refresh_tokens(user_id)

    assert pool.checkouts == 1
    assert conn.statements[0] == (
        "SELECT pg_advisory_xact_lock(hashtext(%s))",
        (user_id,),
    )
    assert len(conn.statements) == 4
    assert store._bound_conn.get() is None


def test_calls_outside_lock_use_fresh_connections():
    conn = FakeConnection()
    pool = RecordingPool(conn)
    store = make_store(pool)

    store.church_name_exists("Grace")
    store.church_name_exists("Grace")

    assert pool.checkouts == 2


def test_unique_violation_maps_to_constraint():
    conn = FakeConnection([errors.UniqueViolation("duplicate key")])
    store = make_store(RecordingPool(conn))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("ama@example.com", tenant_id=str(uuid.uuid4()))
    assert exc_info.value.detail == {"field": "email"}


def test_foreign_key_violation_maps_to_constraint():
    conn = FakeConnection([errors.ForeignKeyViolation("missing church")])
    store = make_store(RecordingPool(conn))

    with pytest.raises(ConstraintViolation):
        store.create_user("ama@example.com", tenant_id=str(uuid.uuid4()))


def test_connection_failure_maps_to_store_unavailable():
    store = make_store(FailingPool())

    with pytest.raises(StoreUnavailable):
        store.get_refresh_token("anything")


def test_malformed_session_id_skips_database():
    store = make_store(DummyPool())

    assert store.get_refresh_token_by_id("not-a-uuid") is None


def test_refresh_token_row_mapping():
    now = utcnow()
    token_id = uuid.uuid4()
    user_id = uuid.uuid4()
    row = {
        "id": token_id,
        "token": "opaque",
        "user_id": user_id,
        "tenant_id": None,
        "issued_at": now,
        "expires_at": now + timedelta(days=30),
        "last_used_at": now,
        "revoked": False,
        "ip_addr": "10.0.0.1",
        "user_agent": "pytest",
    }
    conn = FakeConnection([FakeCursor([row])])
    store = make_store(RecordingPool(conn))

    token = store.get_refresh_token("opaque")

    assert token.id == str(token_id)
    assert token.user_id == str(user_id)
    assert token.tenant_id is None
    assert token.is_valid(now)


def test_user_row_mapping():
    church_id = uuid.uuid4()
    row = {
        "id": uuid.uuid4(),
        "email": "ama@example.com",
        "name": "Ama",
        "phone_number": None,
        "role": "pastor",
        "tenant_id": church_id,
        "is_active": True,
        "created_at": utcnow(),
    }
    conn = FakeConnection([FakeCursor([row])])
    store = make_store(RecordingPool(conn))

    user = store.get_user_by_email("ama@example.com")

    assert user.role == Role.PASTOR
    assert user.tenant_id == str(church_id)


def test_count_failed_attempts_filters():
    conn = FakeConnection([FakeCursor([{"failed": 3}])])
    store = make_store(RecordingPool(conn))
    since = utcnow()

    assert store.count_failed_login_attempts(since, ip_addr="1.1.1.1") == 3
    query, params = conn.statements[0]
    assert "ip_addr = %s" in query
    assert "email = %s" not in query
    assert params == [since, "1.1.1.1"]


def test_save_refresh_token_keeps_latest_use_and_revocation():
    now = utcnow()
    row = {
        "id": uuid.uuid4(),
        "token": "opaque",
        "user_id": uuid.uuid4(),
        "tenant_id": None,
        "issued_at": now,
        "expires_at": now + timedelta(days=30),
        "last_used_at": now,
        "revoked": True,
        "ip_addr": None,
        "user_agent": None,
    }
    conn = FakeConnection([FakeCursor([row])])
    store = make_store(RecordingPool(conn))
    token = store._to_refresh_token(row)
    token.revoked = False

    saved = store.save_refresh_token(token)

    query, _ = conn.statements[0]
    assert "last_used_at = GREATEST(refresh_token.last_used_at, EXCLUDED.last_used_at)" in query
    assert "revoked = refresh_token.revoked OR EXCLUDED.revoked" in query
    assert saved.revoked is True
