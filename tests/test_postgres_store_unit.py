import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from hydration_tracker.logging import get_logger
from hydration_tracker.storage.errors import ConstraintViolation
from hydration_tracker.storage.models import Session
from hydration_tracker.storage.postgres import PostgresStore

NOW = datetime(2026, 4, 2, 7, 15, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, rows=None, raises=None):
        self.rows = rows or []
        self.raises = raises
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((" ".join(query.split()), params))
        if self.raises is not None:
            raise self.raises
        return FakeResult(self.rows)


class FakePool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.logger = get_logger("tests.postgres")
    return store


def _session_row(**overrides) -> dict:
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "session_token": "sess-token",
        "refresh_token": "refresh-token",
        "device_info": json.dumps({"platform": "android"}),
        "ip_address": "10.1.1.1",
        "user_agent": "HydrationApp/2.0",
        "is_active": True,
        "created_at": NOW,
        "last_used_at": NOW,
        "expires_at": NOW + timedelta(days=1),
    }
    row.update(overrides)
    return row


def test_row_to_session_decodes_json_device_info():
    sess = PostgresStore._row_to_session(_session_row())
    assert sess.device_info == {"platform": "android"}
    assert isinstance(sess.id, str)
    assert isinstance(sess.user_id, str)


def test_row_to_session_accepts_decoded_jsonb():
    sess = PostgresStore._row_to_session(_session_row(device_info={"platform": "ios"}))
    assert sess.device_info == {"platform": "ios"}


def test_get_session_by_refresh_token():
    conn = FakeConnection(rows=[_session_row()])
    sess = _store(conn).get_session_by_refresh_token("refresh-token")
    assert sess.session_token == "sess-token"
    query, params = conn.executed[0]
    assert "WHERE refresh_token = %s" in query
    assert params == ("refresh-token",)


def test_deactivate_session_reports_state_change():
    assert _store(FakeConnection(rows=[{"session_token": "t"}])).deactivate_session("t") is True
    assert _store(FakeConnection(rows=[])).deactivate_session("t") is False


def test_deactivate_only_touches_active_rows():
    conn = FakeConnection(rows=[{"session_token": "a"}, {"session_token": "b"}])
    revoked = _store(conn).deactivate_user_sessions("user-1")
    assert revoked == ["a", "b"]
    query, _ = conn.executed[0]
    assert "SET is_active = FALSE" in query
    assert "AND is_active" in query


def test_expired_sweep_filters_on_expiry():
    conn = FakeConnection(rows=[{"session_token": "old"}])
    assert _store(conn).deactivate_expired_sessions(NOW) == ["old"]
    query, params = conn.executed[0]
    assert "expires_at <= %s" in query
    assert params == (NOW,)


def test_create_session_duplicate_token():
    conn = FakeConnection(raises=errors.UniqueViolation("duplicate key"))
    sess = Session.new("user-1", session_token="dup", refresh_token="r", now=NOW)
    with pytest.raises(ConstraintViolation) as exc:
        _store(conn).create_session(sess)
    assert exc.value.field == "session_token"


def test_create_session_unknown_user():
    conn = FakeConnection(raises=errors.ForeignKeyViolation("missing user"))
    sess = Session.new("ghost", session_token="t", refresh_token="r", now=NOW)
    with pytest.raises(ConstraintViolation):
        _store(conn).create_session(sess)


def test_list_user_sessions_active_filter():
    conn = FakeConnection(rows=[_session_row()])
    _store(conn).list_user_sessions("user-1")
    _store(conn).list_user_sessions("user-1", active_only=False)
    active_query, _ = conn.executed[0]
    all_query, _ = conn.executed[1]
    assert "AND is_active" in active_query
    assert "AND is_active" not in all_query
    assert active_query.endswith("ORDER BY last_used_at DESC")
