from datetime import datetime, timedelta, timezone

import pytest

from hydration_tracker.storage.errors import ConstraintViolation
from hydration_tracker.storage.memory import MemoryStore
from hydration_tracker.storage.models import Session, new_session_token

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def _session(user_id: str, *, ttl_minutes: int = 60, now: datetime = NOW) -> Session:
    return Session.new(
        user_id,
        session_token=new_session_token(),
        refresh_token=f"refresh-{new_session_token()}",
        ttl_minutes=ttl_minutes,
        device_info={"platform": "ios"},
        ip_address="10.0.0.5",
        now=now,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def test_duplicate_email_rejected(store):
    store.create_user("pat@example.com", username="pat")
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("pat@example.com", username="pat2")
    assert exc.value.field == "email"


def test_duplicate_username_rejected(store):
    store.create_user("pat@example.com", username="pat")
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("other@example.com", username="pat")
    assert exc.value.field == "username"


def test_session_requires_known_user(store):
    with pytest.raises(ConstraintViolation):
        store.create_session(_session("no-such-user"))


def test_returned_records_are_copies(store):
    user = store.create_user("pat@example.com")
    sess = store.create_session(_session(user.id))
    sess.is_active = False
    assert store.get_session_by_token(sess.session_token).is_active is True


def test_lookup_by_refresh_token(store):
    user = store.create_user("pat@example.com")
    sess = store.create_session(_session(user.id))
    found = store.get_session_by_refresh_token(sess.refresh_token)
    assert found.session_token == sess.session_token
    assert store.get_session_by_refresh_token("unknown") is None


def test_deactivate_is_one_way(store):
    user = store.create_user("pat@example.com")
    sess = store.create_session(_session(user.id))
    assert store.deactivate_session(sess.session_token) is True
    assert store.deactivate_session(sess.session_token) is False
    assert store.deactivate_session("unknown") is False

    store.touch_session(sess.session_token, NOW + timedelta(minutes=5))
    assert store.get_session_by_token(sess.session_token).last_used_at == NOW


def test_deactivate_user_sessions_only_touches_that_user(store):
    pat = store.create_user("pat@example.com")
    sam = store.create_user("sam@example.com")
    pat_sessions = [store.create_session(_session(pat.id)) for _ in range(3)]
    sam_session = store.create_session(_session(sam.id))
    store.deactivate_session(pat_sessions[0].session_token)

    revoked = store.deactivate_user_sessions(pat.id)
    assert sorted(revoked) == sorted(s.session_token for s in pat_sessions[1:])
    assert store.get_session_by_token(sam_session.session_token).is_active
    assert store.deactivate_user_sessions(pat.id) == []


def test_deactivate_expired_sessions(store):
    user = store.create_user("pat@example.com")
    short = store.create_session(_session(user.id, ttl_minutes=10))
    long = store.create_session(_session(user.id, ttl_minutes=600))

    expired = store.deactivate_expired_sessions(NOW + timedelta(minutes=10))
    assert expired == [short.session_token]
    assert store.get_session_by_token(long.session_token).is_active


def test_list_user_sessions_most_recent_first(store):
    user = store.create_user("pat@example.com")
    older = store.create_session(_session(user.id))
    newer = store.create_session(_session(user.id))
    store.touch_session(newer.session_token, NOW + timedelta(minutes=3))
    revoked = store.create_session(_session(user.id))
    store.deactivate_session(revoked.session_token)

    active = store.list_user_sessions(user.id)
    assert [s.session_token for s in active] == [newer.session_token, older.session_token]
    assert len(store.list_user_sessions(user.id, active_only=False)) == 3


def test_soft_delete_drops_credentials(store):
    user = store.create_user("pat@example.com")
    store.save_password(user.id, "$argon2id$hash", "argon2id")

    assert store.mark_user_deleted(user.id, NOW) is True
    assert store.mark_user_deleted(user.id, NOW) is False
    stored = store.get_user(user.id)
    assert stored.deleted_at == NOW
    assert stored.can_authenticate is False
    assert store.get_password_record(user.id) is None


def test_save_password_for_unknown_user(store):
    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash", "argon2id")


def test_state_survives_reload(tmp_path):
    first = MemoryStore(fs_root=str(tmp_path))
    user = first.create_user("pat@example.com", username="pat", full_name="Pat")
    first.save_password(user.id, "$argon2id$hash", "argon2id")
    first.mark_email_verified(user.id)
    sess = first.create_session(_session(user.id))
    first.deactivate_session(sess.session_token)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    loaded_user = reloaded.get_user(user.id)
    assert loaded_user.email_verified is True
    assert loaded_user.full_name == "Pat"
    assert reloaded.get_password_record(user.id) == ("$argon2id$hash", "argon2id")
    loaded_sess = reloaded.get_session_by_refresh_token(sess.refresh_token)
    assert loaded_sess.session_token == sess.session_token
    assert loaded_sess.is_active is False
    assert loaded_sess.expires_at == sess.expires_at
    assert loaded_sess.device_info == {"platform": "ios"}


def test_failed_write_keeps_previous_state_file(tmp_path, monkeypatch):
    first = MemoryStore(fs_root=str(tmp_path))
    user = first.create_user("pat@example.com", username="pat")
    sess = first.create_session(_session(user.id))

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("hydration_tracker.storage.memory.os.replace", fail_replace)
    with pytest.raises(RuntimeError):
        first.touch_session(sess.session_token, NOW + timedelta(minutes=5))
    monkeypatch.undo()

    state_dir = tmp_path / "state"
    assert [p.name for p in state_dir.iterdir()] == ["memory_store.json"]
    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_session_by_token(sess.session_token).last_used_at == NOW
