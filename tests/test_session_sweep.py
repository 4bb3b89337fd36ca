import asyncio
import importlib.util
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from hydration_tracker.app import _run_session_sweep
from hydration_tracker.service.runtime import get_runtime
from hydration_tracker.storage.models import Session, new_session_token

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "cleanup_sessions.py"


class FlakySessions:
    """Fails the first sweep, then counts successful ones."""

    def __init__(self):
        self.calls = 0

    async def cleanup_expired_sessions(self) -> int:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("database hiccup")
        return 0


async def test_sweep_survives_failures_and_stops_on_cancel():
    sessions = FlakySessions()
    task = asyncio.create_task(_run_session_sweep(sessions, 0))
    for _ in range(10):
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert sessions.calls >= 2


def _load_script():
    spec = importlib.util.spec_from_file_location("cleanup_sessions", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_cleanup_script_revokes_expired_sessions():
    runtime = get_runtime()
    user = runtime.store.create_user("sweeper@example.com", username="sweeper")
    past = datetime.now(timezone.utc) - timedelta(days=2)
    expired = Session.new(
        user.id,
        session_token=new_session_token(),
        refresh_token="expired-refresh",
        ttl_minutes=60,
        now=past,
    )
    live = Session.new(
        user.id,
        session_token=new_session_token(),
        refresh_token="live-refresh",
        ttl_minutes=60,
    )
    runtime.store.create_session(expired)
    runtime.store.create_session(live)

    revoked = asyncio.run(_load_script().sweep())

    assert revoked == 1
    assert runtime.store.get_session_by_token(expired.session_token).is_active is False
    assert runtime.store.get_session_by_token(live.session_token).is_active is True
