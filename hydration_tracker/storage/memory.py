from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from hydration_tracker.logging import get_logger
from hydration_tracker.storage.errors import ConstraintViolation
from hydration_tracker.storage.models import Session, User


class MemoryStore:
    """In-memory store for users, credentials and sessions.

    State is mirrored to a JSON file under ``fs_root`` so a dev server keeps its
    sessions across restarts. Records handed out are copies; callers change
    state only through the store methods.
    """

    def __init__(self, fs_root: str = "/tmp/hydration-tracker") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # session_token -> Session
        self.sessions: Dict[str, Session] = {}
        # refresh_token -> session_token
        self._refresh_index: Dict[str, str] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        full_name: Optional[str] = None,
        *,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if username and existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                full_name=full_name,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            self._persist_state()
            return replace(user)

    def record_login(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = when
            self._persist_state()

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = active
            self._persist_state()
            return replace(user)

    def mark_user_deleted(self, user_id: str, when: datetime) -> bool:
        """Soft-delete: the row stays so its sessions keep a valid owner."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is not None:
                return False
            user.deleted_at = when
            user.is_active = False
            self.credentials.pop(user_id, None)
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            if session.session_token in self.sessions:
                raise ConstraintViolation(
                    "session token already exists", {"field": "session_token"}
                )
            stored = replace(session)
            self.sessions[stored.session_token] = stored
            self._refresh_index[stored.refresh_token] = stored.session_token
            self._persist_state()
            return replace(stored)

    def get_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            return replace(sess) if sess else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            token = self._refresh_index.get(refresh_token)
            sess = self.sessions.get(token) if token else None
            return replace(sess) if sess else None

    def touch_session(self, session_token: str, when: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess or not sess.is_active:
                return
            sess.last_used_at = when
            self._persist_state()

    def deactivate_session(self, session_token: str) -> bool:
        """Flip ``is_active`` off; returns False when already inactive or unknown."""
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            self._persist_state()
            return True

    def deactivate_user_sessions(self, user_id: str) -> List[str]:
        with self._data_lock:
            revoked = [
                sess.session_token
                for sess in self.sessions.values()
                if sess.user_id == user_id and sess.is_active
            ]
            for token in revoked:
                self.sessions[token].is_active = False
            if revoked:
                self._persist_state()
            return revoked

    def deactivate_expired_sessions(self, now: datetime) -> List[str]:
        with self._data_lock:
            expired = [
                sess.session_token
                for sess in self.sessions.values()
                if sess.is_active and sess.is_expired(now)
            ]
            for token in expired:
                self.sessions[token].is_active = False
            if expired:
                self._persist_state()
            return expired

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[Session]:
        with self._data_lock:
            results = [
                replace(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id and (sess.is_active or not active_only)
            ]
        return sorted(results, key=lambda s: s.last_used_at, reverse=True)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        tmp_path: Optional[str] = None
        try:
            # Write then rename so a crash never leaves a truncated state file
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".memory_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        sessions = [self._deserialize_session(s) for s in data.get("sessions", [])]
        self.sessions = {s.session_token: s for s in sessions}
        self._refresh_index = {s.refresh_token: s.session_token for s in sessions}
        return True

    def _serialize_user(self, user: User) -> dict:
        return user.to_dict()

    def _deserialize_user(self, data: dict) -> User:
        return User.from_dict(data)

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "session_token": session.session_token,
            "refresh_token": session.refresh_token,
            "created_at": self._serialize_datetime(session.created_at),
            "last_used_at": self._serialize_datetime(session.last_used_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "device_info": session.device_info,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "is_active": session.is_active,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            session_token=data["session_token"],
            refresh_token=data["refresh_token"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_used_at=self._deserialize_datetime(data["last_used_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device_info=data.get("device_info"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            is_active=data.get("is_active", True),
        )
