from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from typing import Any, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from hydration_tracker.logging import get_logger
from hydration_tracker.storage.errors import ConstraintViolation, StoreUnavailable
from hydration_tracker.storage.models import Session, User

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    username TEXT UNIQUE,
    full_name TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_login_at TIMESTAMPTZ,
    deleted_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS user_auth_credential (
    user_id UUID PRIMARY KEY REFERENCES app_user(id),
    password_hash TEXT NOT NULL,
    password_algo TEXT NOT NULL,
    last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS user_session (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES app_user(id),
    session_token TEXT NOT NULL UNIQUE,
    refresh_token TEXT UNIQUE,
    device_info JSONB,
    ip_address TEXT,
    user_agent TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_used_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    expires_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_user_session_user_active
    ON user_session (user_id, is_active);
CREATE INDEX IF NOT EXISTS idx_user_session_expires_active
    ON user_session (expires_at) WHERE is_active;
"""


class PostgresStore:
    """Postgres-backed store for users, credentials and sessions."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._schema_lock = threading.Lock()
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._schema_lock:
            try:
                with self._connect() as conn:
                    conn.execute(_SCHEMA)
            except (psycopg.OperationalError, PoolTimeout) as exc:
                self.logger.error("postgres_schema_setup_failed", error=str(exc))
                raise StoreUnavailable(
                    "database unavailable", {"error": type(exc).__name__}
                ) from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            full_name=row.get("full_name"),
            created_at=row["created_at"],
            is_active=row.get("is_active", True),
            email_verified=row.get("email_verified", False),
            last_login_at=row.get("last_login_at"),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        device_info: Any = row.get("device_info")
        if isinstance(device_info, str):
            device_info = json.loads(device_info)
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            session_token=row["session_token"],
            refresh_token=row["refresh_token"],
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
            expires_at=row["expires_at"],
            device_info=device_info,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_active=row["is_active"],
        )

    # users
    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        full_name: Optional[str] = None,
        *,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, full_name, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, username, full_name, is_active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_verified = TRUE WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def record_login(self, user_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s", (when, user_id)
            )

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_user_deleted(self, user_id: str, when: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET deleted_at = %s, is_active = FALSE
                WHERE id = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (when, user_id),
            ).fetchone()
            if row:
                conn.execute(
                    "DELETE FROM user_auth_credential WHERE user_id = %s", (user_id,)
                )
        return row is not None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_session (
                        id, user_id, session_token, refresh_token, device_info,
                        ip_address, user_agent, is_active, created_at, last_used_at, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.session_token,
                        session.refresh_token,
                        json.dumps(session.device_info) if session.device_info else None,
                        session.ip_address,
                        session.user_agent,
                        session.is_active,
                        session.created_at,
                        session.last_used_at,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session token already exists", {"field": "session_token"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return session

    def get_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE session_token = %s", (session_token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE refresh_token = %s", (refresh_token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, session_token: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_session SET last_used_at = %s
                WHERE session_token = %s AND is_active
                """,
                (when, session_token),
            )

    def deactivate_session(self, session_token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE
                WHERE session_token = %s AND is_active
                RETURNING session_token
                """,
                (session_token,),
            ).fetchone()
        return row is not None

    def deactivate_user_sessions(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE
                WHERE user_id = %s AND is_active
                RETURNING session_token
                """,
                (user_id,),
            ).fetchall()
        return [row["session_token"] for row in rows]

    def deactivate_expired_sessions(self, now: datetime) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE
                WHERE expires_at <= %s AND is_active
                RETURNING session_token
                """,
                (now,),
            ).fetchall()
        return [row["session_token"] for row in rows]

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[Session]:
        query = "SELECT * FROM user_session WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        query += " ORDER BY last_used_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._row_to_session(row) for row in rows]
