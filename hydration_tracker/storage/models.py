from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _parse_datetime(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    full_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def can_authenticate(self) -> bool:
        """Only active, non-deleted accounts may own a usable session."""
        return self.is_active and self.deleted_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "full_name": self.full_name,
            "created_at": _isoformat(self.created_at),
            "is_active": self.is_active,
            "email_verified": self.email_verified,
            "last_login_at": _isoformat(self.last_login_at),
            "deleted_at": _isoformat(self.deleted_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            username=data.get("username"),
            full_name=data.get("full_name"),
            created_at=_parse_datetime(data["created_at"]),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            last_login_at=_parse_datetime(data.get("last_login_at")),
            deleted_at=_parse_datetime(data.get("deleted_at")),
        )


@dataclass
class Session:
    """One login on one device.

    ``session_token`` is the opaque public handle; ``id`` is the row key.
    ``expires_at`` is fixed at creation and ``is_active`` never returns to True.
    """

    id: str
    user_id: str
    session_token: str
    refresh_token: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    device_info: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        session_token: str,
        refresh_token: str,
        ttl_minutes: int = 60 * 24,
        device_info: Dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            session_token=session_token,
            refresh_token=refresh_token,
            created_at=created,
            last_used_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


@dataclass
class RequestContext:
    """Network details of the request that opened a session."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
