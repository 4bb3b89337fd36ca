from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Union

from hydration_tracker.config import Settings
from hydration_tracker.logging import get_logger, token_prefix
from hydration_tracker.service.errors import (
    AccountDeleted,
    AccountDisabled,
    SessionExpired,
    SessionRevoked,
)
from hydration_tracker.service.tokens import TokenIssuer
from hydration_tracker.storage.models import (
    RequestContext,
    Session,
    User,
    new_session_token,
)
from hydration_tracker.storage.redis_cache import RedisCache, SyncRedisCache

SessionCache = Union[RedisCache, SyncRedisCache]


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session_by_token(self, session_token: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def touch_session(self, session_token: str, when: datetime) -> None: ...

    def deactivate_session(self, session_token: str) -> bool: ...

    def deactivate_user_sessions(self, user_id: str) -> List[str]: ...

    def deactivate_expired_sessions(self, now: datetime) -> List[str]: ...

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[Session]: ...


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    session_token: str
    expires_at: datetime
    user_id: str

    def as_response(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "sessionToken": self.session_token,
            "expiresAt": self.expires_at.isoformat(),
        }


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    expires_at: datetime

    def as_response(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at.isoformat(),
        }


class SessionLifecycleManager:
    """Create, validate, refresh and revoke login sessions.

    The store is the source of truth. Expiry is enforced lazily on every
    validate and refresh; ``cleanup_expired_sessions`` only tidies rows that
    nobody touched. Revocation is soft and final: an inactive row never
    becomes active again and ``expires_at`` is never moved. Owner accounts
    are read through the cache with ``load_user``.
    """

    def __init__(
        self,
        store: SessionStore,
        issuer: TokenIssuer,
        cache: Optional[SessionCache],
        settings: Settings,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.cache = cache
        self.settings = settings
        self._clock = now or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return self._clock()

    async def create_session(
        self,
        user: User,
        device_info: Optional[Dict] = None,
        request_context: Optional[RequestContext] = None,
        *,
        ttl_minutes: Optional[int] = None,
    ) -> TokenBundle:
        ctx = request_context or RequestContext()
        session_token = new_session_token()
        access_token = self.issuer.generate_access_token(
            user.id, session_token, email=user.email
        )
        refresh_token = self.issuer.generate_refresh_token(user.id, session_token)
        session = Session.new(
            user.id,
            session_token=session_token,
            refresh_token=refresh_token,
            ttl_minutes=ttl_minutes or self.settings.session_ttl_minutes,
            device_info=device_info,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            now=self._now(),
        )
        self.store.create_session(session)
        await self._cache_session(session)
        self.logger.info(
            "session_created",
            user_id=user.id,
            session=token_prefix(session_token),
            ip_address=ctx.ip_address,
            expires_at=session.expires_at.isoformat(),
        )
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            session_token=session_token,
            expires_at=session.expires_at,
            user_id=user.id,
        )

    async def validate_session(self, session_token: Optional[str]) -> Optional[Session]:
        """Return the usable session for ``session_token`` or None.

        An expired but still active row is revoked here before returning None.
        """
        if not session_token:
            return None
        sess = self.store.get_session_by_token(session_token)
        if not sess:
            await self._drop_orphaned_cache_entry(session_token)
            return None
        if not sess.is_active:
            return None
        now = self._now()
        if sess.is_expired(now):
            await self._revoke(sess, reason="expired")
            return None
        user = await self.load_user(sess.user_id)
        if not user or not user.can_authenticate:
            return None
        self.store.touch_session(session_token, now)
        sess.last_used_at = now
        return sess

    async def refresh_access_token(self, refresh_token: str) -> RefreshResult:
        """Mint a new access token for the session behind ``refresh_token``.

        The refresh token is returned unchanged and ``expires_at`` stays put.
        """
        claims = self.issuer.verify_refresh_token(refresh_token)
        sess = self.store.get_session_by_refresh_token(refresh_token)
        if not sess or not sess.is_active or sess.user_id != claims.user_id:
            self.logger.warning("refresh_rejected", reason="session_inactive")
            raise SessionRevoked("session is no longer valid")
        now = self._now()
        if sess.is_expired(now):
            await self._revoke(sess, reason="expired")
            raise SessionExpired("session has expired")
        user = await self.load_user(sess.user_id)
        if user and user.deleted_at is not None:
            self.logger.warning("refresh_rejected", reason="account_deleted", user_id=sess.user_id)
            raise AccountDeleted("account has been deleted")
        if not user or not user.can_authenticate:
            self.logger.warning("refresh_rejected", reason="account_disabled", user_id=sess.user_id)
            raise AccountDisabled("account is disabled")

        access_token = self.issuer.generate_access_token(
            user.id, sess.session_token, email=user.email
        )
        self.store.touch_session(sess.session_token, now)
        self.logger.info(
            "token_refreshed", user_id=user.id, session=token_prefix(sess.session_token)
        )
        return RefreshResult(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=sess.expires_at,
        )

    async def remove_session(self, session_token: str) -> None:
        """Revoke one session. Unknown or already revoked tokens are a no-op."""
        sess = self.store.get_session_by_token(session_token)
        if not sess:
            await self._invalidate_cached(session_token, None)
            return
        await self._revoke(sess, reason="logout")

    async def remove_all_user_sessions(self, user_id: str) -> int:
        revoked = self.store.deactivate_user_sessions(user_id)
        if self.cache:
            try:
                await self.cache.invalidate_user_sessions(user_id, revoked)
            except Exception as exc:
                self.logger.warning(
                    "session_cache_invalidate_failed", user_id=user_id, error=str(exc)
                )
        self.logger.info("user_sessions_revoked", user_id=user_id, count=len(revoked))
        return len(revoked)

    async def cleanup_expired_sessions(self) -> int:
        expired = self.store.deactivate_expired_sessions(self._now())
        for session_token in expired:
            await self._invalidate_cached(session_token, None)
        self.logger.info("expired_sessions_swept", count=len(expired))
        return len(expired)

    def list_active_sessions(self, user_id: str) -> List[Session]:
        now = self._now()
        return [
            sess
            for sess in self.store.list_user_sessions(user_id, active_only=True)
            if not sess.is_expired(now)
        ]

    async def revoke_user_session(self, user_id: str, session_token: str) -> bool:
        """Revoke one of ``user_id``'s own sessions; foreign tokens count as missing."""
        sess = self.store.get_session_by_token(session_token)
        if not sess or sess.user_id != user_id or not sess.is_active:
            return False
        await self._revoke(sess, reason="user_revoked")
        return True

    async def load_user(self, user_id: str) -> Optional[User]:
        """Owner lookup for the auth path, served from the cache when warm.

        The store is read on a miss and the record is cached for
        ``user_cache_ttl_seconds``. Anything that changes the account must
        call ``forget_user``.
        """
        if self.cache:
            try:
                cached = await self.cache.get_cached_user(user_id)
            except Exception as exc:
                self.logger.warning("user_cache_read_failed", user_id=user_id, error=str(exc))
                cached = None
            if cached:
                try:
                    return User.from_dict(cached)
                except (KeyError, TypeError, ValueError):
                    self.logger.warning("user_cache_entry_invalid", user_id=user_id)
        user = self.store.get_user(user_id)
        if user and self.cache:
            try:
                await self.cache.cache_user(
                    user_id, user.to_dict(), self.settings.user_cache_ttl_seconds
                )
            except Exception as exc:
                self.logger.warning("user_cache_write_failed", user_id=user_id, error=str(exc))
        return user

    async def forget_user(self, user_id: str) -> None:
        if not self.cache:
            return
        try:
            await self.cache.invalidate_user(user_id)
        except Exception as exc:
            self.logger.warning("user_cache_invalidate_failed", user_id=user_id, error=str(exc))

    async def _revoke(self, sess: Session, *, reason: str) -> None:
        changed = self.store.deactivate_session(sess.session_token)
        await self._invalidate_cached(sess.session_token, sess.user_id)
        if changed:
            self.logger.info(
                "session_revoked",
                user_id=sess.user_id,
                session=token_prefix(sess.session_token),
                reason=reason,
            )

    async def _cache_session(self, sess: Session) -> None:
        if not self.cache:
            return
        try:
            await self.cache.cache_session(sess.session_token, sess.user_id, sess.expires_at)
        except Exception as exc:
            self.logger.warning(
                "session_cache_write_failed",
                session=token_prefix(sess.session_token),
                error=str(exc),
            )

    async def _invalidate_cached(self, session_token: str, user_id: Optional[str]) -> None:
        if not self.cache:
            return
        try:
            await self.cache.invalidate_session(session_token, user_id)
        except Exception as exc:
            self.logger.warning(
                "session_cache_invalidate_failed",
                session=token_prefix(session_token),
                error=str(exc),
            )

    async def _drop_orphaned_cache_entry(self, session_token: str) -> None:
        if not self.cache:
            return
        try:
            cached_user = await self.cache.get_session_user(session_token)
        except Exception as exc:
            self.logger.warning(
                "session_cache_read_failed",
                session=token_prefix(session_token),
                error=str(exc),
            )
            return
        if cached_user:
            self.logger.warning(
                "session_cache_orphan", session=token_prefix(session_token), user_id=cached_user
            )
            await self._invalidate_cached(session_token, cached_user)
