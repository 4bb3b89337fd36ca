from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from hydration_tracker.config import Settings
from hydration_tracker.logging import get_logger
from hydration_tracker.service.email import EmailService
from hydration_tracker.service.errors import (
    AccountDisabled,
    ConflictError,
    InvalidCredentials,
    InvalidToken,
    MissingToken,
    NotFoundError,
    SessionRevoked,
    ValidationError,
)
from hydration_tracker.service.sessions import (
    RefreshResult,
    SessionLifecycleManager,
    SessionStore,
    TokenBundle,
)
from hydration_tracker.service.tokens import TokenClaims, TokenIssuer
from hydration_tracker.storage.errors import ConstraintViolation
from hydration_tracker.storage.models import RequestContext, Session, User

logger = get_logger(__name__)


class AuthStore(SessionStore, Protocol):
    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        full_name: Optional[str] = None,
        *,
        is_active: bool = True,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def record_login(self, user_id: str, when: datetime) -> None: ...

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]: ...

    def mark_user_deleted(self, user_id: str, when: datetime) -> bool: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthContext:
    user: User
    session: Session
    claims: TokenClaims

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def session_token(self) -> str:
        return self.session.session_token


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Account flows on top of the session lifecycle.

    Every credential change (password change, password reset, account
    deletion) revokes all of the user's sessions.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionLifecycleManager,
        issuer: TokenIssuer,
        email: EmailService,
        settings: Settings,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.sessions = sessions
        self.issuer = issuer
        self.email = email
        self.settings = settings
        self._clock = now or (lambda: datetime.now(timezone.utc))
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def register(
        self,
        email: str,
        password: str,
        username: Optional[str] = None,
        full_name: Optional[str] = None,
        *,
        device_info: Optional[Dict] = None,
        request_context: Optional[RequestContext] = None,
    ) -> tuple[User, TokenBundle]:
        if not self.settings.allow_signup:
            raise ValidationError("registration is disabled", status_code=403)
        try:
            user = self.store.create_user(
                normalize_email(email), username=username, full_name=full_name
            )
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", field=exc.field)
            raise ConflictError(
                "an account with these details already exists",
                detail={"field": exc.field} if exc.field else None,
            ) from exc
        self.save_password(user.id, password)
        tokens = await self.sessions.create_session(user, device_info, request_context)
        self.logger.info("user_registered", user_id=user.id)
        self._send_verification(user)
        self.email.send_welcome(user.email, user.full_name or user.username)
        return user, tokens

    async def login(
        self,
        login: str,
        password: str,
        *,
        remember_me: bool = False,
        device_info: Optional[Dict] = None,
        request_context: Optional[RequestContext] = None,
    ) -> tuple[User, TokenBundle]:
        user = self.store.get_user_by_email(normalize_email(login))
        # Unknown account and wrong password fail identically
        if not user or not self.verify_password(user.id, password):
            self.logger.warning("login_failed")
            raise InvalidCredentials("invalid email or password")
        if not user.can_authenticate:
            self.logger.warning("login_rejected_disabled", user_id=user.id)
            raise AccountDisabled("account is disabled")
        ttl = (
            self.settings.remember_me_session_ttl_minutes
            if remember_me
            else self.settings.session_ttl_minutes
        )
        tokens = await self.sessions.create_session(
            user, device_info, request_context, ttl_minutes=ttl
        )
        now = self._now()
        self.store.record_login(user.id, now)
        await self.sessions.forget_user(user.id)
        user.last_login_at = now
        self.logger.info("user_logged_in", user_id=user.id, remember_me=remember_me)
        return user, tokens

    async def refresh(self, refresh_token: str) -> RefreshResult:
        return await self.sessions.refresh_access_token(refresh_token)

    async def logout(self, ctx: AuthContext, *, all_devices: bool = False) -> int:
        if all_devices:
            return await self.sessions.remove_all_user_sessions(ctx.user_id)
        await self.sessions.remove_session(ctx.session_token)
        return 1

    def list_sessions(self, ctx: AuthContext) -> List[Session]:
        return self.sessions.list_active_sessions(ctx.user_id)

    async def revoke_session(self, ctx: AuthContext, session_token: str) -> None:
        if not await self.sessions.revoke_user_session(ctx.user_id, session_token):
            raise NotFoundError("session not found")

    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> int:
        if not self.verify_password(ctx.user_id, current_password):
            raise InvalidCredentials("current password is incorrect")
        self.save_password(ctx.user_id, new_password)
        revoked = await self.sessions.remove_all_user_sessions(ctx.user_id)
        self.logger.info("password_changed", user_id=ctx.user_id, sessions_revoked=revoked)
        self.email.send_security_alert(ctx.user.email, "Your password was changed.")
        return revoked

    async def request_password_reset(self, email: str) -> None:
        """Mail a reset link when the account exists; callers always report success."""
        user = self.store.get_user_by_email(normalize_email(email))
        if not user or not user.can_authenticate:
            self.logger.info("password_reset_requested", known=False)
            return
        token = self.issuer.generate_password_reset_token(user.id, user.email)
        self.email.send_password_reset(
            user.email, token, ttl_minutes=self.settings.password_reset_ttl_minutes
        )
        self.logger.info("password_reset_requested", known=True, user_id=user.id)

    async def complete_password_reset(self, token: str, new_password: str) -> int:
        claims = self.issuer.verify_password_reset_token(token)
        user = self._user_for_claims(claims)
        self.save_password(user.id, new_password)
        revoked = await self.sessions.remove_all_user_sessions(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        self.email.send_security_alert(user.email, "Your password was reset.")
        return revoked

    async def request_email_verification(self, ctx: AuthContext) -> bool:
        """Send a verification link; returns False when already verified."""
        if ctx.user.email_verified:
            return False
        self._send_verification(ctx.user)
        return True

    async def complete_email_verification(self, token: str) -> User:
        claims = self.issuer.verify_email_verification_token(token)
        user = self._user_for_claims(claims)
        verified = self.store.mark_email_verified(user.id) or user
        await self.sessions.forget_user(user.id)
        self.logger.info("email_verified", user_id=user.id)
        return verified

    async def delete_account(self, ctx: AuthContext, password: str) -> int:
        if not self.verify_password(ctx.user_id, password):
            raise InvalidCredentials("password is incorrect")
        revoked = await self.sessions.remove_all_user_sessions(ctx.user_id)
        self.store.mark_user_deleted(ctx.user_id, self._now())
        await self.sessions.forget_user(ctx.user_id)
        self.logger.info("account_deleted", user_id=ctx.user_id, sessions_revoked=revoked)
        return revoked

    async def set_account_active(self, user_id: str, active: bool) -> User:
        """Enable or disable an account; disabling ends every session it owns."""
        user = self.store.set_user_active(user_id, active)
        if user is None:
            raise NotFoundError("user not found")
        await self.sessions.forget_user(user_id)
        revoked = 0 if active else await self.sessions.remove_all_user_sessions(user_id)
        self.logger.info(
            "account_status_changed", user_id=user_id, active=active, sessions_revoked=revoked
        )
        return user

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a bearer header to the caller's user and session.

        Token problems keep their own error codes so clients can tell an
        expired access token from a dead session. Revoked, expired and unknown
        sessions are all reported as ``SessionRevoked``.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise MissingToken("access token is required")
        claims = self.issuer.verify_access_token(token)
        sess = await self.sessions.validate_session(claims.session_id)
        if not sess or sess.user_id != claims.user_id:
            raise SessionRevoked("session is no longer valid")
        user = await self.sessions.load_user(sess.user_id)
        if not user or not user.can_authenticate:
            raise SessionRevoked("session is no longer valid")
        return AuthContext(user=user, session=sess, claims=claims)

    def _user_for_claims(self, claims: TokenClaims) -> User:
        user = self.store.get_user(claims.user_id)
        if not user or not user.can_authenticate or user.email != claims.email:
            # Token outlived the account or the address it was issued for
            raise InvalidToken("token no longer matches an account")
        return user

    def _send_verification(self, user: User) -> None:
        token = self.issuer.generate_email_verification_token(user.id, user.email)
        self.email.send_email_verification(
            user.email, token, ttl_minutes=self.settings.email_verification_ttl_minutes
        )
        self.logger.info("email_verification_requested", user_id=user.id)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
