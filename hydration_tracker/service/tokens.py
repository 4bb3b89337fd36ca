from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import jwt

from hydration_tracker.config import Settings
from hydration_tracker.logging import get_logger
from hydration_tracker.service.errors import InvalidToken, TokenExpired, WrongTokenType

ACCESS = "access"
REFRESH = "refresh"
PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["exp", "iat", "sub", "jti", "type"]

logger = get_logger(__name__)


@dataclass
class TokenClaims:
    user_id: str
    type: str
    issued_at: datetime
    expires_at: datetime
    jti: str
    session_id: Optional[str] = None
    email: Optional[str] = None


class TokenIssuer:
    """Mint and verify the service's HS256 JWTs.

    Four token kinds share one claim layout and differ by ``type`` and TTL.
    Refresh tokens may use their own signing key. Verification picks the key
    from the claimed type, checks signature, issuer, audience and expiry, then
    requires the verified type to match the one the caller asked for. PyJWT
    errors never leave this class.
    """

    def __init__(
        self,
        secret: str,
        *,
        refresh_secret: Optional[str] = None,
        issuer: str = "hydration-tracker",
        audience: str = "hydration-tracker-users",
        access_ttl_minutes: int = 24 * 60,
        refresh_ttl_minutes: int = 30 * 24 * 60,
        password_reset_ttl_minutes: int = 60,
        email_verification_ttl_minutes: int = 24 * 60,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("a signing secret is required")
        self.issuer = issuer
        self.audience = audience
        self._keys = {
            ACCESS: secret,
            REFRESH: refresh_secret or secret,
            PASSWORD_RESET: secret,
            EMAIL_VERIFICATION: secret,
        }
        self._ttls = {
            ACCESS: timedelta(minutes=access_ttl_minutes),
            REFRESH: timedelta(minutes=refresh_ttl_minutes),
            PASSWORD_RESET: timedelta(minutes=password_reset_ttl_minutes),
            EMAIL_VERIFICATION: timedelta(minutes=email_verification_ttl_minutes),
        }
        self._now = now or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls, settings: Settings, *, now: Optional[Callable[[], datetime]] = None
    ) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_ttl_minutes=settings.refresh_token_ttl_minutes,
            password_reset_ttl_minutes=settings.password_reset_ttl_minutes,
            email_verification_ttl_minutes=settings.email_verification_ttl_minutes,
            now=now,
        )

    def ttl(self, token_type: str) -> timedelta:
        return self._ttls[token_type]

    # minting
    def generate_access_token(
        self, user_id: str, session_id: str, *, email: Optional[str] = None
    ) -> str:
        return self._encode(ACCESS, user_id, sessionId=session_id, email=email)

    def generate_refresh_token(self, user_id: str, session_id: str) -> str:
        return self._encode(REFRESH, user_id, sessionId=session_id)

    def generate_password_reset_token(self, user_id: str, email: str) -> str:
        return self._encode(PASSWORD_RESET, user_id, email=email)

    def generate_email_verification_token(self, user_id: str, email: str) -> str:
        return self._encode(EMAIL_VERIFICATION, user_id, email=email)

    # verification
    def verify_access_token(self, token: str) -> TokenClaims:
        return self._verify(token, ACCESS)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._verify(token, REFRESH)

    def verify_password_reset_token(self, token: str) -> TokenClaims:
        return self._verify(token, PASSWORD_RESET)

    def verify_email_verification_token(self, token: str) -> TokenClaims:
        return self._verify(token, EMAIL_VERIFICATION)

    def _encode(self, token_type: str, user_id: str, **extra: Any) -> str:
        issued = self._now()
        payload: dict[str, Any] = {
            "sub": user_id,
            "userId": user_id,
            "type": token_type,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(issued.timestamp()),
            "exp": int((issued + self._ttls[token_type]).timestamp()),
            "jti": uuid.uuid4().hex,
        }
        payload.update({k: v for k, v in extra.items() if v is not None})
        return jwt.encode(payload, self._keys[token_type], algorithm=_ALGORITHM)

    def _verify(self, token: str, expected_type: str) -> TokenClaims:
        if not token:
            raise InvalidToken("token is required")
        try:
            unverified = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError as exc:
            raise InvalidToken("malformed token") from exc
        claimed_type = unverified.get("type")
        key = self._keys.get(claimed_type) if isinstance(claimed_type, str) else None
        if key is None:
            raise InvalidToken("unknown token type")

        try:
            # exp is checked below against the issuer's own clock
            payload = jwt.decode(
                token,
                key,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "require": _REQUIRED_CLAIMS,
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidToken("token verification failed") from exc

        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        if expires_at <= self._now():
            raise TokenExpired("token expired")
        if payload["type"] != expected_type:
            logger.warning(
                "token_type_mismatch", expected=expected_type, got=payload["type"]
            )
            raise WrongTokenType(f"expected a {expected_type} token")

        return TokenClaims(
            user_id=str(payload["sub"]),
            type=payload["type"],
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=expires_at,
            jti=str(payload["jti"]),
            session_id=payload.get("sessionId"),
            email=payload.get("email"),
        )
