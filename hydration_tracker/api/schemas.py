from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "INVALID_CREDENTIALS",
    "MISSING_TOKEN",
    "INVALID_TOKEN",
    "TOKEN_EXPIRED",
    "WRONG_TOKEN_TYPE",
    "INVALID_SESSION",
    "ACCOUNT_DISABLED",
    "UNAUTHORIZED",
    "NOT_FOUND",
    "USER_ALREADY_EXISTS",
    "INTERNAL_ERROR",
})

# deviceInfo is free-form client metadata; keep it small and flat
MAX_DEVICE_INFO_KEYS = 32
MAX_DEVICE_INFO_VALUE_LENGTH = 256


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    data: Optional[Any] = None

    @field_validator("error")
    @classmethod
    def _validate_error_code(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ERROR_CODES:
            raise ValueError(f"Invalid error code '{value}'")
        return value


class _CamelModel(BaseModel):
    """Accepts camelCase field names from mobile clients as well as snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,20}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not (
        re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)
    ):
        raise ValueError(
            "password must contain a lowercase letter, an uppercase letter and a digit"
        )
    return value


def _validate_device_info(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if len(value) > MAX_DEVICE_INFO_KEYS:
        raise ValueError(f"deviceInfo may have at most {MAX_DEVICE_INFO_KEYS} keys")
    for key, item in value.items():
        if isinstance(item, (dict, list)):
            raise ValueError(f"deviceInfo.{key} must be a scalar")
        if isinstance(item, str) and len(item) > MAX_DEVICE_INFO_VALUE_LENGTH:
            raise ValueError(f"deviceInfo.{key} is too long")
    return value


class RegisterRequest(_CamelModel):
    email: str
    username: str
    password: str
    full_name: Optional[str] = Field(default=None, max_length=50)
    device_info: Optional[Dict[str, Any]] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        if not _USERNAME_PATTERN.match(value):
            raise ValueError(
                "username must be 3-20 characters of letters, digits and underscores"
            )
        return value

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("device_info")
    @classmethod
    def _check_device_info(cls, value):
        return _validate_device_info(value)


class LoginRequest(_CamelModel):
    login: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False
    device_info: Optional[Dict[str, Any]] = None

    @field_validator("device_info")
    @classmethod
    def _check_device_info(cls, value):
        return _validate_device_info(value)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(_CamelModel):
    logout_all_devices: bool = False


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ForgotPasswordRequest(_CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(_CamelModel):
    token: str = Field(..., min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class VerifyEmailRequest(_CamelModel):
    token: str = Field(..., min_length=1)


class DeleteAccountRequest(_CamelModel):
    password: str = Field(..., min_length=1, max_length=128)


class UserOut(_CamelModel):
    id: str
    email: str
    username: Optional[str] = None
    full_name: Optional[str] = None
    email_verified: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None


class SessionOut(_CamelModel):
    session_token: str
    device_info: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    current: bool = False
