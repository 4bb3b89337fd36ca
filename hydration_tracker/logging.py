from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation ID, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys whose string values get masked
_SENSITIVE_KEYS = ("password", "secret", "token", "authorization", "email")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a request's log context: fresh contextvars plus a correlation ID."""
    structlog.contextvars.clear_contextvars()
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_auth_context(user_id: str, session_token: Optional[str]) -> None:
    """Attach the caller's identity to every log line for the rest of the request."""
    structlog.contextvars.bind_contextvars(
        user_id=user_id, session=token_prefix(session_token)
    )


def token_prefix(token: Optional[str], length: int = 8) -> Optional[str]:
    """Short, non-secret handle for a token in log fields."""
    if not token:
        return None
    return token[:length]


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and addresses, keeping two characters at each end."""
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in key.lower() for marker in _SENSITIVE_KEYS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline; arguments default to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", False)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _mask_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
