from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
# Identity of the authenticated caller, set once authenticate() succeeds
auth_context_var: ContextVar[Optional[Dict[str, str]]] = ContextVar(
    "auth_context", default=None
)

_REDACTED_KEYS = ("password", "secret", "token", "api_key", "authorization", "email")


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_auth_context(user_id: str, session_id: str) -> None:
    """Tag every later log entry of this request with the caller's ids."""
    auth_context_var.set({"user_id": user_id, "session_id": session_id})


@contextmanager
def request_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Scope a correlation id and auth context to one request.

    Both are restored on exit, so ids never leak into the next request handled
    by the same task or thread.
    """
    cid_token = correlation_id_var.set(correlation_id or str(uuid.uuid4()))
    auth_token = auth_context_var.set(None)
    try:
        yield correlation_id_var.get()
    finally:
        auth_context_var.reset(auth_token)
        correlation_id_var.reset(cid_token)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _add_auth_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Fill in user_id/session_id from the request, never overriding explicit values."""
    bound = auth_context_var.get()
    if bound:
        for key, value in bound.items():
            event_dict.setdefault(key, value)
    return event_dict


def _mask(value: str) -> str:
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, tokens and email addresses.

    Short values are left alone; the two leading and trailing characters of
    longer ones survive so entries can still be correlated.
    """
    for key, value in event_dict.items():
        if key == "event" or not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in key.lower() for marker in _REDACTED_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _add_auth_context,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
