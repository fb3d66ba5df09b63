"""structlog setup for the panel API.

Every event carries the request's correlation id, taken from ``X-Request-ID``
by the HTTP middleware. Credentials never reach the sink: secret-like fields
are replaced outright and addresses are masked down to their domain.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_SECRET_FIELDS = ("password", "secret", "token", "authorization", "cookie", "otp")
_ADDRESS_FIELDS = ("email", "address")
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    _request_id.set(cid)
    return cid


def _mask_address(value: str) -> str:
    _, sep, domain = value.partition("@")
    return f"***@{domain}" if sep else "***"


def _bind_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = _request_id.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if key == "event" or not isinstance(value, str) or not value:
            continue
        lowered = key.lower()
        if any(field in lowered for field in _SECRET_FIELDS):
            event_dict[key] = "[redacted]"
        elif any(field in lowered for field in _ADDRESS_FIELDS):
            event_dict[key] = _mask_address(value)
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Route structlog events to stdout as JSON, or as console lines for local runs."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _bind_request_id,
        _scrub_credentials,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    and os.getenv("LOG_DEV_MODE", "false").lower() not in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Bearer values, compact JWS strings and key=value credentials
_CREDENTIAL_PATTERNS = [
    re.compile(r"(?i)\b(bearer|basic)\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"\beyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"),
    re.compile(r"(?i)\b(password|secret|token|key)\s*[:=]\s*\S+"),
]


def sanitize_error_message(error: str, *, limit: int = 500) -> str:
    """Strip credentials from an exception message before it is logged."""
    if not isinstance(error, str) or not error:
        return "unknown error"
    for pattern in _CREDENTIAL_PATTERNS:
        error = pattern.sub("[redacted]", error)
    return error if len(error) <= limit else error[: limit - 3] + "..."
