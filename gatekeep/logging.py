from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, populated from X-Request-ID by the app middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-like and PII values before they reach the renderer."""
    pii_keys = {"password", "secret", "token", "api_key", "authorization", "email", "ssn"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(pii in lower_key for pii in pii_keys):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # keep first/last 2 chars for debugging
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
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
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


# Log-injection and secret-leak scrubbing for values that end up in audit rows
# and log lines. Applied to user-controlled strings (user agents, error text).
_NEWLINES = re.compile(r"[\r\n]+")
_ANSI_ESCAPES = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

_SECRET_PATTERNS = [
    re.compile(r"(?i)(password|passwd|pwd)\s*[:=]\s*\S+"),
    re.compile(r"(?i)(token|access_token|refresh_token)\s*[:=]\s*\S+"),
    re.compile(r"(?i)authorization\s*[:=]\s*\S+(\s+\S+)?"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9\-._~+/]+=*"),
    re.compile(r"(?i)(api[_-]?key|apikey)\s*[:=]\s*\S+"),
    re.compile(r"(?i)secret\s*[:=]\s*\S+"),
    re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b"),
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
]

_SENSITIVE_FIELDS = frozenset({
    "password", "newpassword", "oldpassword", "currentpassword",
    "token", "accesstoken", "refreshtoken", "csrftoken", "sessiontoken",
    "secret", "apikey", "api_key", "authorization", "creditcard", "cvv", "ssn",
})

REDACTED = "[REDACTED]"


def sanitize_message(message: Any, max_length: int = 1000) -> str:
    """Neutralise a value for a single log line.

    Collapses CR/LF into ``" | "`` so a user agent cannot forge log entries,
    drops ANSI escapes and control bytes, redacts secret-looking fragments and
    truncates to ``max_length`` characters.
    """
    if message is None:
        return ""
    text = str(message)
    text = _NEWLINES.sub(" | ", text)
    text = _ANSI_ESCAPES.sub("", text)
    text = _CONTROL_CHARS.sub("", text)
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(REDACTED, text)
    if len(text) > max_length:
        text = text[:max_length] + "... [truncated]"
    return text


def _is_sensitive_field(key: str) -> bool:
    lowered = key.lower().replace("-", "")
    return any(field in lowered for field in _SENSITIVE_FIELDS)


def sanitize_object(data: Any, max_depth: int = 5, *, _depth: int = 0) -> Any:
    """Recursively mask sensitive keys and scrub strings inside ``data``."""
    if _depth > max_depth:
        return "[Max depth reached]"
    if data is None or isinstance(data, (bool, int, float)):
        return data
    if isinstance(data, str):
        return sanitize_message(data, max_length=500)
    if isinstance(data, dict):
        result: Dict[str, Any] = {}
        for key, value in data.items():
            key_str = str(key)
            if _is_sensitive_field(key_str):
                result[key_str] = REDACTED
            else:
                result[key_str] = sanitize_object(value, max_depth, _depth=_depth + 1)
        return result
    if isinstance(data, (list, tuple, set)):
        return [sanitize_object(item, max_depth, _depth=_depth + 1) for item in data]
    return sanitize_message(data, max_length=500)
