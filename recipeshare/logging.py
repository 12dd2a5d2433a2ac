from __future__ import annotations

import logging
import os
import re
import threading
import uuid
from collections import deque
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import structlog

# Per-request correlation id, mirrored in the X-Request-ID header
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` to the current context, minting one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


_SECRET_KEYS = {"password", "secret", "token", "authorization", "cookie", "session_id"}
# OTP values are short, so partial masking would reveal most of them
_FULLY_REDACTED_KEYS = {"code", "otp", "demo_otp", "otp_code"}
_EMAIL_RE = re.compile(r"^([^@]{1,2})[^@]*(@.+)$")


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials, OTP codes and email addresses."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        value = event_dict[key]
        if lower_key in _FULLY_REDACTED_KEYS:
            event_dict[key] = "[redacted]"
        elif any(secret in lower_key for secret in _SECRET_KEYS):
            if isinstance(value, str) and len(value) > 4:
                # Keep first/last 2 chars for debugging
                event_dict[key] = value[:2] + "***" + value[-2:]
        elif "email" in lower_key and isinstance(value, str):
            event_dict[key] = _EMAIL_RE.sub(r"\1***\2", value)
    return event_dict


_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def configure_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """Install the structlog pipeline.

    Called once at import with LOG_LEVEL and LOG_JSON from the environment.
    Console rendering replaces JSON when LOG_JSON is off or LOG_DEV_MODE is on.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false")

    renderer = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if json_output
        else [structlog.dev.ConsoleRenderer(colors=True)]
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_correlation_id,
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            *renderer,
        ],
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


# Audit events that describe a rejected or suspicious request
_WARNING_SECURITY_EVENTS = frozenset({
    "login_failed",
    "otp_failed",
    "otp_locked_out",
    "unauthorized_access_attempt",
    "forbidden_access_attempt",
    "csrf_rejected",
    "rate_limited",
})


# Account lifecycle events; anything else falls back to the log level
_SECURITY_EVENT_TYPES = {
    "user_registered": "auth",
    "login_success": "auth",
    "otp_sent": "auth",
    "otp_resent": "auth",
    "otp_verified": "auth",
    "logout": "auth",
    "afk_timeout": "auth",
    "user_deleted": "admin",
}

SECURITY_LOG_CAPACITY = 100

_security_log: Deque[Dict[str, Any]] = deque(maxlen=SECURITY_LOG_CAPACITY)
_security_log_lock = threading.Lock()


def _event_type(event: str, level: str) -> str:
    if event in _SECURITY_EVENT_TYPES:
        return _SECURITY_EVENT_TYPES[event]
    return "security" if level == "warning" else "system"


def _plain(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(item) for item in value]
    return str(value)


def _remember(event: str, level: str, fields: Dict[str, Any]) -> None:
    details = _redact_pii(None, level, {k: _plain(v) for k, v in fields.items()})
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
        "type": _event_type(event, level),
        "correlation_id": correlation_id_var.get(),
        "details": details,
    }
    with _security_log_lock:
        _security_log.append(entry)


def recent_security_events(limit: int = SECURITY_LOG_CAPACITY) -> List[Dict[str, Any]]:
    """Return up to ``limit`` retained audit records, newest first.

    Only the last ``SECURITY_LOG_CAPACITY`` records of this process are kept;
    the full trail lives in the log stream.
    """
    with _security_log_lock:
        entries = list(_security_log)
    entries.reverse()
    return [dict(entry, details=dict(entry["details"])) for entry in entries[: max(0, limit)]]


def clear_security_events() -> None:
    with _security_log_lock:
        _security_log.clear()


def security_event(event: str, logger: Optional[Any] = None, **fields: Any) -> None:
    """Append an audit record for an authentication or authorization decision."""
    log = logger or get_logger("security")
    level = "warning" if event in _WARNING_SECURITY_EVENTS else "info"
    if level == "warning":
        log.warning(event, security_event=True, **fields)
    else:
        log.info(event, security_event=True, **fields)
    _remember(event, level, fields)
