from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional

import structlog

# Request id of the HTTP request being served; also sent upstream as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Substrings of field names whose values never reach a log line intact
_SECRET_FIELDS = ("password", "secret", "token", "cookie", "authorization", "verifier")
_EMAIL_FIELDS = ("email",)


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials, cookies, tokens and email addresses."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _EMAIL_FIELDS):
            event_dict[key] = _mask_email(value)
        elif any(marker in lowered for marker in _SECRET_FIELDS):
            event_dict[key] = "***" if len(value) <= 8 else f"{value[:2]}***{value[-2:]}"
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
    extra_processors: Iterable[Any] = (),
) -> None:
    """(Re)configure structlog for the process.

    JSON lines are the default; ``development_mode`` switches to the
    colored console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        *extra_processors,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

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
    json_output=_env_flag("LOG_JSON", True),
    development_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Login monitoring events; anything else passed to log_auth_event is suspicious
AUTH_EVENT_TYPES = frozenset(
    {
        "login_attempt",
        "login_success",
        "login_failure",
        "login_rate_limited",
        "validation_error",
        "security_violation",
        "session_created",
        "session_expired",
        "logout",
    }
)
_WARNING_EVENTS = frozenset({"login_failure", "login_rate_limited", "security_violation"})


def log_auth_event(event: str, logger: Optional[Any] = None, **fields: Any) -> None:
    """Record an authentication monitoring event.

    Failures, rate limiting and security violations log at warning level;
    everything else at info. Unknown event names are logged as
    ``security_violation`` with the original name attached so typos are
    visible instead of dropped.
    """
    log = logger or get_logger("auth.events")
    if event not in AUTH_EVENT_TYPES:
        fields["unknown_event"] = event
        event = "security_violation"
    fields.setdefault("auth_event", True)
    if event in _WARNING_EVENTS:
        log.warning(event, **fields)
    else:
        log.info(event, **fields)


_SENSITIVE_MESSAGE_PATTERNS = [
    re.compile(pattern)
    for pattern in (
        # Upstream URLs give away internal hostnames
        r"(?i)https?://[^\s'\"]+",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
        r"(?i)[a-z]:\\[^\s]+",
        r"(?i)(password|secret|token|cookie|api.?key)\s*[:=]\s*[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]

MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip upstream URLs, paths, credentials and traces from an API error message."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_MESSAGE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > MAX_ERROR_MESSAGE_LENGTH:
        result = result[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return result
