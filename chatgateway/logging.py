from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

_request_scope: ContextVar[Optional[str]] = ContextVar("gateway_request_id", default=None)

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_MASKED_KEY_FRAGMENTS = ("password", "secret", "token", "api_key", "authorization", "email")


def get_correlation_id() -> Optional[str]:
    return _request_scope.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for log lines emitted while serving this request."""
    value = correlation_id or str(uuid.uuid4())
    _request_scope.set(value)
    return value


def _stamp_request_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    request_id = _request_scope.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def _is_counter(key: str) -> bool:
    # prompt_tokens, total_tokens and friends are numbers, not credentials
    return key.endswith("_tokens") or key == "tokens_used"


def _redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if _is_counter(lowered) or not isinstance(value, str) or len(value) <= 4:
            continue
        if any(fragment in lowered for fragment in _MASKED_KEY_FRAGMENTS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _renderer(json_output: bool, development_mode: bool) -> list:
    if json_output and not development_mode:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the gateway's structlog pipeline.

    JSON lines are the default; LOG_DEV_MODE or LOG_JSON=false switches to the
    coloured console renderer.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _stamp_request_id,
            _redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *_renderer(json_output, development_mode),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_flag("LOG_JSON", "true"),
    development_mode=_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_SCRUBBERS = tuple(
    re.compile(pattern)
    for pattern in (
        # SQL fragments from database errors
        r"(?i)(select|insert|update|delete)\s+.{0,50}\s+(from|into|set|where)\s+.{0,50}",
        r"(?i)database\s+error",
        # filesystem paths
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
        # credentials, including Gemini's ?key= query parameter
        r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s,\"]+",
        r"(?i)key=[A-Za-z0-9_\-]{8,}",
        r"(?i)sk-[A-Za-z0-9_\-]{8,}",
        r"(?i)traceback\s*\(most recent call last\)",
    )
)

_MAX_CLIENT_ERROR_CHARS = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Make an upstream or storage error safe to show a client.

    Provider bodies can echo the request URL, and Gemini carries its API key
    in the query string, so every message bound for a client passes through
    here first. Output is capped at 500 characters.
    """
    if not isinstance(error, str) or not error:
        return "An error occurred"
    cleaned = error
    for scrubber in _SCRUBBERS:
        cleaned = scrubber.sub(replacement, cleaned)
    if len(cleaned) > _MAX_CLIENT_ERROR_CHARS:
        cleaned = cleaned[: _MAX_CLIENT_ERROR_CHARS - 3] + "..."
    return cleaned
