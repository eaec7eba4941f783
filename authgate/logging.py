from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

CORRELATION_KEY = "correlation_id"

# Substrings that mark a value as a credential or an address
_SENSITIVE_PARTS = ("password", "secret", "token", "authorization", "email")
# Keys that contain one of those substrings but only ever hold labels or ids
_SAFE_KEYS = frozenset({"token_type", "error_type"})

_TRUTHY = {"1", "true", "yes", "on"}
_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def get_correlation_id() -> Optional[str]:
    """Request id bound by the HTTP middleware, if any."""
    return structlog.contextvars.get_contextvars().get(CORRELATION_KEY)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id (new uuid4 when none is given) to every later log line."""
    value = correlation_id or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(**{CORRELATION_KEY: value})
    return value


def _is_sensitive(key: str) -> bool:
    key = key.lower()
    if key in _SAFE_KEYS or key.endswith("token_id"):
        return False
    return any(part in key for part in _SENSITIVE_PARTS)


def _mask(value: str) -> str:
    return f"{value[:2]}***{value[-2:]}" if len(value) > 4 else "***"


def mask_sensitive_values(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor: hide raw tokens, secrets and addresses."""
    for key, value in event_dict.items():
        if isinstance(value, str) and _is_sensitive(key):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, pretty: bool = False
) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        mask_sensitive_values,
        structlog.processors.StackInfoRenderer(),
    ]
    if pretty or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=pretty))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    pretty=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
