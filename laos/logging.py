from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed back in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_REDACTED_KEYS = {"password", "secret", "token", "authorization", "email"}

# Three base64url segments starting with an encoded JSON object ("{" -> "eyJ")
_JWT_PATTERN = re.compile(r"eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate the correlation id for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(*, path: str, method: str) -> None:
    """Start a fresh per-request log context."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(path=path, method=method)


def bind_account(account_id: Optional[int]) -> None:
    """Attach the authenticated account to every later log line of this request."""
    if account_id is not None:
        structlog.contextvars.bind_contextvars(account_id=account_id)


def mask_token(value: str) -> str:
    return _JWT_PATTERN.sub(lambda m: "jwt:***" + m.group(0)[-4:], value)


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
    """Mask credentials, addresses and stray bearer tokens in log kwargs."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        value = event_dict[key]
        if not isinstance(value, str):
            continue
        if any(pii in key.lower() for pii in _REDACTED_KEYS):
            if len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
        elif "eyJ" in value:
            # e.g. an exception message that echoed a header value
            event_dict[key] = mask_token(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors and output format.

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
        renderer = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


# Logging is configured before settings exist, so it reads the environment directly
_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
