"""structlog setup shared by every PastCare module.

Configured once on import. Each record carries the level, an ISO timestamp
and the correlation id of the login, refresh or maintenance pass that
produced it. Credentials and contact details are masked before rendering.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional

import structlog

_correlation_id: ContextVar[Optional[str]] = ContextVar("pastcare_correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    _correlation_id.set(cid)
    return cid


def _add_correlation_id(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = _correlation_id.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_secret(_value: str) -> str:
    return "***"


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _mask_secret(value)
    return f"{local[:1]}***@{domain}"


def _mask_phone(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    if len(digits) <= 3:
        return "***"
    return f"***{digits[-3:]}"


# key fragment -> masking rule; first match wins
_REDACTIONS: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("password", _mask_secret),
    ("secret", _mask_secret),
    ("token", _mask_secret),
    ("authorization", _mask_secret),
    ("email", _mask_email),
    ("phone", _mask_phone),
)


def _redact_pii(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if key == "event" or not isinstance(value, str) or not value:
            continue
        lowered = key.lower()
        for fragment, mask in _REDACTIONS:
            if fragment in lowered:
                event_dict[key] = mask(value)
                break
    return event_dict


def _renderer(json_output: bool, dev_mode: bool) -> list:
    if dev_mode or not json_output:
        return [structlog.dev.ConsoleRenderer(colors=dev_mode)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def _level_number(level: str) -> int:
    number = logging.getLevelName(level.upper())
    return number if isinstance(number, int) else logging.INFO


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_correlation_id,
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            *_renderer(json_output, dev_mode),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level_number(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
