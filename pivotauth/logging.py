from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# One id per auth call so a login and its lockout/MFA follow-ups can be joined
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys that carry credentials or account identifiers
_PII_KEYS = {"password", "secret", "token", "code", "authorization", "email", "identifier"}
_SAFE_SUFFIXES = ("_digest", "_hash_prefix")
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def identifier_digest(identifier: str) -> str:
    """Short sha256 handle for an identifier.

    Lookups are case-blind, so the digest is too: two spellings of the same
    address land on the same log key.
    """
    normalized = identifier.strip().lower()
    return hashlib.sha256(normalized.encode()).hexdigest()[:16]


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    if lowered == "event" or lowered.endswith(_SAFE_SUFFIXES):
        return False
    return any(marker in lowered for marker in _PII_KEYS)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask string values under credential or identifier keys.

    Keys ending in ``_digest`` or ``_hash_prefix`` are already one-way and
    pass through untouched.
    """
    for key, value in list(event_dict.items()):
        if isinstance(value, str) and _is_sensitive(key):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _renderers(pretty: bool) -> List[Any]:
    if pretty:
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(level: Optional[str] = None, pretty: Optional[bool] = None) -> None:
    """(Re)configure structlog for the auth engine.

    Arguments left as None fall back to LOG_LEVEL and LOG_JSON/LOG_DEV_MODE.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if pretty is None:
        pretty = _env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true")
    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_correlation_id,
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            *_renderers(pretty),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
