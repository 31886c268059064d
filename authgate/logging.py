from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Request id bound by the HTTP middleware; RPC frames get a fresh one each
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_SECRET_KEYS = ("password", "secret", "token", "authorization", "cookie")
_PII_KEYS = ("email", "login", "client_ip", "client_addr")
_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a new uuid4) to the current context and return it."""
    bound = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(bound)
    return bound


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    bound = correlation_id_var.get()
    if bound:
        event_dict.setdefault("correlation_id", bound)
    return event_dict


def _mask(value: str) -> str:
    # first/last 2 chars survive so operators can still correlate lines
    return value[:2] + "***" + value[-2:] if len(value) > 4 else value


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks credentials entirely and PII partially."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = "[REDACTED]"
        elif any(marker in lowered for marker in _PII_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install the structlog pipeline.

    Events are rendered as one JSON object per line unless ``json_output`` is
    false, in which case the colourised console renderer is used.
    """
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

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
    json_output=_env_flag("LOG_JSON", True) and not _env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
