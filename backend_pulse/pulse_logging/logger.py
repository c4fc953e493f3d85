"""
Structured logging for the HTTP service and for uvicorn underneath it.

Our own events go through structlog; uvicorn's stdlib loggers ("uvicorn",
"uvicorn.error", "uvicorn.asgi") are given a ProcessorFormatter so their
lines come out in the same JSON shape: timestamp, level, logger, event_type.

backend_pulse.config imports resolve_log_level from here, so this module
must not import from backend_pulse.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

# uvicorn's level names; aliases accepted from LOG_LEVEL map onto them
LEVEL_NAMES = ("critical", "error", "warning", "info", "debug", "trace")
_LEVEL_ALIASES = {"warn": "warning", "fatal": "critical"}

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.asgi")


def resolve_log_level(raw: str | None, default: str = "info") -> str:
    """
    Normalize a LOG_LEVEL value to a lowercase name both uvicorn and logging accept.

    Blank means `default`. Raises ValueError for unknown names.
    """
    name = (raw or "").strip().lower() or default
    name = _LEVEL_ALIASES.get(name, name)
    if name not in LEVEL_NAMES:
        raise ValueError(f"LOG_LEVEL must be one of {', '.join(LEVEL_NAMES)}, got {raw!r}")
    return name


def _level_value(name: str) -> int:
    # "trace" is uvicorn-only and sits below DEBUG
    return 5 if name == "trace" else getattr(logging, name.upper())


try:
    LOG_LEVEL = resolve_log_level(os.getenv("LOG_LEVEL"))
except ValueError:
    LOG_LEVEL = "info"

# JSON output for production (LOG_FORMAT=json); human-readable for local
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()


def _add_timestamp(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Ensure timestamp is always present (ISO 8601, UTC)."""
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _add_record_logger(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """For stdlib records (uvicorn), use the record's logger name."""
    record = event_dict.get("_record")
    if record is not None:
        event_dict.setdefault("logger", record.name)
    return event_dict


def _normalize_event(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Rename structlog 'event' to event_type; keep message if present."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    if "message" not in event_dict and "event_type" in event_dict:
        event_dict["message"] = str(event_dict["event_type"])
    return event_dict


def _renderer(fmt: str) -> Any:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def _configure_uvicorn_loggers(level: int, fmt: str, pre_chain: list[Any]) -> None:
    """Route uvicorn's stdlib loggers to stdout through the structlog renderer."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[_add_record_logger, *pre_chain],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(fmt),
            ],
        )
    )
    for name in UVICORN_LOGGERS:
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [handler]
        stdlib_logger.setLevel(level)
        stdlib_logger.propagate = False


def configure_structlog(level: str = LOG_LEVEL, fmt: str = LOG_FORMAT) -> None:
    """Configure structlog and uvicorn's loggers: one format, one level."""
    level_value = _level_value(resolve_log_level(level))
    pre_chain: list[Any] = [
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_timestamp,
        _normalize_event,
    ]
    structlog.configure(
        processors=[structlog.contextvars.merge_contextvars, *pre_chain, _renderer(fmt)],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
    _configure_uvicorn_loggers(level_value, fmt, pre_chain)


# One-time configuration on first import
if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Return a structured logger for the given module name.

        logger = get_logger(__name__)
        logger.info("http_request", method="GET", path="/health", duration_ms=0.42)

    Output (JSON): {"event_type": "http_request", "method": "GET", ..., "level": "info", "logger": "module.name"}
    """
    return structlog.get_logger(name).bind(logger=name)
