"""
Structured logging for Backend Pulse.

JSON logs with timestamp, level, logger name and event_type, for our own
events and for uvicorn's. Use get_logger() in all modules.
"""

from backend_pulse.pulse_logging.logger import (
    configure_structlog,
    get_logger,
    resolve_log_level,
)

__all__ = ["configure_structlog", "get_logger", "resolve_log_level"]
