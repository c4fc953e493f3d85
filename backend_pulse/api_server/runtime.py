"""
Process entrypoint: load settings, serve until SIGINT/SIGTERM or a fatal serve error.

Shutdown outcome (clean or not) is logged and the process exits 0; only a
configuration error before the server starts exits 1.

Usage: python -m backend_pulse.api_server.runtime
"""

from __future__ import annotations

import sys

from backend_pulse.api_server.lifecycle import run_server
from backend_pulse.api_server.server import build_handler, create_app
from backend_pulse.config import get_settings
from backend_pulse.pulse_logging import get_logger

logger = get_logger(__name__)


def main() -> int:
    """CLI entrypoint: build the app from env settings and run the server lifecycle."""
    try:
        settings = get_settings()
        app = build_handler(create_app(settings), timeouts=settings.timeouts)
    except Exception as e:
        logger.exception("runtime_fatal", error=str(e))
        return 1

    result = run_server(app, settings, log_level=settings.log_level)
    logger.info(
        "runtime_exit",
        trigger=result.trigger.source,
        signal=result.trigger.signal,
        clean_shutdown=result.clean,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
