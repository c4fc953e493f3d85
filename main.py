"""
Main entrypoint: HTTP server with health, time and static endpoints.

Serves in the foreground; SIGINT/SIGTERM trigger a graceful shutdown bounded by
SHUTDOWN_TIMEOUT_SEC, after which the process exits.

Env: PORT (default 8080), HOST, STATIC_DIR, LOG_LEVEL, LOG_FORMAT, *_TIMEOUT_SEC.

ASGI app only (no lifecycle): uvicorn backend_pulse.api_server.app:app --host 0.0.0.0 --port 8080
"""

import sys

from backend_pulse.api_server.runtime import main

if __name__ == "__main__":
    sys.exit(main())
