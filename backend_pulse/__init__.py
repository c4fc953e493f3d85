"""
Backend Pulse — minimal HTTP service with health, time and static endpoints.

Requests pass through a recovery and logging middleware chain before reaching
the FastAPI application; the server lifecycle handles SIGINT/SIGTERM with a
bounded graceful shutdown.
"""

__version__ = "0.1.0"
