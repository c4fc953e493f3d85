"""
ASGI application entrypoint.

Builds the FastAPI app from environment settings and wraps it in the middleware chain.
Run with: uvicorn backend_pulse.api_server.app:app --host 0.0.0.0 --port 8080
"""

from backend_pulse.api_server.server import build_handler, create_app
from backend_pulse.config import get_settings

settings = get_settings()
app = build_handler(create_app(settings), timeouts=settings.timeouts)

__all__ = ["app"]
