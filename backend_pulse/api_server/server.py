"""
FastAPI server — health, time, index page and static files behind the middleware chain.

create_app() builds the terminal FastAPI application; build_handler() wraps it
with RecoveryMiddleware (outermost), LoggingMiddleware and, when timeouts are
given, TimeoutMiddleware (innermost).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend_pulse import __version__
from backend_pulse.api_server.middleware import (
    ASGIApp,
    chain,
    Interceptor,
    logging_interceptor,
    recovery_interceptor,
    timeout_interceptor,
)
from backend_pulse.api_server.routes import ANY_METHOD, router
from backend_pulse.config import Settings
from backend_pulse.config.settings import ServerTimeouts


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the FastAPI application serving /health, /api/time, / and /static/*.

    Interactive docs and the OpenAPI schema are disabled so that only the
    listed paths answer; everything else is 404.
    """
    settings = settings or Settings()
    static_dir = Path(settings.static_dir)

    app = FastAPI(
        title="Backend Pulse",
        description="Health, time and static file endpoints.",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.include_router(router)

    @app.api_route("/", methods=ANY_METHOD, include_in_schema=False)
    def index() -> FileResponse:
        """Serve index.html from the static directory (exactly /, nothing below it)."""
        index_path = static_dir / "index.html"
        if not index_path.is_file():
            raise HTTPException(status_code=404, detail="Not Found")
        return FileResponse(index_path, media_type="text/html; charset=utf-8")

    app.mount("/static", StaticFiles(directory=static_dir), name="static")

    @app.exception_handler(StarletteHTTPException)
    def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Consistent JSON error response for HTTPException (404, 405, ...)."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    return app


def build_handler(
    app: ASGIApp,
    logger: Any = None,
    timeouts: ServerTimeouts | None = None,
) -> ASGIApp:
    """
    Wrap `app` in the request middleware chain.

    Recovery is always outermost so faults in handlers and in the logging
    step both end as a 500; logging sits inside it and times the request.
    With `timeouts`, the read and write deadlines are enforced innermost, so
    a timed-out request is still logged with its 408/503 status.
    """
    interceptors: list[Interceptor] = [
        recovery_interceptor(logger),
        logging_interceptor(logger),
    ]
    if timeouts is not None:
        interceptors.append(timeout_interceptor(timeouts.read, timeouts.write, logger))
    return chain(app, *interceptors)
