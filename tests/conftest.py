"""
Pytest fixtures for Backend Pulse tests. Uses a temporary static directory and
a captured structlog logger so log records can be asserted on.
"""

from __future__ import annotations

import pytest
import structlog
from structlog.testing import LogCapture

from backend_pulse.config import Settings

INDEX_HTML = "<!doctype html><title>pulse</title><h1>index</h1>\n"
HELLO_TXT = "hello static\n"


@pytest.fixture
def static_dir(tmp_path):
    """Static directory with index.html and hello.txt."""
    d = tmp_path / "static"
    d.mkdir()
    (d / "index.html").write_text(INDEX_HTML, encoding="utf-8")
    (d / "hello.txt").write_text(HELLO_TXT, encoding="utf-8")
    return d


@pytest.fixture
def settings(static_dir):
    return Settings(host="127.0.0.1", port=0, static_dir=static_dir)


@pytest.fixture
def log_capture():
    """LogCapture collecting every record sent to the `captured_logger` fixture."""
    return LogCapture()


@pytest.fixture
def captured_logger(log_capture):
    """structlog logger whose records end up in log_capture.entries (nothing is printed)."""
    return structlog.wrap_logger(None, processors=[log_capture])


@pytest.fixture
def app(settings):
    """Terminal FastAPI app (no middleware)."""
    from backend_pulse.api_server.server import create_app

    return create_app(settings)


@pytest.fixture
def client(app, captured_logger):
    """TestClient over the full middleware chain with a captured logger."""
    from fastapi.testclient import TestClient

    from backend_pulse.api_server.server import build_handler

    return TestClient(build_handler(app, captured_logger))
