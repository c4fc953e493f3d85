"""
Pytest tests for the middleware chain: composition order, request logging, fault recovery.
"""

from __future__ import annotations

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from backend_pulse.api_server.middleware import (
    INTERNAL_ERROR_BODY,
    LoggingMiddleware,
    REQUEST_TIMEOUT_BODY,
    RESPONSE_TIMEOUT_BODY,
    RecoveryMiddleware,
    TimeoutMiddleware,
    chain,
    logging_interceptor,
    recovery_interceptor,
)
from backend_pulse.api_server.server import build_handler
from backend_pulse.config.settings import ServerTimeouts


def _events(log_capture, name):
    return [e for e in log_capture.entries if e.get("event") == name]


def _http_scope(path="/"):
    return {
        "type": "http",
        "method": "GET",
        "path": path,
        "client": ("10.0.0.7", 51234),
        "headers": [],
    }


async def _receive():
    return {"type": "http.request", "body": b"", "more_body": False}


async def _ok_app(scope, receive, send):
    await send({"type": "http.response.start", "status": 200, "headers": [(b"content-type", b"text/plain")]})
    await send({"type": "http.response.body", "body": b"ok"})


async def _boom_app(scope, receive, send):
    raise RuntimeError("boom")


def _recorder(name, trace):
    def interceptor(app):
        async def wrapped(scope, receive, send):
            trace.append(f"{name}:before")
            await app(scope, receive, send)
            trace.append(f"{name}:after")

        return wrapped

    return interceptor


def _run(app, scope=None, receive=_receive):
    sent = []

    async def send(message):
        sent.append(message)

    asyncio.run(app(scope or _http_scope(), receive, send))
    return sent


# -----------------------------------------------------------------------------
# chain()
# -----------------------------------------------------------------------------


def test_chain_first_interceptor_is_outermost():
    trace: list[str] = []

    async def terminal(scope, receive, send):
        trace.append("H")
        await _ok_app(scope, receive, send)

    app = chain(terminal, _recorder("A", trace), _recorder("B", trace))
    _run(app)
    assert trace == ["A:before", "B:before", "H", "B:after", "A:after"]


def test_chain_reversed_order():
    trace: list[str] = []

    async def terminal(scope, receive, send):
        trace.append("H")

    _run(chain(terminal, _recorder("B", trace), _recorder("A", trace)))
    assert trace == ["B:before", "A:before", "H", "A:after", "B:after"]


def test_chain_empty_returns_app_unchanged():
    assert chain(_ok_app) is _ok_app


def test_chain_construction_does_not_call_anything():
    calls: list[str] = []

    async def terminal(scope, receive, send):
        calls.append("H")

    chain(terminal, _recorder("A", calls), _recorder("B", calls))
    assert calls == []


def test_build_handler_puts_recovery_outermost(captured_logger):
    handler = build_handler(_ok_app, captured_logger)
    assert isinstance(handler, RecoveryMiddleware)
    assert isinstance(handler.app, LoggingMiddleware)
    assert handler.app.app is _ok_app


def test_build_handler_with_timeouts_puts_deadlines_innermost(captured_logger):
    handler = build_handler(_ok_app, captured_logger, timeouts=ServerTimeouts(read=1.0, write=2.0))
    assert isinstance(handler, RecoveryMiddleware)
    assert isinstance(handler.app, LoggingMiddleware)
    assert isinstance(handler.app.app, TimeoutMiddleware)
    assert handler.app.app.read_timeout == 1.0
    assert handler.app.app.write_timeout == 2.0
    assert handler.app.app.app is _ok_app


# -----------------------------------------------------------------------------
# LoggingMiddleware
# -----------------------------------------------------------------------------


def test_logging_one_record_per_request(captured_logger, log_capture):
    app = chain(_ok_app, logging_interceptor(captured_logger))
    _run(app, _http_scope("/health"))
    _run(app, _http_scope("/api/time"))

    records = _events(log_capture, "http_request")
    assert len(records) == 2
    first = records[0]
    assert first["remote_addr"] == "10.0.0.7:51234"
    assert first["method"] == "GET"
    assert first["path"] == "/health"
    assert first["status"] == 200
    assert records[1]["path"] == "/api/time"


def test_logging_duration_covers_inner_handler(captured_logger, log_capture):
    inner_elapsed: list[float] = []

    async def slow(scope, receive, send):
        start = time.perf_counter()
        await asyncio.sleep(0.05)
        await _ok_app(scope, receive, send)
        inner_elapsed.append((time.perf_counter() - start) * 1000)

    _run(chain(slow, logging_interceptor(captured_logger)))
    (record,) = _events(log_capture, "http_request")
    assert record["duration_ms"] >= round(inner_elapsed[0], 3) - 0.001
    assert record["duration_ms"] >= 50 * 0.9


def test_logging_does_not_modify_response(captured_logger):
    sent = _run(chain(_ok_app, logging_interceptor(captured_logger)))
    assert sent[0]["status"] == 200
    assert sent[1]["body"] == b"ok"


def test_logging_propagates_exception_and_still_logs(captured_logger, log_capture):
    app = chain(_boom_app, logging_interceptor(captured_logger))
    with pytest.raises(RuntimeError, match="boom"):
        _run(app)
    (record,) = _events(log_capture, "http_request")
    assert record["status"] is None


def test_logging_passes_through_non_http_scope(captured_logger, log_capture):
    seen = []

    async def lifespan_app(scope, receive, send):
        seen.append(scope["type"])

    _run(chain(lifespan_app, logging_interceptor(captured_logger)), {"type": "lifespan"})
    assert seen == ["lifespan"]
    assert _events(log_capture, "http_request") == []


def test_missing_client_logged_as_dash(captured_logger, log_capture):
    scope = _http_scope()
    scope["client"] = None
    _run(chain(_ok_app, logging_interceptor(captured_logger)), scope)
    (record,) = _events(log_capture, "http_request")
    assert record["remote_addr"] == "-"


# -----------------------------------------------------------------------------
# RecoveryMiddleware
# -----------------------------------------------------------------------------


def test_recovery_turns_fault_into_500(captured_logger, log_capture):
    sent = _run(chain(_boom_app, recovery_interceptor(captured_logger)))
    assert sent[0]["status"] == 500
    assert (b"content-type", b"text/plain; charset=utf-8") in sent[0]["headers"]
    assert sent[1]["body"] == INTERNAL_ERROR_BODY

    (record,) = _events(log_capture, "panic_recovered")
    assert "boom" in record["error"]
    assert record["response_started"] is False


def test_recovery_after_response_started_sends_nothing_more(captured_logger, log_capture):
    async def half_written(scope, receive, send):
        await send({"type": "http.response.start", "status": 200, "headers": []})
        raise ValueError("late fault")

    sent = _run(chain(half_written, recovery_interceptor(captured_logger)))
    assert [m["type"] for m in sent] == ["http.response.start"]
    assert sent[0]["status"] == 200
    (record,) = _events(log_capture, "panic_recovered")
    assert record["response_started"] is True


def test_recovery_passes_success_through(captured_logger, log_capture):
    sent = _run(chain(_ok_app, recovery_interceptor(captured_logger)))
    assert sent[0]["status"] == 200
    assert _events(log_capture, "panic_recovered") == []


def test_recovery_outside_logging_covers_fault_and_logs_once(captured_logger, log_capture):
    app = build_handler(_boom_app, captured_logger)
    sent = _run(app)
    assert sent[0]["status"] == 500
    assert len(_events(log_capture, "http_request")) == 1
    assert len(_events(log_capture, "panic_recovered")) == 1


def test_faulting_route_returns_500_and_server_keeps_serving(app, captured_logger, log_capture):
    """A handler exception becomes a 500; the next request is served normally."""

    @app.get("/explode")
    def explode():
        raise RuntimeError("handler fault")

    client = TestClient(build_handler(app, captured_logger))
    r = client.get("/explode")
    assert r.status_code == 500
    assert r.text.strip() == "Internal Server Error"
    assert r.headers["content-type"].startswith("text/plain")

    r2 = client.get("/health")
    assert r2.status_code == 200
    assert r2.json()["ok"] is True

    assert len(_events(log_capture, "panic_recovered")) == 1
    statuses = [e["status"] for e in _events(log_capture, "http_request")]
    assert statuses == [500, 200]


def test_fault_in_bare_terminal_over_http(captured_logger):
    client = TestClient(build_handler(_boom_app, captured_logger))
    r = client.get("/anything")
    assert r.status_code == 500
    assert r.content == INTERNAL_ERROR_BODY


# -----------------------------------------------------------------------------
# TimeoutMiddleware
# -----------------------------------------------------------------------------


async def _body_reader_app(scope, receive, send):
    while True:
        message = await receive()
        if not message.get("more_body", False):
            break
    await _ok_app(scope, receive, send)


def _stalled_receive():
    calls = 0

    async def receive():
        nonlocal calls
        calls += 1
        if calls == 1:
            return {"type": "http.request", "body": b"partial", "more_body": True}
        await asyncio.sleep(3600)

    return receive


def test_timeout_stalled_body_read_ends_with_408(captured_logger, log_capture):
    app = TimeoutMiddleware(_body_reader_app, read_timeout=0.1, write_timeout=30.0, logger=captured_logger)
    start = time.perf_counter()
    sent = _run(app, receive=_stalled_receive())
    assert time.perf_counter() - start < 5
    assert sent[0]["status"] == 408
    assert sent[1]["body"] == REQUEST_TIMEOUT_BODY
    (event,) = _events(log_capture, "request_timeout")
    assert event["phase"] == "read"
    assert event["timeout_sec"] == 0.1
    assert event["log_level"] == "warning"


def test_timeout_complete_body_within_deadline_is_served(captured_logger, log_capture):
    app = TimeoutMiddleware(_body_reader_app, read_timeout=5.0, write_timeout=5.0, logger=captured_logger)
    sent = _run(app)
    assert sent[0]["status"] == 200
    assert sent[1]["body"] == b"ok"
    assert _events(log_capture, "request_timeout") == []


def test_timeout_slow_handler_cancelled_with_503(captured_logger, log_capture):
    state = {"finished": False, "cancelled": False}

    async def slow_app(scope, receive, send):
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise
        state["finished"] = True
        await _ok_app(scope, receive, send)

    app = TimeoutMiddleware(slow_app, read_timeout=5.0, write_timeout=0.1, logger=captured_logger)
    start = time.perf_counter()
    sent = _run(app)
    assert time.perf_counter() - start < 5
    assert sent[0]["status"] == 503
    assert sent[1]["body"] == RESPONSE_TIMEOUT_BODY
    assert state == {"finished": False, "cancelled": True}
    (event,) = _events(log_capture, "request_timeout")
    assert event["phase"] == "write"
    assert event["response_started"] is False


def test_timeout_after_response_started_sends_nothing_more(captured_logger, log_capture):
    async def stalls_mid_body(scope, receive, send):
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"part", "more_body": True})
        await asyncio.sleep(30)

    app = TimeoutMiddleware(stalls_mid_body, read_timeout=5.0, write_timeout=0.1, logger=captured_logger)
    sent = _run(app)
    assert [m["type"] for m in sent] == ["http.response.start", "http.response.body"]
    assert sent[0]["status"] == 200
    (event,) = _events(log_capture, "request_timeout")
    assert event["response_started"] is True


def test_timeout_propagates_inner_exception(captured_logger):
    app = TimeoutMiddleware(_boom_app, read_timeout=5.0, write_timeout=5.0, logger=captured_logger)
    with pytest.raises(RuntimeError, match="boom"):
        _run(app)


def test_timeout_passes_through_non_http_scope(captured_logger, log_capture):
    seen = []

    async def lifespan_app(scope, receive, send):
        seen.append(scope["type"])

    app = TimeoutMiddleware(lifespan_app, read_timeout=0.01, write_timeout=0.01, logger=captured_logger)
    _run(app, {"type": "lifespan"})
    assert seen == ["lifespan"]
    assert _events(log_capture, "request_timeout") == []


def test_slow_route_through_full_chain_is_logged_as_503(app, captured_logger, log_capture):
    @app.get("/sleepy")
    async def sleepy():
        await asyncio.sleep(30)
        return {"ok": True}

    handler = build_handler(app, captured_logger, timeouts=ServerTimeouts(read=5.0, write=0.2))
    client = TestClient(handler)
    r = client.get("/sleepy")
    assert r.status_code == 503
    assert r.text.strip() == "Service Unavailable"

    assert client.get("/health").status_code == 200
    statuses = [e["status"] for e in _events(log_capture, "http_request")]
    assert statuses == [503, 200]
    assert _events(log_capture, "panic_recovered") == []
