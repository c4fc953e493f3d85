"""
HTTP middleware — request logging, fault recovery, read/write deadlines.

Each interceptor is a callable taking an ASGI app and returning an ASGI app,
so interceptors compose with chain(). Order matters: the first interceptor
passed to chain() is the outermost and sees the request first and the
response last. RecoveryMiddleware must be outermost so a fault anywhere
below it (handlers or the logging step) becomes a 500 instead of escaping
to the server.
"""

from __future__ import annotations

import asyncio
import functools
import time
from typing import Any, Awaitable, Callable, MutableMapping

from backend_pulse.pulse_logging import get_logger

Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]
Interceptor = Callable[[ASGIApp], ASGIApp]

INTERNAL_ERROR_BODY = b"Internal Server Error\n"
REQUEST_TIMEOUT_BODY = b"Request Timeout\n"
RESPONSE_TIMEOUT_BODY = b"Service Unavailable\n"


def chain(app: ASGIApp, *interceptors: Interceptor) -> ASGIApp:
    """
    Wrap `app` in `interceptors` so that chain(h, m1, m2) == m1(m2(h)).

    Pure: no I/O happens until the returned app is called. With no
    interceptors the app is returned unchanged.
    """
    return functools.reduce(lambda inner, wrap: wrap(inner), reversed(interceptors), app)


async def send_plain_text(send: Send, status: int, body: bytes) -> None:
    """Send a complete text/plain response."""
    await send(
        {
            "type": "http.response.start",
            "status": status,
            "headers": [
                (b"content-type", b"text/plain; charset=utf-8"),
                (b"x-content-type-options", b"nosniff"),
                (b"content-length", str(len(body)).encode("ascii")),
            ],
        }
    )
    await send({"type": "http.response.body", "body": body})


def _remote_addr(scope: Scope) -> str:
    client = scope.get("client")
    if not client:
        return "-"
    host, port = client[0], client[1]
    return f"{host}:{port}"


class LoggingMiddleware:
    """
    Log one `http_request` record per request once the inner app returns.

    Fields: remote_addr, method, path, status, duration_ms. The record is
    written from a finally block, so a request that raises is still logged
    (status is None when nothing was sent) and the exception propagates
    unchanged to the enclosing interceptor.
    """

    def __init__(self, app: ASGIApp, logger: Any = None) -> None:
        self.app = app
        self.logger = logger if logger is not None else get_logger(__name__)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        status: int | None = None

        async def send_wrapper(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        start = time.perf_counter()
        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.logger.info(
                "http_request",
                remote_addr=_remote_addr(scope),
                method=scope.get("method"),
                path=scope.get("path"),
                status=status,
                duration_ms=round(duration_ms, 3),
            )


class RecoveryMiddleware:
    """
    Turn an exception raised below this middleware into a 500 response.

    The fault is logged with its traceback and not re-raised, so the server
    keeps serving. If the response had already started, the status line is
    gone and nothing more can be sent; the fault is logged and the
    connection is left for the server to close.
    """

    def __init__(self, app: ASGIApp, logger: Any = None) -> None:
        self.app = app
        self.logger = logger if logger is not None else get_logger(__name__)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            self.logger.exception(
                "panic_recovered",
                error=repr(exc),
                method=scope.get("method"),
                path=scope.get("path"),
                response_started=response_started,
            )
            if response_started:
                return
            await send_plain_text(send, 500, INTERNAL_ERROR_BODY)


class TimeoutMiddleware:
    """
    Bound how long a request may take to arrive and its response to finish.

    Both deadlines start when the request reaches this middleware:
    - read: the request body must be fully received within `read_timeout`.
      A stalled body read ends the request with 408.
    - write: the response must be fully sent within `write_timeout`.
      A handler that overruns is cancelled; 503 is sent if nothing was sent yet.

    The inner app runs as its own task so either deadline can cancel it.
    Exceptions from the inner app propagate unchanged.
    """

    def __init__(
        self,
        app: ASGIApp,
        read_timeout: float,
        write_timeout: float,
        logger: Any = None,
    ) -> None:
        self.app = app
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.logger = logger if logger is not None else get_logger(__name__)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        loop = asyncio.get_running_loop()
        read_deadline = loop.time() + self.read_timeout
        expired: asyncio.Future = loop.create_future()
        body_received = False
        response_started = False
        response_complete = False

        def expire(phase: str) -> None:
            if not expired.done() and not response_complete:
                expired.set_result(phase)

        async def receive_wrapper() -> Message:
            nonlocal body_received
            if body_received:
                return await receive()
            try:
                message = await asyncio.wait_for(receive(), max(read_deadline - loop.time(), 0))
            except asyncio.TimeoutError:
                expire("read")
                # Parked until this middleware cancels the request
                await loop.create_future()
                raise
            if message["type"] != "http.request" or not message.get("more_body", False):
                body_received = True
            return message

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started, response_complete
            if message["type"] == "http.response.start":
                response_started = True
            elif message["type"] == "http.response.body" and not message.get("more_body", False):
                response_complete = True
            await send(message)

        inner = asyncio.ensure_future(self.app(scope, receive_wrapper, send_wrapper))
        write_timer = loop.call_later(self.write_timeout, expire, "write")
        try:
            await asyncio.wait({inner, expired}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            inner.cancel()
            raise
        finally:
            write_timer.cancel()

        if inner.done():
            inner.result()
            return

        phase = expired.result()
        inner.cancel()
        await asyncio.wait({inner})
        if not inner.cancelled():
            inner.exception()
        self.logger.warning(
            "request_timeout",
            phase=phase,
            timeout_sec=self.read_timeout if phase == "read" else self.write_timeout,
            method=scope.get("method"),
            path=scope.get("path"),
            response_started=response_started,
        )
        if response_started:
            return
        if phase == "read":
            await send_plain_text(send, 408, REQUEST_TIMEOUT_BODY)
        else:
            await send_plain_text(send, 503, RESPONSE_TIMEOUT_BODY)


def timeout_interceptor(read_timeout: float, write_timeout: float, logger: Any = None) -> Interceptor:
    """Return an interceptor that wraps an app in TimeoutMiddleware."""
    return functools.partial(
        TimeoutMiddleware,
        read_timeout=read_timeout,
        write_timeout=write_timeout,
        logger=logger,
    )


def logging_interceptor(logger: Any = None) -> Interceptor:
    """Return an interceptor that wraps an app in LoggingMiddleware with `logger`."""
    return functools.partial(LoggingMiddleware, logger=logger)


def recovery_interceptor(logger: Any = None) -> Interceptor:
    """Return an interceptor that wraps an app in RecoveryMiddleware with `logger`."""
    return functools.partial(RecoveryMiddleware, logger=logger)
