"""
Server lifecycle — bind, serve on a background task, shut down on signal or fatal error.

States: IDLE -> STARTING -> RUNNING -> SHUTTING_DOWN -> STOPPED.

- start(): launch the uvicorn serve loop on its own task. Bind and serve
  errors are not raised here; they complete the serve task instead.
- wait_for_shutdown_trigger(): race SIGINT/SIGTERM (or request_shutdown())
  against the serve task. The first event wins and is logged; the other is
  discarded.
- shutdown(): stop accepting, drain in-flight requests up to the deadline,
  then abandon whatever is left. Repeated or concurrent calls share one
  shutdown sequence.

uvicorn's own signal handling is disabled; this class owns the signals.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import signal
import socket
from dataclasses import dataclass
from typing import Any, Iterator

import uvicorn

from backend_pulse.api_server.middleware import ASGIApp
from backend_pulse.config import Settings
from backend_pulse.config.settings import ServerTimeouts
from backend_pulse.core.exceptions import (
    LifecycleError,
    ServerClosedError,
    ShutdownTimeoutError,
)
from backend_pulse.pulse_logging import get_logger

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)
# After the deadline, how long to wait for the serve loop to unwind before cancelling it
ABANDON_GRACE_SEC = 1.0


class ServerState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass
class ShutdownTrigger:
    """What ended the RUNNING state: a signal, or the serve task finishing."""

    source: str  # "signal" | "server_error" | "server_closed"
    signal: str | None = None
    error: BaseException | None = None


@dataclass
class ShutdownResult:
    """Outcome of run(): the winning trigger and any shutdown fault."""

    trigger: ShutdownTrigger
    shutdown_error: BaseException | None = None

    @property
    def clean(self) -> bool:
        return self.shutdown_error is None


class _Server(uvicorn.Server):
    """uvicorn Server that reports startup and leaves signals to ServerLifecycle."""

    def __init__(self, config: uvicorn.Config, on_started: Any) -> None:
        super().__init__(config)
        self._on_started = on_started

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    async def startup(self, sockets: list[socket.socket] | None = None) -> None:
        await super().startup(sockets=sockets)
        if self.started and not self.should_exit:
            self._on_started()


class ServerLifecycle:
    """
    Owns one listening socket and the uvicorn server serving `app` on it.

    Args:
        app: ASGI application (normally the middleware-wrapped FastAPI app).
        host: Bind host ("0.0.0.0" = all interfaces).
        port: Bind port (0 = OS picks a free port; see `address`).
        timeouts: Server timeouts; `idle` maps to uvicorn keep-alive and
            `shutdown` is the drain deadline.
        logger: structlog logger; defaults to this module's logger.
        log_level: level for uvicorn's stdlib loggers ("debug", "info", "warning", ...).
        handle_signals: install SIGINT/SIGTERM handlers while running.
    """

    def __init__(
        self,
        app: ASGIApp,
        host: str = "0.0.0.0",
        port: int = 8080,
        timeouts: ServerTimeouts | None = None,
        logger: Any = None,
        log_level: str = "info",
        handle_signals: bool = True,
    ) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._timeouts = timeouts or ServerTimeouts()
        self._logger = logger if logger is not None else get_logger(__name__)
        self._log_level = log_level
        self._handle_signals = handle_signals
        self._state = ServerState.IDLE
        self._server: _Server | None = None
        self._serve_task: asyncio.Task | None = None
        self._signal_future: asyncio.Future | None = None
        self._shutdown_task: asyncio.Task | None = None
        self._ready: asyncio.Event | None = None
        self._installed_signals: list[signal.Signals] = []
        self._bound_port: int = 0

    @classmethod
    def from_settings(cls, app: ASGIApp, settings: Settings, **kwargs: Any) -> "ServerLifecycle":
        return cls(
            app,
            host=settings.host,
            port=settings.port,
            timeouts=settings.timeouts,
            **kwargs,
        )

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def address(self) -> tuple[str, int]:
        """Return (host, port) the server is bound to."""
        return (self._host, self._bound_port)

    @property
    def active_connections(self) -> int:
        if self._server is None:
            return 0
        return len(self._server.server_state.connections)

    def _build_config(self) -> uvicorn.Config:
        return uvicorn.Config(
            self._app,
            host=self._host,
            port=self._port,
            log_level=self._log_level,
            log_config=None,
            access_log=False,
            timeout_keep_alive=self._timeouts.idle,
            timeout_graceful_shutdown=None,
        )

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self._host else socket.AF_INET
        return socket.create_server((self._host, self._port), family=family)

    def _mark_running(self) -> None:
        if self._state is ServerState.STARTING:
            self._state = ServerState.RUNNING
        if self._ready is not None:
            self._ready.set()
        self._logger.info("server_running", host=self._host, port=self._bound_port)

    async def start(self) -> None:
        """Start serving on a background task. Errors surface through the task, not here."""
        if self._state is not ServerState.IDLE:
            raise LifecycleError(f"cannot start server in state {self._state.value}")
        self._state = ServerState.STARTING
        loop = asyncio.get_running_loop()
        self._signal_future = loop.create_future()
        self._ready = asyncio.Event()
        self._server = _Server(self._build_config(), on_started=self._mark_running)

        t = self._timeouts
        self._logger.info(
            "server_starting",
            url=f"http://localhost:{self._port}",
            bind=f"{self._host}:{self._port}",
            read_timeout_sec=t.read,
            read_header_timeout_sec=t.read_header,
            write_timeout_sec=t.write,
            idle_timeout_sec=t.idle,
            shutdown_timeout_sec=t.shutdown,
        )
        if self._handle_signals:
            self._install_signal_handlers(loop)
        self._serve_task = asyncio.create_task(self._serve(), name="http-serve")

    async def _serve(self) -> None:
        """Bind, serve until told to exit, and always finish with an exception."""
        assert self._server is not None
        sock = self._bind()
        self._bound_port = sock.getsockname()[1]
        try:
            await self._server.serve(sockets=[sock])
        finally:
            sock.close()
        if not self._server.started:
            raise RuntimeError("server exited during startup")
        raise ServerClosedError()

    async def wait_ready(self, timeout: float = 5.0) -> None:
        """
        Wait until the server is accepting connections.

        Raises the serve task's error if it ends first, or TimeoutError.
        """
        if self._ready is None or self._serve_task is None:
            raise LifecycleError("server not started")
        ready = asyncio.ensure_future(self._ready.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, self._serve_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready.cancel()
        if self._ready.is_set():
            return
        if self._serve_task in done:
            exc = self._serve_task.exception()
            raise LifecycleError("server stopped before it was ready") from exc
        raise asyncio.TimeoutError(f"server not ready after {timeout}s")

    def request_shutdown(self, signum: int | None = None) -> None:
        """Resolve the shutdown trigger; only the first call has any effect."""
        if self._signal_future is not None and not self._signal_future.done():
            self._signal_future.set_result(signum)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(signum, self.request_shutdown, signum)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows, or not running in the main thread
                self._logger.debug("signal_handler_unavailable", signal=signum.name)
                continue
            self._installed_signals.append(signum)

    def _remove_signal_handlers(self) -> None:
        if not self._installed_signals:
            return
        loop = asyncio.get_running_loop()
        for signum in self._installed_signals:
            loop.remove_signal_handler(signum)
        self._installed_signals.clear()

    async def wait_for_shutdown_trigger(self) -> ShutdownTrigger:
        """
        Block until a shutdown signal arrives or the serve task ends.

        When both are ready at once the signal wins. A ServerClosedError from
        the serve task is the expected closure and is not logged as an error.
        """
        if self._signal_future is None or self._serve_task is None:
            raise LifecycleError("server not started")
        await asyncio.wait(
            {self._signal_future, self._serve_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        if self._signal_future.done():
            signum = self._signal_future.result()
            name = signal.Signals(signum).name if signum is not None else "requested"
            self._logger.info("shutdown_signal_received", signal=name)
            return ShutdownTrigger(source="signal", signal=name)

        exc = None if self._serve_task.cancelled() else self._serve_task.exception()
        if exc is None or isinstance(exc, ServerClosedError):
            self._logger.info("server_closed")
            return ShutdownTrigger(source="server_closed", error=exc)
        self._logger.error("server_error", error=str(exc), error_type=type(exc).__name__)
        return ShutdownTrigger(source="server_error", error=exc)

    async def shutdown(self, timeout: float | None = None) -> BaseException | None:
        """
        Gracefully stop the server, bounded by `timeout` (default: timeouts.shutdown).

        Returns the shutdown fault (e.g. ShutdownTimeoutError) or None. Never
        raises for shutdown faults; they are logged. Every caller shares the
        first call's shutdown sequence.
        """
        if self._shutdown_task is None:
            if self._state is ServerState.IDLE:
                self._state = ServerState.STOPPED
                return None
            deadline = self._timeouts.shutdown if timeout is None else timeout
            self._shutdown_task = asyncio.create_task(
                self._shutdown(deadline), name="http-shutdown"
            )
        return await asyncio.shield(self._shutdown_task)

    async def _shutdown(self, deadline: float) -> BaseException | None:
        assert self._server is not None and self._serve_task is not None
        self._state = ServerState.SHUTTING_DOWN
        # Signal handlers stay installed while draining; a repeated signal
        # only re-resolves the already-resolved trigger.
        self.request_shutdown()
        already_done = self._serve_task.done()
        self._logger.info(
            "server_shutdown_started",
            timeout_sec=deadline,
            active_connections=self.active_connections,
        )

        error: BaseException | None = None
        try:
            self._server.should_exit = True
            if not already_done:
                done, _ = await asyncio.wait({self._serve_task}, timeout=deadline)
                if not done:
                    pending = self._abandon_in_flight()
                    error = ShutdownTimeoutError(deadline, pending)
                    done, _ = await asyncio.wait({self._serve_task}, timeout=ABANDON_GRACE_SEC)
                    if not done:
                        self._serve_task.cancel()
                        await asyncio.wait({self._serve_task})

            exc = None if self._serve_task.cancelled() else self._serve_task.exception()
            if error is None and not already_done and exc is not None and not isinstance(exc, ServerClosedError):
                error = exc

            if error is not None:
                self._logger.error("shutdown_error", error=str(error), error_type=type(error).__name__)
            else:
                self._logger.info("graceful_shutdown_complete")
        finally:
            self._state = ServerState.STOPPED
            self._remove_signal_handlers()
        return error

    def _abandon_in_flight(self) -> int:
        """Drop connections still open at the deadline. Returns how many there were."""
        assert self._server is not None
        state = self._server.server_state
        pending = len(state.connections)
        self._server.force_exit = True
        for task in list(state.tasks):
            task.cancel()
        for connection in list(state.connections):
            transport = getattr(connection, "transport", None)
            if transport is not None:
                transport.abort()
        return pending

    async def run(self) -> ShutdownResult:
        """start() + wait_for_shutdown_trigger() + shutdown(). Returns the outcome."""
        await self.start()
        trigger = await self.wait_for_shutdown_trigger()
        shutdown_error = await self.shutdown()
        return ShutdownResult(trigger=trigger, shutdown_error=shutdown_error)


def run_server(app: ASGIApp, settings: Settings, **kwargs: Any) -> ShutdownResult:
    """Blocking helper: serve `app` with `settings` until shutdown completes."""
    lifecycle = ServerLifecycle.from_settings(app, settings, **kwargs)
    return asyncio.run(lifecycle.run())
