"""
Application settings and environment configuration.

Responsibilities:
- Load configuration from environment variables and .env files.
- Validate settings and provide defaults for optional ones.
- Expose typed settings (bind address, static directory, server timeouts)
  for use by the API server and its lifecycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from backend_pulse.config.env import (
    DEFAULT_HOST,
    DEFAULT_STATIC_DIR,
    get_float,
    get_host,
    get_log_level,
    get_port,
    get_static_dir,
)

DEFAULT_READ_TIMEOUT_SEC = 5.0
DEFAULT_READ_HEADER_TIMEOUT_SEC = 3.0
DEFAULT_WRITE_TIMEOUT_SEC = 10.0
DEFAULT_IDLE_TIMEOUT_SEC = 60.0
DEFAULT_SHUTDOWN_TIMEOUT_SEC = 10.0


@dataclass(frozen=True)
class ServerTimeouts:
    """
    Server timeout configuration, all in seconds.

    read: whole request body read (TimeoutMiddleware, 408).
    read_header: request line + headers; uvicorn has no per-request header
    deadline, so this value is reported at startup but not enforced.
    write: handler + response write (TimeoutMiddleware, 503).
    idle: keep-alive between requests (uvicorn timeout_keep_alive).
    shutdown: deadline for draining in-flight requests on shutdown.
    """

    read: float = DEFAULT_READ_TIMEOUT_SEC
    read_header: float = DEFAULT_READ_HEADER_TIMEOUT_SEC
    write: float = DEFAULT_WRITE_TIMEOUT_SEC
    idle: float = DEFAULT_IDLE_TIMEOUT_SEC
    shutdown: float = DEFAULT_SHUTDOWN_TIMEOUT_SEC


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, built once at startup."""

    host: str = DEFAULT_HOST
    port: int = 8080
    static_dir: Path = DEFAULT_STATIC_DIR
    timeouts: ServerTimeouts = field(default_factory=ServerTimeouts)
    log_level: str = "info"

    @property
    def bind_address(self) -> str:
        return f"{self.host}:{self.port}"


def get_settings() -> Settings:
    """
    Return the current application settings from the environment.

    Raises ValueError when PORT, LOG_LEVEL or a timeout value is malformed.
    """
    timeouts = ServerTimeouts(
        read=get_float("READ_TIMEOUT_SEC", DEFAULT_READ_TIMEOUT_SEC),
        read_header=get_float("READ_HEADER_TIMEOUT_SEC", DEFAULT_READ_HEADER_TIMEOUT_SEC),
        write=get_float("WRITE_TIMEOUT_SEC", DEFAULT_WRITE_TIMEOUT_SEC),
        idle=get_float("IDLE_TIMEOUT_SEC", DEFAULT_IDLE_TIMEOUT_SEC),
        shutdown=get_float("SHUTDOWN_TIMEOUT_SEC", DEFAULT_SHUTDOWN_TIMEOUT_SEC),
    )
    return Settings(
        host=get_host(),
        port=get_port(),
        static_dir=get_static_dir(),
        timeouts=timeouts,
        log_level=get_log_level(),
    )
