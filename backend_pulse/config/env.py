"""
Environment variable loading for Backend Pulse.

- PORT: TCP port to listen on (default: 8080)
- HOST: bind host (default: 0.0.0.0, all interfaces)
- STATIC_DIR: directory served at / and /static/ (default: bundled static/)
- *_TIMEOUT_SEC: server timeouts in seconds
- LOG_LEVEL: debug | info | warning (warn) | error | critical (default: info)
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from backend_pulse.pulse_logging import resolve_log_level

# Project root: config is backend_pulse/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATH = _ROOT / ".env"

DEFAULT_PORT = "8080"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_STATIC_DIR = _PACKAGE_DIR / "static"


def load_pulse_env() -> None:
    """Load .env from project root. Safe to call multiple times; existing env wins."""
    from dotenv import load_dotenv

    load_dotenv(_ENV_PATH, override=False)


def get_port() -> int:
    """
    Return PORT from env as an int. Blank or unset means 8080.

    Raises ValueError for non-numeric or out-of-range values.
    """
    load_pulse_env()
    raw = (os.getenv("PORT") or "").strip() or DEFAULT_PORT
    try:
        port = int(raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer, got {raw!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"PORT out of range: {port}")
    return port


def get_host() -> str:
    load_pulse_env()
    return (os.getenv("HOST") or "").strip() or DEFAULT_HOST


def get_static_dir() -> Path:
    """Return STATIC_DIR from env, or the static/ directory shipped with the package."""
    load_pulse_env()
    raw = (os.getenv("STATIC_DIR") or "").strip()
    return Path(raw) if raw else DEFAULT_STATIC_DIR


def get_float(name: str, default: float) -> float:
    """
    Return a positive float from env var `name`, or `default` when unset/blank.

    Raises ValueError when the value is not a number or not positive.
    """
    load_pulse_env()
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def get_log_level() -> str:
    """Return LOG_LEVEL normalized for uvicorn (e.g. WARN -> "warning"). Raises ValueError if unknown."""
    load_pulse_env()
    return resolve_log_level(os.getenv("LOG_LEVEL"))
