"""
Core utilities — shared exceptions and cross-cutting concerns.

Provides the error types used by the API server and its lifecycle.
"""

from backend_pulse.core.exceptions import (
    LifecycleError,
    PulseError,
    ServerClosedError,
    ShutdownTimeoutError,
)

__all__ = [
    "LifecycleError",
    "PulseError",
    "ServerClosedError",
    "ShutdownTimeoutError",
]
