"""
Application-level exceptions.

- ServerClosedError: the serve loop ended because shutdown was requested (expected).
- ShutdownTimeoutError: in-flight requests did not drain before the deadline.
- LifecycleError: a lifecycle operation was called in the wrong state.
"""


class PulseError(Exception):
    """Base class for Backend Pulse errors."""


class LifecycleError(PulseError):
    """Raised when a server lifecycle operation is not valid in the current state."""


class ServerClosedError(PulseError):
    """The serve loop returned after a deliberate shutdown; not a failure."""

    def __init__(self, message: str = "server closed") -> None:
        super().__init__(message)


class ShutdownTimeoutError(PulseError):
    """Graceful shutdown did not finish within its deadline."""

    def __init__(self, timeout: float, pending: int = 0) -> None:
        self.timeout = timeout
        self.pending = pending
        super().__init__(
            f"shutdown deadline of {timeout}s exceeded with {pending} connection(s) still open"
        )
