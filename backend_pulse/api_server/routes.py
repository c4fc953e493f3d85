"""
API route definitions — JSON endpoints.

- /health: liveness check with the current server time.
- /api/time: current time as unix seconds and RFC 3339.

Both answer any of ANY_METHOD; the method is not inspected.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

router = APIRouter()

# Every route answers these; HEAD gets the GET headers without a body
ANY_METHOD = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class HealthResponse(BaseModel):
    """/health response."""

    ok: bool = Field(True, description="Always true while the server is serving")
    time: str = Field(..., description="Current server time (RFC 3339)")


class TimeResponse(BaseModel):
    """/api/time response."""

    unix: int = Field(..., description="Seconds since the Unix epoch")
    iso: str = Field(..., description="Same instant as unix, formatted RFC 3339")


def now() -> datetime:
    """Current local time, timezone-aware."""
    return datetime.now().astimezone()


def rfc3339(moment: datetime) -> str:
    """Format `moment` as second-precision RFC 3339, using Z for UTC."""
    text = moment.replace(microsecond=0).isoformat()
    if text.endswith("+00:00"):
        return text[:-6] + "Z"
    return text


@router.api_route("/health", methods=ANY_METHOD, response_model=HealthResponse)
def health() -> HealthResponse:
    """Liveness check: API is up."""
    return HealthResponse(ok=True, time=rfc3339(now()))


@router.api_route("/api/time", methods=ANY_METHOD, response_model=TimeResponse)
def api_time() -> TimeResponse:
    current = now()
    return TimeResponse(unix=int(current.timestamp()), iso=rfc3339(current))
