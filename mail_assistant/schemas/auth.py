"""Authentication and watch-related Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel


def to_epoch_millis(value: datetime | None) -> int | None:
    """Gmail (and the web client) express watch expiration in epoch milliseconds."""
    if value is None:
        return None
    return int(value.timestamp() * 1000)


class WatchInfo(BaseModel):
    """Derived watch state for the current identity."""
    state: str
    expiration: int | None = None
    historyId: str | None = None


class MeResponse(BaseModel):
    """Response schema for GET /auth/me endpoint."""
    email: str
    name: str | None = None
    picture: str | None = None
    watch: WatchInfo


class WatchResponse(BaseModel):
    """Response schema for POST /auth/watch.

    ``skipped`` is True when the existing watch was still valid beyond the
    renewal margin and Gmail was not contacted.
    """
    success: bool = True
    historyId: str | None = None
    expiration: int | None = None
    skipped: bool = False


class StopWatchResponse(BaseModel):
    success: bool = True
