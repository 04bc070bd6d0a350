"""Pydantic schemas for the admin rate limit routes."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class RateLimitStatusResponse(BaseModel):
    """Snapshot of one counter."""

    key: str = Field(..., description="Full limiter key, e.g. 'login:ip:10.0.0.1'.")
    count: int = Field(..., ge=0, description="Requests counted in the current window.")
    ttl: int = Field(..., ge=0, description="Seconds until the window resets (0 when unknown).")
    reset_at: datetime | None = Field(
        default=None,
        description="UTC time at which the window resets, or null for unknown keys.",
    )


class RateLimitResetResponse(BaseModel):
    """Result of a reset request."""

    key: str = Field(..., description="Full limiter key that was reset.")
    reset: bool = Field(..., description="False when the counter store could not be reached.")
