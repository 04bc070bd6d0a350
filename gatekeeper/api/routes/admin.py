"""Administrative rate limit routes: status snapshot and reset."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from gatekeeper.core.auth import verify_admin_key
from gatekeeper.core.errors import StoreUnavailableError
from gatekeeper.schemas.rate_limit import RateLimitResetResponse, RateLimitStatusResponse
from gatekeeper.services.admin import RateLimitAdmin

router = APIRouter(
    prefix="/admin/rate-limits",
    tags=["Admin"],
    dependencies=[Depends(verify_admin_key)],
)


def get_admin(request: Request) -> RateLimitAdmin:
    """Admin service bound to the application's counter store."""
    return request.app.state.rate_limit_admin


@router.get("/{key:path}", response_model=RateLimitStatusResponse)
async def get_rate_limit_status(
    key: str,
    admin: RateLimitAdmin = Depends(get_admin),
) -> RateLimitStatusResponse:
    """Return the counter, TTL and reset time for a full limiter key.

    Raises:
        StoreUnavailableError: When the counter store cannot be reached (503).
        CounterValueError: When the key holds something other than a counter (409).
    """
    status = await admin.get_status(key)
    if status is None:
        raise StoreUnavailableError(
            code="store_unavailable",
            message="Rate limit status is temporarily unavailable",
        )
    return RateLimitStatusResponse(key=key, count=status.count, ttl=status.ttl, reset_at=status.reset_at)


@router.delete("/{key:path}", response_model=RateLimitResetResponse)
async def reset_rate_limit(
    key: str,
    admin: RateLimitAdmin = Depends(get_admin),
) -> RateLimitResetResponse:
    """Delete the counter so the caller starts a fresh window."""
    return RateLimitResetResponse(key=key, reset=await admin.reset_limit(key))
