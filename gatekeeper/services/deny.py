"""Deny-response strategies.

A denied request never reaches the guarded route; the configured
``DenyHandler`` builds the response instead. ``JsonDenyHandler`` is the
default and produces the standard rate limit error body.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from fastapi import Response
from fastapi.responses import JSONResponse

from gatekeeper.services.models import Decision, RateLimitConfig, RequestContext

RATE_LIMIT_EXCEEDED_CODE = "RATE_LIMIT_EXCEEDED"


def rate_limit_headers(decision: Decision) -> dict[str, str]:
    """Build the X-RateLimit-* headers describing ``decision``."""
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
    }
    if decision.reset_at is not None:
        headers["X-RateLimit-Reset"] = decision.reset_at.isoformat()
    return headers


class DenyHandler(ABC):
    """Strategy producing the response for a denied request."""

    @abstractmethod
    async def produce_deny_response(
        self,
        context: RequestContext,
        decision: Decision,
        config: RateLimitConfig,
    ) -> Response:
        raise NotImplementedError


class JsonDenyHandler(DenyHandler):
    """Default strategy: JSON error body plus Retry-After and limit headers."""

    async def produce_deny_response(
        self,
        context: RequestContext,
        decision: Decision,
        config: RateLimitConfig,
    ) -> Response:
        retry_after = decision.retry_after_seconds or config.window_seconds
        headers = rate_limit_headers(decision)
        headers["Retry-After"] = str(retry_after)
        return JSONResponse(
            status_code=config.status_code,
            content={
                "success": False,
                "error": config.message,
                "code": RATE_LIMIT_EXCEEDED_CODE,
                "retryAfter": retry_after,
            },
            headers=headers,
        )


default_deny_handler = JsonDenyHandler()
