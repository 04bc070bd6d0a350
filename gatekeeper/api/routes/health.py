from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Health check endpoint.

    Reports the counter store as ``degraded`` when it cannot be reached. The
    service itself stays up: the guards fail open.
    """

    store = request.app.state.counter_store
    reachable = await store.ping()
    return {
        "status": "ok",
        "counter_store": {"backend": store.backend_name, "status": "ok" if reachable else "degraded"},
    }
