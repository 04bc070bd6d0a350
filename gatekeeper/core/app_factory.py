"""Application factory for the FastAPI app.

Centralizes app construction (logging, counter store, guards, middleware,
handlers, routers) so tests can build an app around an in-memory store and
their own guards.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence

from fastapi import FastAPI

from gatekeeper.adapters.counter_store import AbstractCounterStore, create_counter_store
from gatekeeper.api.routes import admin_router, health_router
from gatekeeper.core.config import Settings, settings as default_settings
from gatekeeper.core.exception_handlers import setup_exception_handlers
from gatekeeper.core.logging import configure_logging
from gatekeeper.core.middleware import request_id_middleware
from gatekeeper.core.rate_limit import RateLimitGuard, default_guards
from gatekeeper.services.admin import RateLimitAdmin


def create_app(
    *,
    store: AbstractCounterStore | None = None,
    guards: Sequence[RateLimitGuard] | None = None,
    config: Settings | None = None,
    configure_logs: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        store: Counter store to use; built from settings when omitted.
        guards: Rate limit guards to install; ``default_guards`` when omitted.
        config: Settings; the global settings when omitted.
        configure_logs: Whether to (re)configure the root logger.

    Returns:
        Configured FastAPI app. Host applications include their own routers
        on it; guards match requests by path prefix.
    """
    cfg = config or default_settings
    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(cfg.log)

    counter_store = store if store is not None else create_counter_store(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await counter_store.close()

    app = FastAPI(
        title="Gatekeeper",
        description=(
            "Admission control for HTTP services: fixed-window rate limits backed by "
            "a shared counter store, with presets, tiered quotas, anomaly-based "
            "tightening and admin endpoints to inspect and reset counters."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.counter_store = counter_store
    app.state.rate_limit_admin = RateLimitAdmin(counter_store)

    # Guards first; the request id middleware is added last so it is outermost
    for guard in guards if guards is not None else default_guards(counter_store, cfg):
        app.middleware("http")(guard)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(admin_router)
    app.include_router(health_router)

    return app
