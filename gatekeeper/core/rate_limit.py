"""HTTP guard applying admission control to FastAPI routes.

This module wires the limiter into the HTTP layer.

Design goals:
- Minimal coupling: routes know nothing about rate limiting; a guard is
  registered per path prefix with ``app.middleware("http")(guard)``.
- Swap-friendly: the counter store is injected, so tests run against the
  in-memory store and production against Redis.
- Fail open: the guard never turns an internal failure into an error response.

Outcome: a guarded request succeeded when the route answered with a status
below 400; an exception or cancellation counts as a failure.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Protocol

from fastapi import Request, Response

from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.core.config import Settings, settings as default_settings
from gatekeeper.services.anomaly import AnomalyDetector
from gatekeeper.services.deny import default_deny_handler, rate_limit_headers
from gatekeeper.services.key_strategy import resolve_client_address
from gatekeeper.services.limiter import Admission
from gatekeeper.services.models import RateLimitConfig, RequestContext, SkipPredicate
from gatekeeper.services.presets import create_preset_limiter

logger = logging.getLogger(__name__)


class Admitter(Protocol):
    """Anything that can admit a request: a RateLimiter or an AnomalyDetector."""

    config: RateLimitConfig

    async def admit(self, context: RequestContext) -> Admission: ...


def parse_csv(value: str | None) -> set[str]:
    """Parse a comma-separated setting into a set of trimmed, non-empty items."""
    if not value:
        return set()
    return {item.strip() for item in value.split(",") if item.strip()}


def _principal_attr(user: Any, name: str) -> Any:
    if user is None:
        return None
    if isinstance(user, dict):
        return user.get(name)
    return getattr(user, name, None)


def request_context_from_request(request: Request, config: Settings | None = None) -> RequestContext:
    """Snapshot a Starlette request into a ``RequestContext``.

    The authenticated principal is read from ``request.state.user`` (dict or
    object with ``id`` and optional ``plan``), populated upstream by the
    identity provider.
    """
    cfg = config or default_settings
    headers = {name.lower(): value for name, value in request.headers.items()}
    user = getattr(request.state, "user", None)
    principal_id = _principal_attr(user, "id")
    plan = _principal_attr(user, "plan")

    return RequestContext(
        principal_id=str(principal_id) if principal_id is not None else None,
        plan=str(plan) if plan is not None else None,
        client_address=resolve_client_address(
            headers,
            request.client.host if request.client else None,
            override_header=cfg.rate_limit.client_ip_header,
            trust_proxy_headers=cfg.rate_limit.trust_proxy_headers,
        ),
        headers=headers,
        method=request.method,
        path=request.url.path,
    )


def whitelist_skip(addresses: Iterable[str]) -> SkipPredicate:
    """Build a skip predicate exempting the given client addresses."""
    allowed = frozenset(addresses)

    async def skip(context: RequestContext) -> bool:
        return context.client_address in allowed

    return skip


class RateLimitGuard:
    """HTTP middleware enforcing one limiter on one path prefix.

    Usage:
        guard = RateLimitGuard(login_limiter(store), path_prefix="/v1/auth/login", methods={"POST"})
        app.middleware("http")(guard)
    """

    def __init__(
        self,
        limiter: Admitter,
        *,
        path_prefix: str = "/",
        methods: Iterable[str] | None = None,
        config: Settings | None = None,
    ) -> None:
        self.limiter = limiter
        self.path_prefix = path_prefix
        self.methods = {method.upper() for method in methods} if methods else None
        self._settings = config or default_settings

    def matches(self, request: Request) -> bool:
        if self.methods is not None and request.method.upper() not in self.methods:
            return False
        path = request.url.path
        prefix = self.path_prefix.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")

    async def __call__(self, request: Request, call_next) -> Response:
        if not self._settings.rate_limit.enabled or not self.matches(request):
            return await call_next(request)

        context = request_context_from_request(request, self._settings)
        admission = await self.limiter.admit(context)

        if not admission.allowed:
            handler = admission.config.handler or default_deny_handler
            return await handler.produce_deny_response(context, admission.decision, admission.config)

        success = False
        try:
            response: Response = await call_next(request)
            success = response.status_code < 400
        finally:
            decision = await admission.settle(success)

        if (
            self._settings.rate_limit.include_headers
            and not decision.skipped
            and not decision.degraded
        ):
            response.headers.update(rate_limit_headers(decision))
        return response


def default_guards(store: AbstractCounterStore, config: Settings | None = None) -> list[RateLimitGuard]:
    """Guards installed by the application factory.

    - General API traffic under ``/v1`` uses the ``api`` preset, exempting
      whitelisted addresses.
    - With ``RATE_LIMIT_ANOMALY_ENABLED`` the anomaly detector guards ``/v1``
      as well.
    """
    cfg = config or default_settings
    timeout = cfg.rate_limit.store_timeout_seconds
    whitelist = parse_csv(cfg.rate_limit.whitelist)

    overrides: dict[str, Any] = {}
    if whitelist:
        overrides["skip"] = whitelist_skip(whitelist)

    guards = [
        RateLimitGuard(
            create_preset_limiter("api", store, store_timeout_seconds=timeout, **overrides),
            path_prefix="/v1",
            config=cfg,
        )
    ]
    if cfg.rate_limit.anomaly_enabled:
        guards.append(
            RateLimitGuard(
                AnomalyDetector(store, store_timeout_seconds=timeout),
                path_prefix="/v1",
                config=cfg,
            )
        )
    return guards
