"""Per-request ceilings derived from the caller's subscription tier."""

from __future__ import annotations

from dataclasses import replace
from typing import Mapping

from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.core.errors import ConfigurationError
from gatekeeper.services.limiter import RateLimiter
from gatekeeper.services.models import DynamicLimit, RateLimitConfig, RequestContext, StaticLimit

TIER_MULTIPLIERS: dict[str, int] = {
    "premium": 10,
    "pro": 5,
    "basic": 2,
}


def tiered_limit(base_max: int, multipliers: Mapping[str, int] | None = None) -> DynamicLimit:
    """Build a limit that scales ``base_max`` by the caller's plan.

    Unknown plans and anonymous callers get ``base_max``.
    """
    if isinstance(base_max, bool) or not isinstance(base_max, int) or base_max < 1:
        raise ConfigurationError(
            code="invalid_max",
            message="base max must be an integer >= 1",
            details={"field": "max", "actual_value": base_max},
        )
    table = dict(TIER_MULTIPLIERS if multipliers is None else multipliers)

    async def resolve(context: RequestContext) -> int:
        if context.principal_id is None:
            return base_max
        return base_max * table.get((context.plan or "").lower(), 1)

    return DynamicLimit(resolve)


def create_dynamic_limiter(
    base: RateLimitConfig,
    store: AbstractCounterStore,
    *,
    multipliers: Mapping[str, int] | None = None,
    store_timeout_seconds: float | None = None,
) -> RateLimiter:
    """Wrap ``base`` so its static ceiling is scaled per subscription tier."""
    if not isinstance(base.max, StaticLimit):
        raise ConfigurationError(
            code="invalid_max",
            message="dynamic limiter requires a static base max",
            details={"field": "max"},
        )
    config = replace(base, max=tiered_limit(base.max.value, multipliers))
    return RateLimiter(config, store, store_timeout_seconds=store_timeout_seconds)
