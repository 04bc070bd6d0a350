"""Named limiter presets for common endpoints.

Presets are plain ``RateLimitConfig`` templates; any field can be overridden
when building a limiter from one.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.core.errors import ConfigurationError
from gatekeeper.services.limiter import RateLimiter
from gatekeeper.services.models import RateLimitConfig

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS


PRESETS: dict[str, RateLimitConfig] = {
    # Only failed logins count against the budget.
    "login": RateLimitConfig(
        window_ms=15 * MINUTE_MS,
        max=5,
        message="Too many login attempts. Please try again in 15 minutes.",
        key_prefix="login:",
        skip_successful_requests=True,
    ),
    "api": RateLimitConfig(
        window_ms=MINUTE_MS,
        max=60,
        message="API request limit exceeded.",
        key_prefix="api:",
    ),
    "upload": RateLimitConfig(
        window_ms=HOUR_MS,
        max=20,
        message="File upload limit exceeded.",
        key_prefix="upload:",
    ),
    "code_generation": RateLimitConfig(
        window_ms=MINUTE_MS,
        max=10,
        message="QR code generation limit exceeded.",
        key_prefix="qr:",
    ),
    "connection": RateLimitConfig(
        window_ms=MINUTE_MS,
        max=5,
        message="Too many connection attempts.",
        key_prefix="socket:",
    ),
}


def preset_config(name: str, **overrides: Any) -> RateLimitConfig:
    """Return the named preset, optionally with some fields replaced.

    Raises:
        ConfigurationError: If the preset does not exist or an override is invalid.
    """
    try:
        base = PRESETS[name]
    except KeyError:
        raise ConfigurationError(
            code="unknown_preset",
            message=f"Unknown rate limit preset: '{name}'. Available: {', '.join(sorted(PRESETS))}",
            details={"actual_value": name},
        ) from None

    if not overrides:
        return base
    try:
        return replace(base, **overrides)
    except TypeError as exc:
        raise ConfigurationError(
            code="invalid_preset_override",
            message=str(exc),
            details={"context": {"preset": name, "overrides": sorted(overrides)}},
        ) from exc


def create_preset_limiter(
    name: str,
    store: AbstractCounterStore,
    *,
    store_timeout_seconds: float | None = None,
    **overrides: Any,
) -> RateLimiter:
    """Build a limiter from a named preset."""
    return RateLimiter(
        preset_config(name, **overrides),
        store,
        store_timeout_seconds=store_timeout_seconds,
        name=name,
    )


def login_limiter(store: AbstractCounterStore, **kwargs: Any) -> RateLimiter:
    return create_preset_limiter("login", store, **kwargs)


def api_limiter(store: AbstractCounterStore, **kwargs: Any) -> RateLimiter:
    return create_preset_limiter("api", store, **kwargs)


def upload_limiter(store: AbstractCounterStore, **kwargs: Any) -> RateLimiter:
    return create_preset_limiter("upload", store, **kwargs)


def code_generation_limiter(store: AbstractCounterStore, **kwargs: Any) -> RateLimiter:
    return create_preset_limiter("code_generation", store, **kwargs)


def connection_limiter(store: AbstractCounterStore, **kwargs: Any) -> RateLimiter:
    return create_preset_limiter("connection", store, **kwargs)
