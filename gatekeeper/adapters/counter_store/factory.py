"""Factory for creating the counter store from settings."""

from __future__ import annotations

from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.adapters.counter_store.in_memory import InMemoryCounterStore
from gatekeeper.adapters.counter_store.redis_store import RedisCounterStore
from gatekeeper.core.config import Settings, settings as default_settings
from gatekeeper.core.errors import ConfigurationError


def create_counter_store(config: Settings | None = None) -> AbstractCounterStore:
    """Instantiate the counter store selected by ``RATE_LIMIT_BACKEND``.

    Args:
        config: Settings to read; defaults to the global settings.

    Returns:
        AbstractCounterStore: Configured store instance.

    Raises:
        ConfigurationError: If the backend name is unknown.
    """
    cfg = config or default_settings
    backend = cfg.rate_limit.backend.lower()

    if backend == "redis":
        return RedisCounterStore.from_url(
            cfg.redis.url,
            socket_timeout=cfg.redis.socket_timeout_seconds,
            socket_connect_timeout=cfg.redis.socket_connect_timeout_seconds,
        )

    if backend == "memory":
        return InMemoryCounterStore()

    raise ConfigurationError(
        code="unknown_store_backend",
        message=f"Unknown counter store backend: '{backend}'. Supported backends: redis, memory",
        details={"field": "rate_limit.backend", "actual_value": backend},
    )
