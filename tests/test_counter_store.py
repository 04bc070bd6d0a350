"""Unit tests for the counter store adapters."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gatekeeper.adapters.counter_store import InMemoryCounterStore, RedisCounterStore, create_counter_store
from gatekeeper.core.config import Settings
from gatekeeper.core.errors import ConfigurationError, CounterValueError, StoreUnavailableError


class TestInMemoryCounterStore:
    @pytest.mark.asyncio
    async def test_first_increment_creates_key_with_ttl(self, store, fake_time) -> None:
        assert await store.get("k") is None
        assert await store.ttl("k") is None

        assert await store.increment_and_maybe_expire("k", 60) == 1
        assert await store.get("k") == 1
        assert await store.ttl("k") == 60

    @pytest.mark.asyncio
    async def test_later_increments_keep_the_original_ttl(self, store, fake_time) -> None:
        await store.increment_and_maybe_expire("k", 60)
        fake_time.advance(20)

        assert await store.increment_and_maybe_expire("k", 60) == 2
        assert await store.ttl("k") == 40

    @pytest.mark.asyncio
    async def test_expired_key_starts_a_new_window(self, store, fake_time) -> None:
        await store.increment_and_maybe_expire("k", 10)
        await store.increment_and_maybe_expire("k", 10)
        fake_time.advance(10)

        assert await store.get("k") is None
        assert await store.increment_and_maybe_expire("k", 10) == 1
        assert await store.ttl("k") == 10

    @pytest.mark.asyncio
    async def test_delete(self, store) -> None:
        await store.increment_and_maybe_expire("k", 60)

        assert await store.delete("k") is True
        assert await store.delete("k") is False
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, store) -> None:
        counts = await asyncio.gather(
            *(store.increment_and_maybe_expire("k", 60) for _ in range(50))
        )

        assert sorted(counts) == list(range(1, 51))
        assert await store.get("k") == 50

    @pytest.mark.asyncio
    async def test_read_write_opaque_values(self, store, fake_time) -> None:
        await store.write("pattern:1.2.3.4", '{"error_rate": 0.9}', ttl_seconds=30)
        assert await store.read("pattern:1.2.3.4") == '{"error_rate": 0.9}'

        fake_time.advance(30)
        assert await store.read("pattern:1.2.3.4") is None

    @pytest.mark.asyncio
    async def test_rejects_invalid_window(self, store) -> None:
        with pytest.raises(ValueError):
            await store.increment_and_maybe_expire("k", 0)

    @pytest.mark.asyncio
    async def test_decrement_takes_back_one_and_keeps_ttl(self, store, fake_time) -> None:
        await store.increment_and_maybe_expire("k", 60)
        await store.increment_and_maybe_expire("k", 60)
        fake_time.advance(15)

        assert await store.decrement("k") == 1
        assert await store.ttl("k") == 45

    @pytest.mark.asyncio
    async def test_decrement_never_creates_a_key(self, store, fake_time) -> None:
        await store.increment_and_maybe_expire("k", 10)
        fake_time.advance(10)

        assert await store.decrement("k") is None
        assert await store.decrement("missing") is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_non_counter_value_is_reported(self, store) -> None:
        await store.write("pattern:1.2.3.4", '{"error_rate": 0.9}')

        with pytest.raises(CounterValueError) as exc_info:
            await store.get("pattern:1.2.3.4")
        assert exc_info.value.code == "invalid_counter_value"
        with pytest.raises(CounterValueError):
            await store.increment_and_maybe_expire("pattern:1.2.3.4", 60)


def _redis_store(**client_overrides) -> tuple[RedisCounterStore, MagicMock, AsyncMock]:
    client = MagicMock()
    script = AsyncMock(return_value=1)
    client.register_script.return_value = script
    for name, value in client_overrides.items():
        setattr(client, name, value)
    return RedisCounterStore(client), client, script


class TestRedisCounterStore:
    @pytest.mark.asyncio
    async def test_increment_runs_single_script_call(self) -> None:
        store, client, script = _redis_store()
        script.return_value = 3

        assert await store.increment_and_maybe_expire("api:ip:1.2.3.4", 60) == 3
        script.assert_awaited_once_with(keys=["api:ip:1.2.3.4"], args=[60])
        lua = client.register_script.call_args_list[0].args[0]
        assert "INCR" in lua and "EXPIRE" in lua

    @pytest.mark.asyncio
    async def test_get_parses_integers(self) -> None:
        store, _, _ = _redis_store(get=AsyncMock(side_effect=["4", None]))

        assert await store.get("k") == 4
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_get_rejects_non_counter_values(self) -> None:
        store, _, _ = _redis_store(get=AsyncMock(return_value='{"error_rate": 0.9}'))

        with pytest.raises(CounterValueError):
            await store.get("pattern:1.2.3.4")

    @pytest.mark.asyncio
    async def test_decrement_only_touches_existing_keys(self) -> None:
        store, client, script = _redis_store()
        script.side_effect = [4, None]

        assert await store.decrement("api:ip:1.2.3.4") == 4
        assert await store.decrement("api:ip:1.2.3.4") is None
        script.assert_awaited_with(keys=["api:ip:1.2.3.4"])
        lua = client.register_script.call_args_list[1].args[0]
        assert "EXISTS" in lua and "DECR" in lua

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw, expected", [(42, 42), (-1, None), (-2, None)])
    async def test_ttl_maps_sentinels_to_none(self, raw, expected) -> None:
        store, _, _ = _redis_store(ttl=AsyncMock(return_value=raw))

        assert await store.ttl("k") == expected

    @pytest.mark.asyncio
    async def test_delete_reports_removal(self) -> None:
        store, _, _ = _redis_store(delete=AsyncMock(side_effect=[1, 0]))

        assert await store.delete("k") is True
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    async def test_redis_errors_surface_as_store_unavailable(self) -> None:
        store, _, script = _redis_store(get=AsyncMock(side_effect=RedisConnectionError("down")))
        script.side_effect = asyncio.TimeoutError()

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.get("k")
        assert exc_info.value.details["operation"] == "get"

        with pytest.raises(StoreUnavailableError):
            await store.increment_and_maybe_expire("k", 60)

    @pytest.mark.asyncio
    async def test_ping_failure_returns_false(self) -> None:
        store, _, _ = _redis_store(ping=AsyncMock(side_effect=RedisConnectionError("down")))

        assert await store.ping() is False


class TestFactory:
    def test_builds_in_memory_store(self) -> None:
        cfg = Settings()
        cfg.rate_limit.backend = "memory"

        assert isinstance(create_counter_store(cfg), InMemoryCounterStore)

    def test_builds_redis_store(self) -> None:
        cfg = Settings()
        cfg.rate_limit.backend = "redis"

        assert isinstance(create_counter_store(cfg), RedisCounterStore)

    def test_unknown_backend_fails_fast(self) -> None:
        cfg = Settings()
        cfg.rate_limit.backend = "memcached"

        with pytest.raises(ConfigurationError) as exc_info:
            create_counter_store(cfg)
        assert exc_info.value.code == "unknown_store_backend"
