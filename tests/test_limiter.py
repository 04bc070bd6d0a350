"""Tests for the fixed-window admission algorithm."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from gatekeeper.adapters.counter_store import InMemoryCounterStore
from gatekeeper.core.errors import ConfigurationError, StoreUnavailableError
from gatekeeper.services.admin import RateLimitAdmin
from gatekeeper.services.limiter import RateLimiter
from gatekeeper.services.models import (
    DynamicLimit,
    RateLimitConfig,
    RequestContext,
    StaticLimit,
)


class YieldingCounterStore(InMemoryCounterStore):
    """In-memory store that suspends before each counter operation.

    Lets concurrent admissions interleave between the read and the increment.
    """

    async def get(self, key: str) -> int | None:
        await asyncio.sleep(0)
        return await super().get(key)

    async def increment_and_maybe_expire(self, key: str, window_seconds: int) -> int:
        await asyncio.sleep(0)
        return await super().increment_and_maybe_expire(key, window_seconds)


def _ctx(address: str = "10.0.0.1", **kwargs) -> RequestContext:
    return RequestContext(client_address=address, **kwargs)


def _limiter(store, fake_time, **config) -> RateLimiter:
    config.setdefault("key_prefix", "test:")
    return RateLimiter(RateLimitConfig(**config), store, clock=fake_time.time)


class TestAdmission:
    @pytest.mark.asyncio
    async def test_allows_up_to_max_then_denies(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, window_ms=60_000, max=3)

        remaining = []
        for _ in range(3):
            admission = await limiter.admit(_ctx())
            assert admission.allowed is True
            remaining.append(admission.decision.remaining)
        assert remaining == [2, 1, 0]

        denied = (await limiter.admit(_ctx())).decision
        assert denied.allowed is False
        assert denied.remaining == 0
        assert denied.retry_after_seconds == 60
        assert denied.reset_at == datetime.fromtimestamp(fake_time.current + 60, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_denied_request_is_not_counted(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, window_ms=60_000, max=2)

        for _ in range(5):
            await limiter.admit(_ctx())

        assert await store.get("test:ip:10.0.0.1") == 2

    @pytest.mark.asyncio
    async def test_allowed_decision_carries_reset_time(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, window_ms=60_000, max=5)

        first = (await limiter.admit(_ctx())).decision
        fake_time.advance(15)
        second = (await limiter.admit(_ctx())).decision

        assert first.retry_after_seconds is None
        assert first.reset_at == datetime.fromtimestamp(1_060.0, tz=timezone.utc)
        # The window is anchored to the first request and never extended
        assert second.reset_at == datetime.fromtimestamp(1_060.0, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, window_ms=60_000, max=2)

        outcomes = []
        for address in ["A", "B", "A", "B", "A", "B"]:
            outcomes.append((address, (await limiter.admit(_ctx(address))).allowed))

        assert outcomes == [
            ("A", True), ("B", True), ("A", True), ("B", True), ("A", False), ("B", False),
        ]

    @pytest.mark.asyncio
    async def test_window_expiry_starts_fresh_window(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, window_ms=10_000, max=1)

        assert (await limiter.admit(_ctx())).allowed is True
        assert (await limiter.admit(_ctx())).allowed is False

        fake_time.advance(10)
        fresh = await limiter.admit(_ctx())
        assert fresh.allowed is True
        assert await store.get("test:ip:10.0.0.1") == 1
        assert await store.ttl("test:ip:10.0.0.1") == 10

    @pytest.mark.asyncio
    async def test_reset_makes_next_request_first_in_window(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, window_ms=60_000, max=1)
        admin = RateLimitAdmin(store, clock=fake_time.time)

        await limiter.admit(_ctx())
        assert (await limiter.admit(_ctx())).allowed is False

        assert await admin.reset_limit("test:ip:10.0.0.1") is True
        decision = (await limiter.admit(_ctx())).decision
        assert decision.allowed is True
        assert decision.remaining == 0
        assert await store.get("test:ip:10.0.0.1") == 1

    @pytest.mark.asyncio
    async def test_authenticated_principal_keys_by_user(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, max=2)

        await limiter.admit(_ctx("1.1.1.1", principal_id="123"))
        await limiter.admit(_ctx("2.2.2.2", principal_id="123"))
        denied = await limiter.admit(_ctx("3.3.3.3", principal_id="123"))

        assert denied.allowed is False
        assert denied.key == "test:user:123"

    @pytest.mark.asyncio
    async def test_concurrent_requests_admit_exactly_max(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, window_ms=60_000, max=25)

        admissions = await asyncio.gather(*(limiter.admit(_ctx()) for _ in range(50)))

        assert sum(a.allowed for a in admissions) == 25
        assert sum(not a.allowed for a in admissions) == 25
        assert all(a.decision.remaining >= 0 for a in admissions)

    @pytest.mark.asyncio
    async def test_interleaved_requests_admit_exactly_max(self, fake_time) -> None:
        store = YieldingCounterStore(clock=fake_time.time)
        limiter = _limiter(store, fake_time, window_ms=60_000, max=5)

        admissions = await asyncio.gather(*(limiter.admit(_ctx()) for _ in range(10)))

        assert sum(a.allowed for a in admissions) == 5
        assert sum(not a.allowed for a in admissions) == 5
        assert await store.get("test:ip:10.0.0.1") == 5
        assert (await RateLimitAdmin(store, clock=fake_time.time).get_status("test:ip:10.0.0.1")).count == 5

    @pytest.mark.asyncio
    async def test_failed_release_still_denies(self, fake_time, caplog) -> None:
        store = YieldingCounterStore(clock=fake_time.time)
        store.decrement = AsyncMock(side_effect=ConnectionResetError("reset"))
        limiter = _limiter(store, fake_time, window_ms=60_000, max=2)

        with caplog.at_level(logging.WARNING, logger="gatekeeper.services.limiter"):
            admissions = await asyncio.gather(*(limiter.admit(_ctx()) for _ in range(4)))

        assert [a.allowed for a in admissions].count(True) == 2
        assert store.decrement.await_count == 2
        assert any(r.getMessage() == "rate_limit.release_failed" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_concurrent_load_on_distinct_keys(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, window_ms=60_000, max=3)

        admissions = await asyncio.gather(
            *(limiter.admit(_ctx(address)) for address in ["A", "B"] * 6)
        )

        for address in ["A", "B"]:
            assert sum(a.allowed for a in admissions if a.key == f"test:ip:{address}") == 3
            assert await store.get(f"test:ip:{address}") == 3


class TestHooks:
    @pytest.mark.asyncio
    async def test_skip_bypasses_store(self, fake_time) -> None:
        store = AsyncMock()
        limiter = RateLimiter(
            RateLimitConfig(max=1, skip=lambda ctx: ctx.client_address == "127.0.0.1"),
            store,
            clock=fake_time.time,
        )

        admission = await limiter.admit(_ctx("127.0.0.1"))

        assert admission.allowed is True
        assert admission.decision.skipped is True
        store.get.assert_not_called()
        store.increment_and_maybe_expire.assert_not_called()

    @pytest.mark.asyncio
    async def test_custom_key_generator_replaces_default(self, store, fake_time) -> None:
        async def by_tenant(ctx: RequestContext) -> str:
            return f"tenant:{ctx.header('x-tenant')}"

        limiter = _limiter(store, fake_time, max=1, key_generator=by_tenant)

        admission = await limiter.admit(_ctx(headers={"x-tenant": "acme"}))

        assert admission.key == "tenant:acme"
        assert await store.get("tenant:acme") == 1

    @pytest.mark.asyncio
    async def test_dynamic_limit_is_resolved_per_request(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, max=lambda ctx: 3 if ctx.plan == "pro" else 1)

        pro = [await limiter.admit(_ctx("P", principal_id="p", plan="pro")) for _ in range(4)]
        free = [await limiter.admit(_ctx("F", principal_id="f")) for _ in range(2)]

        assert [a.allowed for a in pro] == [True, True, True, False]
        assert [a.allowed for a in free] == [True, False]
        assert pro[0].decision.limit == 3

    @pytest.mark.asyncio
    async def test_failing_hook_fails_open(self, store, fake_time, caplog) -> None:
        def broken(ctx: RequestContext) -> str:
            raise RuntimeError("identity lookup failed")

        limiter = _limiter(store, fake_time, max=1, key_generator=broken)

        with caplog.at_level(logging.ERROR, logger="gatekeeper.services.limiter"):
            admission = await limiter.admit(_ctx())

        assert admission.allowed is True
        assert admission.decision.degraded is True
        assert any(r.getMessage() == "rate_limit.hook_failed" for r in caplog.records)
        assert len(store) == 0


class TestFailOpen:
    @pytest.mark.asyncio
    async def test_store_timeout_allows_and_logs(self, fake_time, caplog) -> None:
        async def hang(key: str) -> int:
            await asyncio.sleep(10)
            return 0

        store = AsyncMock()
        store.backend_name = "redis"
        store.get.side_effect = hang
        limiter = RateLimiter(
            RateLimitConfig(window_ms=60_000, max=3),
            store,
            clock=fake_time.time,
            store_timeout_seconds=0.01,
        )

        with caplog.at_level(logging.ERROR, logger="gatekeeper.services.limiter"):
            admission = await limiter.admit(_ctx())

        assert admission.allowed is True
        assert admission.decision.degraded is True
        records = [r for r in caplog.records if r.getMessage() == "rate_limit.store_unavailable"]
        assert records and records[0].error_code == "store_timeout"

    @pytest.mark.asyncio
    async def test_store_error_on_increment_allows(self, fake_time) -> None:
        store = AsyncMock()
        store.backend_name = "redis"
        store.get.return_value = None
        store.increment_and_maybe_expire.side_effect = StoreUnavailableError(
            code="store_unavailable", message="Redis increment failed"
        )
        limiter = RateLimiter(RateLimitConfig(max=3), store, clock=fake_time.time)

        admission = await limiter.admit(_ctx())

        assert admission.allowed is True
        assert admission.decision.degraded is True

    @pytest.mark.asyncio
    async def test_unexpected_store_exception_allows(self, fake_time) -> None:
        store = AsyncMock()
        store.backend_name = "custom"
        store.get.side_effect = ConnectionResetError("peer reset")
        limiter = RateLimiter(RateLimitConfig(max=3), store, clock=fake_time.time)

        assert (await limiter.admit(_ctx())).allowed is True


class TestDeferredCounting:
    @pytest.mark.asyncio
    async def test_settle_counts_exactly_once(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, max=5, skip_successful_requests=True)

        admission = await limiter.admit(_ctx())
        assert await store.get("test:ip:10.0.0.1") is None

        first = await admission.settle(success=False)
        second = await admission.settle(success=False)

        assert first.remaining == 4
        assert second == first
        assert await store.get("test:ip:10.0.0.1") == 1

    @pytest.mark.asyncio
    async def test_skip_failed_requests_counts_only_successes(self, store, fake_time) -> None:
        limiter = _limiter(store, fake_time, max=5, skip_failed_requests=True)

        await (await limiter.admit(_ctx())).settle(success=False)
        await (await limiter.admit(_ctx())).settle(success=True)

        assert await store.get("test:ip:10.0.0.1") == 1

    @pytest.mark.asyncio
    async def test_settle_store_failure_fails_open(self, fake_time) -> None:
        store = AsyncMock()
        store.backend_name = "redis"
        store.get.return_value = 0
        store.increment_and_maybe_expire.side_effect = StoreUnavailableError(
            code="store_unavailable", message="down"
        )
        limiter = RateLimiter(
            RateLimitConfig(max=5, skip_successful_requests=True), store, clock=fake_time.time
        )

        admission = await limiter.admit(_ctx())
        decision = await admission.settle(success=False)

        assert decision.allowed is True
        assert decision.degraded is True


class TestConfigValidation:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"window_ms": 0},
            {"window_ms": -5},
            {"window_ms": 1.5},
            {"max": 0},
            {"max": True},
            {"status_code": 200},
        ],
    )
    def test_invalid_config_fails_fast(self, kwargs: dict) -> None:
        with pytest.raises(ConfigurationError):
            RateLimitConfig(**kwargs)

    def test_max_is_normalized_to_limit_variant(self) -> None:
        assert RateLimitConfig(max=7).max == StaticLimit(7)
        assert isinstance(RateLimitConfig(max=lambda ctx: 7).max, DynamicLimit)

    def test_window_seconds_rounds_up(self) -> None:
        assert RateLimitConfig(window_ms=1_500).window_seconds == 2
