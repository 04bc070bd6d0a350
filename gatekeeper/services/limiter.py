"""Fixed-window admission control over a shared counter store.

Algorithm (per request):
1. ``skip(context)`` true -> allowed, nothing counted, store untouched.
2. Resolve the key and the effective ceiling for this request.
3. Read the current count; ``count >= limit`` -> denied, store untouched.
4. Otherwise allowed. The attempt is counted with the store's atomic
   increment-and-expire primitive:
   - immediately, when the policy counts every outcome. The linearized
     count also settles races: a caller that lands past the ceiling is
     denied and its increment is taken back, so denied requests are not
     left counted; or
   - once the guarded operation settles, when the policy skips successful
     or failed requests.

Every failure inside the limiter (store errors, timeouts, broken hooks) is
logged and turned into an allowed, ``degraded`` decision.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.core.errors import KeyResolutionError, StoreUnavailableError
from gatekeeper.services.key_strategy import default_key, hash_key
from gatekeeper.services.models import Decision, RateLimitConfig, RequestContext

logger = logging.getLogger(__name__)


def _utc(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class Admission:
    """Outcome of ``RateLimiter.admit``.

    Holds the decision, the effective config and the resolved key. When the
    decision depends on the guarded operation's outcome, ``settle`` applies
    the deferred count; it does so at most once no matter how often it is
    called (completion and abort paths may both fire).
    """

    def __init__(
        self,
        *,
        decision: Decision,
        config: RateLimitConfig,
        key: str | None = None,
        limiter: "RateLimiter | None" = None,
        deferred: bool = False,
    ) -> None:
        self.decision = decision
        self.config = config
        self.key = key
        self._limiter = limiter
        self._deferred = deferred
        self._settled = False

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"Admission(allowed={self.allowed}, deferred={self._deferred}, "
            f"settled={self._settled}, decision={self.decision!r})"
        )

    @property
    def allowed(self) -> bool:
        return self.decision.allowed

    @property
    def settled(self) -> bool:
        return self._settled

    async def settle(self, success: bool) -> Decision:
        """Record the outcome of the guarded operation.

        Args:
            success: Whether the guarded operation succeeded.

        Returns:
            The final decision, including the post-count quota metadata.
        """
        if self._settled:
            logger.debug(
                "rate_limit.settle_ignored",
                extra={"key_hash": hash_key(self.key) if self.key else None},
            )
            return self.decision
        self._settled = True

        if self._limiter is None or not self._deferred:
            return self.decision

        self.decision = await self._limiter._count_outcome(self, success)
        return self.decision


class RateLimiter:
    """Fixed-window limiter bound to one policy and one counter store.

    With 2N concurrent requests against a fresh key and a ceiling of N,
    exactly N are allowed and the counter ends at N. While the losers are
    being released the counter can briefly read above the ceiling.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        store: AbstractCounterStore,
        *,
        clock: Callable[[], float] = time.time,
        store_timeout_seconds: float | None = None,
        name: str | None = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            config: Policy to enforce.
            store: Shared counter store.
            clock: Time source function returning UNIX time in seconds.
            store_timeout_seconds: Upper bound for each store call; a timed out
                call is treated as a store failure.
            name: Label used in logs.
        """
        self.config = config
        self.store = store
        self._clock = clock
        self._store_timeout = store_timeout_seconds
        self.name = name or config.key_prefix.rstrip(":") or "rate_limit"

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"RateLimiter(name={self.name!r}, window_ms={self.config.window_ms}, "
            f"max={self.config.max!r}, backend={self.store.backend_name!r})"
        )

    async def _call_store(self, operation: str, call: Awaitable[Any]) -> Any:
        """Await a store call within the configured timeout."""
        try:
            if self._store_timeout is None:
                return await call
            return await asyncio.wait_for(call, timeout=self._store_timeout)
        except StoreUnavailableError:
            raise
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError(
                code="store_timeout",
                message=f"Counter store {operation} timed out",
                details={
                    "backend": self.store.backend_name,
                    "operation": operation,
                    "timeout_seconds": self._store_timeout,
                },
            ) from exc
        except Exception as exc:
            raise StoreUnavailableError(
                code="store_unavailable",
                message=f"Counter store {operation} failed: {type(exc).__name__}",
                details={"backend": self.store.backend_name, "operation": operation},
            ) from exc

    def _fail_open(self, error: Exception, *, key: str | None, limit: int) -> Decision:
        event = (
            "rate_limit.store_unavailable"
            if isinstance(error, StoreUnavailableError)
            else "rate_limit.hook_failed"
        )
        logger.error(
            event,
            extra={
                "limiter": self.name,
                "key_hash": hash_key(key) if key else None,
                "error_code": getattr(error, "code", None),
                "error_msg": str(error),
                "backend": self.store.backend_name,
            },
        )
        return Decision(allowed=True, limit=limit, remaining=limit, degraded=True)

    async def _resolve_key(self, context: RequestContext) -> str:
        if self.config.key_generator is not None:
            key = await self.config.key_generator(context)
            if not key:
                raise ValueError("key generator returned an empty key")
            return str(key)
        return default_key(context, self.config.key_prefix)

    async def _resolve_inputs(self, context: RequestContext) -> tuple[str, int] | None:
        """Run the pluggable hooks: skip predicate, key generator, limit resolver.

        Returns:
            The key and the effective ceiling, or None when the request is skipped.
        """
        try:
            if self.config.skip is not None and await self.config.skip(context):
                return None
            key = await self._resolve_key(context)
            limit = await self.config.max.resolve(context)
        except Exception as exc:
            raise KeyResolutionError(
                code="key_resolution_failed",
                message=f"Rate limit hook failed: {type(exc).__name__}: {exc}",
            ) from exc
        return key, limit

    async def _reset_at(self, key: str, new_count: int, now: float) -> datetime | None:
        """Reset time of the window the key is in after an increment."""
        if new_count == 1:
            return _utc(now + self.config.window_seconds)
        ttl = await self._call_store("ttl", self.store.ttl(key))
        if ttl is None or ttl <= 0:
            return None
        return _utc(now + ttl)

    def _denied(self, limit: int, now: float) -> Decision:
        return Decision(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=_utc(now + self.config.window_ms / 1000),
            retry_after_seconds=self.config.window_seconds,
        )

    def _log_denied(self, key: str, decision: Decision, count: int) -> None:
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "limiter": self.name,
                "key_hash": hash_key(key),
                "limit": decision.limit,
                "count": count,
                "window_ms": self.config.window_ms,
                "retry_after_s": decision.retry_after_seconds,
            },
        )

    async def admit(self, context: RequestContext) -> Admission:
        """Decide whether the request described by ``context`` may proceed.

        Never raises: internal failures produce an allowed, degraded decision.
        """
        try:
            inputs = await self._resolve_inputs(context)
        except KeyResolutionError as exc:
            return Admission(decision=self._fail_open(exc, key=None, limit=0), config=self.config)

        if inputs is None:
            return Admission(
                decision=Decision(allowed=True, limit=0, remaining=0, skipped=True),
                config=self.config,
            )
        key, limit = inputs

        try:
            count = await self._call_store("get", self.store.get(key)) or 0
        except StoreUnavailableError as exc:
            return Admission(decision=self._fail_open(exc, key=key, limit=limit), config=self.config, key=key)

        now = self._clock()
        if count >= limit:
            decision = self._denied(limit, now)
            self._log_denied(key, decision, count)
            return Admission(decision=decision, config=self.config, key=key)

        if not self.config.counts_every_outcome:
            return Admission(
                decision=Decision(allowed=True, limit=limit, remaining=max(0, limit - count)),
                config=self.config,
                key=key,
                limiter=self,
                deferred=True,
            )

        try:
            new_count = await self._call_store(
                "increment",
                self.store.increment_and_maybe_expire(key, self.config.window_seconds),
            )
        except StoreUnavailableError as exc:
            return Admission(decision=self._fail_open(exc, key=key, limit=limit), config=self.config, key=key)

        if new_count > limit:
            await self._release(key)
            decision = self._denied(limit, now)
            self._log_denied(key, decision, new_count)
            return Admission(decision=decision, config=self.config, key=key)

        decision = await self._allowed(key, limit, new_count, now)
        return Admission(decision=decision, config=self.config, key=key)

    async def _release(self, key: str) -> None:
        """Take back the increment of a caller that raced past the ceiling."""
        try:
            await self._call_store("decrement", self.store.decrement(key))
        except StoreUnavailableError as exc:
            logger.warning(
                "rate_limit.release_failed",
                extra={"limiter": self.name, "key_hash": hash_key(key), "error_msg": str(exc)},
            )

    async def _allowed(self, key: str, limit: int, new_count: int, now: float) -> Decision:
        try:
            reset_at = await self._reset_at(key, new_count, now)
        except StoreUnavailableError as exc:
            logger.warning(
                "rate_limit.ttl_unavailable",
                extra={"limiter": self.name, "key_hash": hash_key(key), "error_msg": str(exc)},
            )
            reset_at = None

        logger.info(
            "rate_limit.allowed",
            extra={
                "limiter": self.name,
                "key_hash": hash_key(key),
                "limit": limit,
                "remaining": max(0, limit - new_count),
                "window_ms": self.config.window_ms,
            },
        )
        return Decision(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - new_count),
            reset_at=reset_at,
        )

    async def _count_outcome(self, admission: Admission, success: bool) -> Decision:
        """Apply the deferred count for a settled, outcome-dependent admission."""
        decision = admission.decision
        if not self.config.should_count(success):
            return decision

        key = admission.key
        if key is None:
            return decision
        now = self._clock()
        try:
            new_count = await self._call_store(
                "increment",
                self.store.increment_and_maybe_expire(key, self.config.window_seconds),
            )
        except StoreUnavailableError as exc:
            self._fail_open(exc, key=key, limit=decision.limit)
            return replace(decision, degraded=True)

        return await self._allowed(key, decision.limit, new_count, now)
