"""Out-of-band administration of rate limit counters."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable

from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.core.errors import CounterValueError, StoreUnavailableError
from gatekeeper.services.key_strategy import hash_key
from gatekeeper.services.models import RateLimitStatus

logger = logging.getLogger(__name__)


class RateLimitAdmin:
    """Reset and inspect counters by their full key (e.g. ``login:ip:10.0.0.1``)."""

    def __init__(self, store: AbstractCounterStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    async def reset_limit(self, key: str) -> bool:
        """Delete the counter so the next request starts a fresh window.

        Returns:
            True when the reset went through (even if the key did not exist),
            False when the store failed.
        """
        try:
            removed = await self._store.delete(key)
        except StoreUnavailableError as exc:
            logger.error(
                "rate_limit.reset_failed",
                extra={"key_hash": hash_key(key), "error_code": exc.code, "error_msg": exc.message},
            )
            return False

        logger.info("rate_limit.reset", extra={"key_hash": hash_key(key), "removed": removed})
        return True

    async def get_status(self, key: str) -> RateLimitStatus | None:
        """Snapshot of the counter without mutating it.

        Returns:
            The status (``count=0, ttl=0, reset_at=None`` for unknown keys),
            or None when the store failed.

        Raises:
            CounterValueError: If ``key`` holds something other than a counter,
                such as a behaviour profile.
        """
        try:
            count = await self._store.get(key)
            ttl = await self._store.ttl(key)
        except CounterValueError:
            logger.warning("rate_limit.status_not_counter", extra={"key_hash": hash_key(key)})
            raise
        except StoreUnavailableError as exc:
            logger.error(
                "rate_limit.status_failed",
                extra={"key_hash": hash_key(key), "error_code": exc.code, "error_msg": exc.message},
            )
            return None

        if ttl is None or ttl <= 0:
            return RateLimitStatus(count=count or 0, ttl=0, reset_at=None)
        reset_at = datetime.fromtimestamp(self._clock() + ttl, tz=timezone.utc)
        return RateLimitStatus(count=count or 0, ttl=ttl, reset_at=reset_at)
