"""In-memory counter store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state, so it also works when the
  event loop runs in a worker thread (e.g. FastAPI's TestClient).
- Expired records are dropped lazily on access.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.core.errors import CounterValueError


@dataclass
class _Record:
    value: int | str
    expires_at: float | None


def _as_count(operation: str, value: int | str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise CounterValueError(
            code="invalid_counter_value",
            message="Key does not hold a counter",
            details={"backend": InMemoryCounterStore.backend_name, "operation": operation},
        ) from exc


class InMemoryCounterStore(AbstractCounterStore):
    """Counter store keeping records in a process-local dict.

    Every public coroutine runs its critical section under one lock and never
    suspends inside it, which makes ``increment_and_maybe_expire`` atomic with
    respect to other tasks and threads.
    """

    backend_name = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        """Initialize the store.

        Args:
            clock: Time source function returning UNIX time in seconds.
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._records: dict[str, _Record] = {}

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._records)

    def _purge_expired(self, now: float) -> None:
        expired = [
            key
            for key, record in self._records.items()
            if record.expires_at is not None and record.expires_at <= now
        ]
        for key in expired:
            del self._records[key]

    def _live_record(self, key: str, now: float) -> _Record | None:
        """Return the record for key, dropping it first if it has expired."""
        record = self._records.get(key)
        if record is None:
            return None
        if record.expires_at is not None and record.expires_at <= now:
            del self._records[key]
            return None
        return record

    async def get(self, key: str) -> int | None:
        with self._lock:
            record = self._live_record(key, self._clock())
            if record is None:
                return None
            return _as_count("get", record.value)

    async def increment_and_maybe_expire(self, key: str, window_seconds: int) -> int:
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        with self._lock:
            now = self._clock()
            record = self._live_record(key, now)
            if record is None:
                record = _Record(value=1, expires_at=now + window_seconds)
                self._records[key] = record
                return 1

            record.value = _as_count("increment", record.value) + 1
            return record.value

    async def decrement(self, key: str) -> int | None:
        with self._lock:
            record = self._live_record(key, self._clock())
            if record is None:
                return None
            record.value = _as_count("decrement", record.value) - 1
            return record.value

    async def ttl(self, key: str) -> int | None:
        with self._lock:
            now = self._clock()
            record = self._live_record(key, now)
            if record is None or record.expires_at is None:
                return None
            return max(0, int(math.ceil(record.expires_at - now)))

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    async def read(self, key: str) -> str | None:
        with self._lock:
            record = self._live_record(key, self._clock())
            if record is None:
                return None
            return str(record.value)

    async def write(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        with self._lock:
            now = self._clock()
            expires_at = now + ttl_seconds if ttl_seconds else None
            self._records[key] = _Record(value=value, expires_at=expires_at)
