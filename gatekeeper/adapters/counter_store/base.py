"""Counter store interface.

The limiter depends on this abstraction (not the concrete implementation) so
the shared backend can be swapped (Redis, in-memory) without touching the
decision logic.

Implementations must raise ``StoreUnavailableError`` for any I/O failure or
timeout; the limiter relies on that single error type to fail open.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class AbstractCounterStore(ABC):
    """Interface for the shared key-value store holding window counters."""

    backend_name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> int | None:
        """Return the current count for ``key`` or None when it does not exist.

        Raises:
            CounterValueError: If ``key`` holds a value that is not an integer.
        """
        raise NotImplementedError

    @abstractmethod
    async def increment_and_maybe_expire(self, key: str, window_seconds: int) -> int:
        """Atomically increment ``key`` and start its window when it is new.

        The increment and the TTL assignment happen in a single atomic step:
        when this call creates the key (the new count is 1) the store sets
        its TTL to ``window_seconds``. Later increments never extend the TTL.
        N concurrent callers against a fresh key observe the counts 1..N.

        Args:
            key: Counter key.
            window_seconds: Window length applied as TTL on creation.

        Returns:
            The counter value after the increment.
        """
        raise NotImplementedError

    @abstractmethod
    async def decrement(self, key: str) -> int | None:
        """Atomically take one back from an existing counter.

        Never creates the key and never touches its TTL, so a window that
        expired in the meantime stays gone.

        Returns:
            The counter value after the decrement, or None when ``key`` does
            not exist.
        """
        raise NotImplementedError

    @abstractmethod
    async def ttl(self, key: str) -> int | None:
        """Return the remaining TTL in seconds, or None when absent or persistent."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns True when something was removed."""
        raise NotImplementedError

    @abstractmethod
    async def read(self, key: str) -> str | None:
        """Read an opaque string value (used for behavioral profiles)."""
        raise NotImplementedError

    @abstractmethod
    async def write(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Store an opaque string value, optionally expiring after ``ttl_seconds``."""
        raise NotImplementedError

    async def ping(self) -> bool:
        """Return True when the backend is reachable."""
        return True

    async def close(self) -> None:
        """Release backend resources."""
        return None
