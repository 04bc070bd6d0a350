"""Counter store adapters.

The limiter depends only on ``AbstractCounterStore``; Redis backs it in
production and ``InMemoryCounterStore`` serves tests and single-process
deployments.
"""

from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.adapters.counter_store.factory import create_counter_store
from gatekeeper.adapters.counter_store.in_memory import InMemoryCounterStore
from gatekeeper.adapters.counter_store.redis_store import RedisCounterStore

__all__ = [
    "AbstractCounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
]
