"""Domain types shared by the limiter, presets, anomaly detector and HTTP guard."""

from __future__ import annotations

import inspect
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Union

from gatekeeper.core.errors import ConfigurationError

if TYPE_CHECKING:
    from gatekeeper.services.deny import DenyHandler


DEFAULT_KEY_PREFIX = "rate-limit:"
DEFAULT_MESSAGE = "Too many requests, please try again later"
DEFAULT_STATUS_CODE = 429


@dataclass(frozen=True)
class RequestContext:
    """Framework-neutral view of the request being admitted.

    Attributes:
        principal_id: Authenticated user id set by the upstream identity provider.
        plan: Subscription tier of the authenticated principal, if known.
        client_address: Resolved client network address.
        headers: Request headers with lower-cased names.
        method: HTTP method (or operation name for non-HTTP callers).
        path: Request path.
    """

    principal_id: str | None = None
    plan: str | None = None
    client_address: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    method: str = "GET"
    path: str = "/"

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


SkipPredicate = Callable[[RequestContext], Awaitable[bool]]
KeyGenerator = Callable[[RequestContext], Awaitable[str]]
LimitResolver = Callable[[RequestContext], Awaitable[int]]


def ensure_async(func: Callable[..., Any] | None) -> Callable[..., Awaitable[Any]] | None:
    """Normalize a sync or async callable into a coroutine function.

    Pluggable hooks may be plain functions, coroutine functions or callables
    returning awaitables; the limiter always awaits the normalized form.
    """
    if func is None:
        return None
    if inspect.iscoroutinefunction(func):
        return func

    async def _wrapper(*args: Any, **kwargs: Any) -> Any:
        result = func(*args, **kwargs)
        if inspect.isawaitable(result):
            return await result
        return result

    _wrapper.__name__ = getattr(func, "__name__", "hook")
    _wrapper.__wrapped__ = func  # type: ignore[attr-defined]
    return _wrapper


@dataclass(frozen=True)
class StaticLimit:
    """A fixed request ceiling."""

    value: int

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, int) or self.value < 1:
            raise ConfigurationError(
                code="invalid_max",
                message="max must be an integer >= 1",
                details={"field": "max", "actual_value": self.value},
            )

    async def resolve(self, context: RequestContext) -> int:
        return self.value


@dataclass(frozen=True)
class DynamicLimit:
    """A ceiling computed per request by an async resolver."""

    resolver: LimitResolver

    def __post_init__(self) -> None:
        if not callable(self.resolver):
            raise ConfigurationError(
                code="invalid_max",
                message="max resolver must be callable",
                details={"field": "max"},
            )
        object.__setattr__(self, "resolver", ensure_async(self.resolver))

    async def resolve(self, context: RequestContext) -> int:
        value = await self.resolver(context)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError(f"resolved max must be an integer >= 1, got {value!r}")
        return value


Limit = Union[StaticLimit, DynamicLimit]


def as_limit(value: int | Limit | LimitResolver) -> Limit:
    """Normalize the polymorphic ``max`` option into a Limit variant."""
    if isinstance(value, (StaticLimit, DynamicLimit)):
        return value
    if callable(value):
        return DynamicLimit(value)
    return StaticLimit(value)


@dataclass(frozen=True)
class RateLimitConfig:
    """Policy evaluated by a ``RateLimiter``.

    ``max`` accepts an int, a ``StaticLimit``/``DynamicLimit`` or a callable
    taking a ``RequestContext``; it is always stored as a Limit variant.
    ``skip`` and ``key_generator`` may be sync or async and are stored as
    coroutine functions.
    """

    window_ms: int = 60_000
    max: Limit = StaticLimit(100)
    key_prefix: str = DEFAULT_KEY_PREFIX
    message: str = DEFAULT_MESSAGE
    status_code: int = DEFAULT_STATUS_CODE
    skip: SkipPredicate | None = None
    key_generator: KeyGenerator | None = None
    handler: "DenyHandler | None" = None
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.window_ms, bool) or not isinstance(self.window_ms, int) or self.window_ms <= 0:
            raise ConfigurationError(
                code="invalid_window",
                message="window_ms must be a positive integer",
                details={"field": "window_ms", "actual_value": self.window_ms},
            )
        if not 400 <= self.status_code <= 599:
            raise ConfigurationError(
                code="invalid_status_code",
                message="status_code must be an HTTP error status",
                details={"field": "status_code", "actual_value": self.status_code},
            )
        object.__setattr__(self, "max", as_limit(self.max))
        object.__setattr__(self, "skip", ensure_async(self.skip))
        object.__setattr__(self, "key_generator", ensure_async(self.key_generator))

    @property
    def window_seconds(self) -> int:
        """Window length in whole seconds, as used for TTLs and Retry-After."""
        return int(math.ceil(self.window_ms / 1000))

    @property
    def counts_every_outcome(self) -> bool:
        """True when the outcome of the guarded operation never affects counting."""
        return not (self.skip_successful_requests or self.skip_failed_requests)

    def should_count(self, success: bool) -> bool:
        if self.skip_successful_requests and success:
            return False
        if self.skip_failed_requests and not success:
            return False
        return True


@dataclass(frozen=True)
class Decision:
    """Admission decision with quota metadata.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Effective ceiling for this request.
        remaining: ``max(0, limit - count)``.
        reset_at: When the current window ends (UTC), if known.
        retry_after_seconds: Suggested wait; set only when denied.
        skipped: No evaluation took place (skip predicate or pass-through).
        degraded: Allowed because of an internal failure (fail open).
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime | None = None
    retry_after_seconds: int | None = None
    skipped: bool = False
    degraded: bool = False


@dataclass(frozen=True)
class RateLimitStatus:
    """Non-mutating snapshot of a counter."""

    count: int
    ttl: int
    reset_at: datetime | None
