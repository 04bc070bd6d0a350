"""Behavior-based tightening of rate limits.

An external profiling service writes a per-address ``BehaviorProfile`` into
the counter store (``ProfileRepository.save``). On each request the detector
reads the profile and, when it looks suspicious, routes the request through a
tightened limiter; otherwise the request passes through untouched. The
detector never counts anything itself.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, ValidationError

from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.core.errors import StoreUnavailableError
from gatekeeper.services.key_strategy import UNKNOWN_ADDRESS, hash_key
from gatekeeper.services.limiter import Admission, RateLimiter
from gatekeeper.services.models import Decision, RateLimitConfig, RequestContext

logger = logging.getLogger(__name__)

SUSPICIOUS_MESSAGE = "Suspicious activity detected. Request limit applied."

BURST_CONFIG = RateLimitConfig(
    window_ms=60_000,
    max=10,
    message=SUSPICIOUS_MESSAGE,
    key_prefix="anomaly:burst:",
)
ERROR_RATE_CONFIG = RateLimitConfig(
    window_ms=300_000,
    max=20,
    message=SUSPICIOUS_MESSAGE,
    key_prefix="anomaly:errors:",
)

# Pass-through admissions carry a config so the guard can still resolve a
# deny handler; it is never used for counting.
_PASS_THROUGH_CONFIG = RateLimitConfig(key_prefix="anomaly:none:")


class BehaviorProfile(BaseModel):
    """Observed request behavior of one client address."""

    requests_per_minute: float = Field(0.0, ge=0)
    error_rate: float = Field(0.0, ge=0, le=1)


class ProfileRepository:
    """Reads and writes behavior profiles in their own key region."""

    def __init__(self, store: AbstractCounterStore, *, prefix: str = "pattern:") -> None:
        self._store = store
        self._prefix = prefix

    def key_for(self, address: str) -> str:
        return f"{self._prefix}{address}"

    async def load(self, address: str) -> BehaviorProfile | None:
        """Return the stored profile, or None when absent or unreadable.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        raw = await self._store.read(self.key_for(address))
        if raw is None:
            return None
        try:
            return BehaviorProfile.model_validate_json(raw)
        except ValidationError:
            logger.warning(
                "anomaly.profile_invalid",
                extra={"key_hash": hash_key(self.key_for(address))},
            )
            return None

    async def save(self, address: str, profile: BehaviorProfile, *, ttl_seconds: int | None = None) -> None:
        """Write contract for the external profiling service."""
        await self._store.write(self.key_for(address), profile.model_dump_json(), ttl_seconds)


class AnomalyDetector:
    """Select a tightened limiter for clients with suspicious profiles."""

    def __init__(
        self,
        store: AbstractCounterStore,
        profiles: ProfileRepository | None = None,
        *,
        requests_per_minute_threshold: float = 100,
        error_rate_threshold: float = 0.5,
        burst_config: RateLimitConfig = BURST_CONFIG,
        error_config: RateLimitConfig = ERROR_RATE_CONFIG,
        store_timeout_seconds: float | None = None,
    ) -> None:
        self._profiles = profiles or ProfileRepository(store)
        self._rpm_threshold = requests_per_minute_threshold
        self._error_rate_threshold = error_rate_threshold
        self.burst_config = burst_config
        self.error_config = error_config
        self._limiters = {
            "burst": RateLimiter(
                burst_config, store, store_timeout_seconds=store_timeout_seconds, name="anomaly_burst"
            ),
            "error_rate": RateLimiter(
                error_config, store, store_timeout_seconds=store_timeout_seconds, name="anomaly_error_rate"
            ),
        }
        self.config = _PASS_THROUGH_CONFIG

    def classify(self, profile: BehaviorProfile | None) -> str | None:
        """Return the name of the tightened policy for ``profile``, if any."""
        if profile is None:
            return None
        if profile.requests_per_minute > self._rpm_threshold:
            return "burst"
        if profile.error_rate > self._error_rate_threshold:
            return "error_rate"
        return None

    async def select_config(self, context: RequestContext) -> RateLimitConfig | None:
        """Return the config that governs ``context``, or None for no restriction."""
        policy = await self._select_policy(context)
        return self._limiters[policy].config if policy else None

    async def _select_policy(self, context: RequestContext) -> str | None:
        address = context.client_address or UNKNOWN_ADDRESS
        try:
            profile = await self._profiles.load(address)
        except StoreUnavailableError as exc:
            logger.error(
                "anomaly.profile_unavailable",
                extra={"error_code": exc.code, "error_msg": exc.message},
            )
            return None
        policy = self.classify(profile)
        if policy:
            logger.warning(
                "anomaly.tightened",
                extra={"policy": policy, "key_hash": hash_key(self._profiles.key_for(address))},
            )
        return policy

    async def admit(self, context: RequestContext) -> Admission:
        """Delegate to the selected limiter, or pass the request through."""
        policy = await self._select_policy(context)
        if policy is None:
            return Admission(
                decision=Decision(allowed=True, limit=0, remaining=0, skipped=True),
                config=self.config,
            )
        return await self._limiters[policy].admit(context)
