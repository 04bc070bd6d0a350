"""Application-level exception types.

Errors raised by the counter store adapters, the limiter and the admin
surface share one base so handlers and logs can treat them uniformly.
A rate limit breach is not an error: it is an ordinary ``Decision``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    field: str
    actual_value: Any
    backend: str
    operation: str
    timeout_seconds: float
    key_hash: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigurationError(AppError):
    """Raised at setup time when a limiter is configured with invalid values."""


class StoreUnavailableError(AppError):
    """Raised when the counter store fails or times out."""


class KeyResolutionError(AppError):
    """Raised when a pluggable skip predicate, key generator or limit resolver fails."""


class AuthenticationAppError(AppError):
    """Raised when admin authentication fails."""


class CounterValueError(AppError):
    """Raised when a key read as a counter holds a non-integer value."""
