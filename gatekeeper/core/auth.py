"""API key authentication for the admin routes.

Keys are validated against a comma-separated list from the environment
(``APP_ADMIN_API_KEYS``). Rate limit status and reset are privileged
operations, so the check is on unless ``APP_ADMIN_API_KEY_REQUIRED=false``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Annotated

from fastapi import Header

from gatekeeper.core.config import settings
from gatekeeper.core.errors import AuthenticationAppError
from gatekeeper.core.rate_limit import parse_csv

logger = logging.getLogger(__name__)


def _fingerprint(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:16]


def validate_admin_key(provided_key: str | None) -> None:
    """Validate ``provided_key`` against the configured admin keys.

    Raises:
        AuthenticationAppError: If the key is missing or invalid, or no keys are configured.
    """
    if not settings.app.admin_api_key_required:
        return

    valid_keys = parse_csv(settings.app.admin_api_keys)
    if not valid_keys:
        logger.error("admin_auth.failed", extra={"reason": "admin_keys_not_configured"})
        raise AuthenticationAppError(
            code="admin_keys_not_configured",
            message="Admin authentication is enabled but no admin keys are configured",
            details={"hint": "Set APP_ADMIN_API_KEYS or disable with APP_ADMIN_API_KEY_REQUIRED=false"},
        )

    if not provided_key:
        logger.warning("admin_auth.failed", extra={"reason": "missing_key"})
        raise AuthenticationAppError(
            code="missing_api_key",
            message="Missing API key. Provide X-API-Key header.",
        )

    if not any(hmac.compare_digest(provided_key, key) for key in valid_keys):
        logger.warning(
            "admin_auth.failed",
            extra={"reason": "invalid_key", "key_fingerprint": _fingerprint(provided_key)},
        )
        raise AuthenticationAppError(
            code="invalid_api_key",
            message="Invalid or missing API key",
        )


async def verify_admin_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency guarding the admin router.

    Usage:
        router = APIRouter(dependencies=[Depends(verify_admin_key)])
    """
    validate_admin_key(x_api_key)
    if settings.app.admin_api_key_required:
        logger.info("admin_auth.success", extra={"key_fingerprint": _fingerprint(x_api_key or "")})
