"""Key strategy: map a request to the identity partitioning its counter.

Resolution order:
1. Authenticated principal id -> ``<prefix>user:<id>``
2. Client network address -> ``<prefix>ip:<address>``

Address precedence: explicit override header > first hop of
X-Forwarded-For > raw connection address.
"""

from __future__ import annotations

import hashlib
from typing import Mapping

from gatekeeper.services.models import RequestContext

UNKNOWN_ADDRESS = "unknown"


def resolve_client_address(
    headers: Mapping[str, str],
    peer_address: str | None,
    *,
    override_header: str = "X-Real-IP",
    trust_proxy_headers: bool = True,
) -> str:
    """Resolve the caller's network address.

    Args:
        headers: Request headers with lower-cased names.
        peer_address: Address of the TCP peer, if known.
        override_header: Header that explicitly names the client address.
        trust_proxy_headers: Whether forwarding headers may be used at all.

    Returns:
        The resolved address, or ``"unknown"`` when nothing is available.
    """
    if trust_proxy_headers:
        override = (headers.get(override_header.lower()) or "").strip()
        if override:
            return override

        forwarded_for = headers.get("x-forwarded-for") or ""
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    return peer_address or UNKNOWN_ADDRESS


def default_key(context: RequestContext, prefix: str) -> str:
    """Build the default limiter key for ``context``."""
    if context.principal_id:
        return f"{prefix}user:{context.principal_id}"
    return f"{prefix}ip:{context.client_address or UNKNOWN_ADDRESS}"


def hash_key(key: str) -> str:
    """Hash a limiter key for logging without exposing identities."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]
