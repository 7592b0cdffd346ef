"""
Sweep Authorization
===================
The status sweep may be triggered by trusted intra-system callers (marked
with the X-Internal-Call header) or by a scheduler presenting
`Authorization: Bearer <CRON_SECRET>`.
"""

import hmac
from typing import Optional

from fastapi import Header

from scanwatch import config
from scanwatch.errors import AuthorizationError


def authorize_sweep(
    internal: bool = False,
    auth_token: Optional[str] = None,
    secret: Optional[str] = None,
    trust_internal: Optional[bool] = None,
) -> None:
    """Raise AuthorizationError unless the caller may trigger a sweep.

    With no secret configured every caller is accepted (dev mode).
    """
    secret = config.CRON_SECRET if secret is None else secret
    trust_internal = config.TRUST_INTERNAL_HEADER if trust_internal is None else trust_internal

    if not secret:
        return
    if internal and trust_internal:
        return
    if auth_token and hmac.compare_digest(auth_token.encode("utf-8"), secret.encode("utf-8")):
        return
    raise AuthorizationError("Unauthorized")


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def sweep_credentials(
    authorization: str = Header(default=None),
    x_internal_call: str = Header(default=None),
) -> tuple[bool, Optional[str]]:
    """FastAPI dependency extracting (internal, bearer token) from the request."""
    internal = str(x_internal_call or "").strip().lower() in ("1", "true", "yes")
    return internal, parse_bearer(authorization)
