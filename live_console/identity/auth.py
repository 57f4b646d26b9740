"""Caller identity dependency for request handlers."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import Header, HTTPException

from live_console.identity.jwt_service import TokenError, default_jwt_service

logger = logging.getLogger(__name__)


def resolve_caller_identity(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    """Return the authenticated user id, or None for anonymous callers.

    A missing header is anonymous. A header that is present but cannot be
    verified is rejected rather than downgraded to anonymous.
    """
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="missing bearer token")
    service = default_jwt_service()
    if service is None:
        raise HTTPException(status_code=401, detail="authentication is not configured")
    token = authorization.split(" ", 1)[1]
    try:
        return service.decode_token(token).user_id
    except TokenError as exc:
        logger.warning(f"Rejected bearer token: {exc}")
        raise HTTPException(status_code=401, detail=f"invalid token: {exc}") from exc
