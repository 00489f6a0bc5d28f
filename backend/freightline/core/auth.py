"""Caller identity dependency for API routes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from freightline.core.config import get_settings
from freightline.core.logging import logger


security = HTTPBearer(auto_error=False)


@dataclass
class CallerContext:
    user_id: Optional[str]
    authenticated: bool
    source: str


def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
) -> CallerContext:
    """Resolve the calling user id from a bearer token or the dev header.

    The user record itself is resolved by the access gate; an anonymous
    context is rejected there, not here.
    """
    settings = get_settings()

    if not settings.auth_enabled:
        user_id = (x_user_id or "").strip() or None
        return CallerContext(user_id=user_id, authenticated=False, source="header")

    if not credentials or not credentials.credentials:
        return CallerContext(user_id=None, authenticated=False, source="anonymous")

    user_id = settings.parsed_user_tokens().get(credentials.credentials.strip())
    if not user_id:
        logger.warning("Rejected unknown bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid bearer token",
        )

    if x_user_id and x_user_id.strip() and x_user_id.strip() != user_id:
        logger.warning("Bearer token user mismatch", token_user=user_id, header_user=x_user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token user mismatch",
        )

    return CallerContext(user_id=user_id, authenticated=True, source="token")
