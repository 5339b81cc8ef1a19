"""Authentication dependency for admin endpoints.

Accepts the admin key either as a bearer token or in the
``X-Coach-Admin-Key`` header.

Behavior matrix:
  COACH_ADMIN_KEY set + valid key    → allow
  COACH_ADMIN_KEY set + wrong/missing → 401 Unauthorized
  COACH_ADMIN_KEY empty + DEBUG=true  → allow (local dev convenience)
  COACH_ADMIN_KEY empty + DEBUG=false → 403 Forbidden (locked in production)
"""

from __future__ import annotations

import hmac
import logging

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from callbridge.config import Settings

log = logging.getLogger("callbridge.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def require_admin_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    x_coach_admin_key: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """FastAPI dependency — protect admin endpoints."""
    key = settings.coach_admin_key

    if not key:
        if settings.debug:
            return
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin key not configured. Set COACH_ADMIN_KEY in .env.",
        )

    supplied = x_coach_admin_key or (credentials.credentials if credentials else "")
    if not supplied or not hmac.compare_digest(supplied, key):
        log.warning("Rejected admin request with missing or invalid key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin key.",
            headers={"WWW-Authenticate": "Bearer"},
        )
