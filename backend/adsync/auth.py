"""
Identity — resolves the authenticated user id for platform routes.

- Bearer JWT issued by the user/session service (HS256, ``sub`` = user id).
- Development only: ``X-User-Id`` header, for local testing without a login service.
"""

import logging
from typing import Optional
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from adsync.config import get_settings
from adsync.errors import ClassifiedError, ErrorCode

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

_bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None


def _unauthorized(message: str) -> ClassifiedError:
    return ClassifiedError(ErrorCode.AUTH, message, 401)


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    x_user_id: Optional[str] = Header(None),
) -> str:
    """Require a valid bearer JWT and return its subject."""
    settings = get_settings()

    if credentials:
        payload = decode_access_token(credentials.credentials)
        if payload and payload.get("sub"):
            return str(payload["sub"])
        raise _unauthorized("Invalid or expired token. Please log in again.")

    # Dev convenience: trust an explicit user header outside production
    if x_user_id and not settings.is_production:
        return x_user_id

    raise _unauthorized("Missing authorization. Include header: Authorization: Bearer <token>")
