"""FastAPI dependencies for caller identity, admin access and the cron shared secret."""

import hmac
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.modules.auth.jwt import Identity, identity_from_token

security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Identity:
    """Get the authenticated caller from the Bearer token.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    identity = identity_from_token(credentials.credentials)
    if identity is None:
        raise _unauthorized("Invalid or expired token")
    return identity


async def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>``.

    Raises:
        HTTPException: 401 if the secret is missing or wrong
    """
    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode(), settings.CRON_SECRET.encode()
    ):
        raise _unauthorized("Unauthorized")


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    """Require an operator account (``app_metadata.role == "admin"``).

    Raises:
        HTTPException: 403 if the caller is not an admin
    """
    if not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return identity
