"""JWT verification for access tokens issued by the hosted auth provider.

The backend never issues user tokens itself; it only checks the signature,
expiry and audience of the provider's HS256 tokens and reads the identity
claims out of them.
"""

import uuid
from typing import Any, Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from app.core.config import settings

ADMIN_ROLE = "admin"


class Identity(BaseModel):
    """Authenticated caller as asserted by the auth provider."""

    user_id: uuid.UUID
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """Decode and validate a JWT token.

    Args:
        token: Encoded JWT token

    Returns:
        Claims if the signature, expiry and audience are valid, None otherwise
    """
    options = {"verify_aud": settings.AUTH_JWT_AUDIENCE is not None}
    try:
        return jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALGORITHM],
            audience=settings.AUTH_JWT_AUDIENCE,
            options=options,
        )
    except JWTError:
        return None


def identity_from_token(token: str) -> Optional[Identity]:
    """Build an Identity from a provider access token.

    Returns:
        Identity, or None if the token is invalid or has no usable subject
    """
    claims = decode_token(token)
    if claims is None:
        return None

    try:
        user_id = uuid.UUID(str(claims.get("sub")))
    except ValueError:
        return None

    metadata = claims.get("user_metadata") or {}
    # user_metadata is editable by the user; roles are read from app_metadata only
    app_metadata = claims.get("app_metadata") or {}
    return Identity(
        user_id=user_id,
        email=claims.get("email"),
        name=metadata.get("full_name") or metadata.get("name"),
        role=app_metadata.get("role"),
    )
