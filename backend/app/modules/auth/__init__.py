"""Identity boundary: the hosted auth provider's tokens and the cron secret."""

from app.modules.auth.dependencies import get_current_identity, require_admin, verify_cron_secret
from app.modules.auth.jwt import ADMIN_ROLE, Identity, identity_from_token

__all__ = [
    "ADMIN_ROLE",
    "Identity",
    "get_current_identity",
    "identity_from_token",
    "require_admin",
    "verify_cron_secret",
]
