"""Payment gateway module.

Wraps the third-party payment provider's billing API behind
``BillingGatewayInterface``.
"""

from app.core.config import Settings
from app.modules.payment_gateway.gateways import TossPaymentsGateway
from app.modules.payment_gateway.interface import (
    BillingAuthRequest,
    BillingGatewayInterface,
    ChargeResult,
    GatewayError,
    GatewayErrorKind,
    IssuedBillingKey,
    RefundResult,
    WebhookEvent,
    WebhookEventType,
    get_user_friendly_message,
)


def create_gateway(settings: Settings) -> BillingGatewayInterface:
    """Build the configured billing gateway."""
    return TossPaymentsGateway(
        secret_key=settings.TOSS_SECRET_KEY,
        client_key=settings.TOSS_CLIENT_KEY,
        app_url=settings.APP_URL,
        api_base_url=settings.TOSS_API_BASE_URL,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        webhook_secret=settings.TOSS_WEBHOOK_SECRET,
    )


__all__ = [
    "BillingAuthRequest",
    "BillingGatewayInterface",
    "ChargeResult",
    "GatewayError",
    "GatewayErrorKind",
    "IssuedBillingKey",
    "RefundResult",
    "TossPaymentsGateway",
    "WebhookEvent",
    "WebhookEventType",
    "create_gateway",
    "get_user_friendly_message",
]
