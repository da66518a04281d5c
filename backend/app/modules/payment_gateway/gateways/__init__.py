"""Payment gateway implementations."""

from app.modules.payment_gateway.gateways.toss import TossPaymentsGateway

__all__ = ["TossPaymentsGateway"]
