"""Billing module.

Plan catalog, token ledger, subscription lifecycle and recurring billing.
"""

from app.modules.billing.router import router
from app.modules.billing.ledger import TokenLedger
from app.modules.billing.service import SubscriptionService
from app.modules.billing.tasks import RecurringBillingScheduler
from app.modules.billing.models import (
    PaymentTransaction,
    Subscription,
    SubscriptionStatus,
    TokenReason,
    TokenTransaction,
)
from app.modules.billing.plans import PLAN_CATALOG, PlanId

__all__ = [
    "router",
    "TokenLedger",
    "SubscriptionService",
    "RecurringBillingScheduler",
    "PaymentTransaction",
    "Subscription",
    "SubscriptionStatus",
    "TokenReason",
    "TokenTransaction",
    "PLAN_CATALOG",
    "PlanId",
]
