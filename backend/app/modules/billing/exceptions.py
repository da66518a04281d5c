"""Billing domain errors.

The ledger and the subscription service raise these; the router translates
them into HTTP responses and the recurring billing scheduler records them
per subscription.
"""

import uuid
from typing import Optional


class BillingError(Exception):
    """Base exception for billing errors."""
    pass


class InvalidPlanError(BillingError):
    """Raised when a plan id is not in the catalog or cannot be purchased."""

    def __init__(self, plan_id: object, reason: Optional[str] = None):
        self.plan_id = plan_id
        super().__init__(reason or f"Invalid plan: {plan_id}")


class InsufficientBalanceError(BillingError):
    """Raised when a debit exceeds the remaining token balance."""

    def __init__(self, user_id: uuid.UUID, requested: int, remaining: int):
        self.user_id = user_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Insufficient tokens (required: {requested}, remaining: {remaining})"
        )


class SubscriptionNotFoundError(BillingError):
    """Raised when a user has no subscription row."""

    def __init__(self, user_id: uuid.UUID):
        self.user_id = user_id
        super().__init__(f"Subscription not found for user {user_id}")


class AlreadySubscribedError(BillingError):
    """Raised when a billing flow would charge an already active plan again."""
    pass


class BillingKeyMissingError(BillingError):
    """Raised when a paid operation needs a stored billing key and there is none."""

    def __init__(self, user_id: uuid.UUID):
        self.user_id = user_id
        super().__init__("No payment method is registered")


class CustomerKeyMismatchError(BillingError):
    """Raised when a billing callback carries another user's customer key."""

    def __init__(self, user_id: uuid.UUID, customer_key: str):
        self.user_id = user_id
        self.customer_key = customer_key
        super().__init__("Customer key does not belong to the signed-in user")


class DailyLimitExceededError(BillingError):
    """Raised when a generation request would pass the plan's daily image limit."""

    def __init__(self, user_id: uuid.UUID, requested: int, used: int, limit: int):
        self.user_id = user_id
        self.requested = requested
        self.used = used
        self.limit = limit
        super().__init__(f"Daily generation limit reached ({used}/{limit} images today)")


class PaymentNotFoundError(BillingError):
    """Raised when a payment record does not exist."""

    def __init__(self, payment_ref: object):
        self.payment_ref = payment_ref
        super().__init__(f"Payment not found: {payment_ref}")


class RefundNotAllowedError(BillingError):
    """Raised when a refund exceeds what is left of a charge, or the charge cannot be refunded."""
    pass


class ReferralError(BillingError):
    """Raised for an unknown, self-issued or already claimed referral."""
    pass


class ReferralAlreadyClaimedError(ReferralError):
    """Raised when the referred user already claimed a referral."""
    pass
