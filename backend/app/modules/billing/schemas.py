"""Pydantic schemas for the billing API."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.modules.billing.plans import PlanId


# ==================== Requests ====================

class PlanChangeRequest(BaseModel):
    """Start a paid plan subscription."""
    model_config = ConfigDict(populate_by_name=True)

    plan_id: PlanId = Field(..., alias="planId", description="Target plan")


class TokenPurchaseRequest(BaseModel):
    """Buy a one-off token package with the stored card."""
    model_config = ConfigDict(populate_by_name=True)

    package_id: str = Field(..., alias="packageId", min_length=1, max_length=50)


class TokenConsumeRequest(BaseModel):
    """Pay for an image generation request."""
    model_config = ConfigDict(populate_by_name=True)

    image_count: int = Field(1, alias="imageCount", ge=1, le=100)
    high_resolution: bool = Field(False, alias="highResolution")
    save_character: bool = Field(False, alias="saveCharacter")


class ReferralClaimRequest(BaseModel):
    """Claim the reward for signing up with a referral code."""
    model_config = ConfigDict(populate_by_name=True)

    referral_code: str = Field(..., alias="referralCode", min_length=1, max_length=64)


class TokenGrantRequest(BaseModel):
    """Operator grant of bonus tokens."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: uuid.UUID = Field(..., alias="userId")
    amount: int = Field(..., gt=0, le=1_000_000)
    description: Optional[str] = Field(None, max_length=500)


class RefundRequest(BaseModel):
    """Refund part or all of a charge; omit amount to refund the rest."""
    amount: Optional[int] = Field(None, gt=0)
    reason: str = Field("Refund requested", min_length=1, max_length=200)


# ==================== Plans ====================

class PlanLimits(BaseModel):
    tokens: int = Field(..., description="Token allowance per period (-1 for unlimited)")
    max_characters: int
    max_projects: int
    daily_images: int = Field(..., description="Images per UTC day (-1 for unlimited)")


class PlanResponse(BaseModel):
    """Plan catalog entry."""
    id: str
    name: str
    description: str
    price: int
    currency: str
    billing_interval_days: int
    limits: PlanLimits


class PlanListResponse(BaseModel):
    plans: list[PlanResponse]


class TokenPackageResponse(BaseModel):
    id: str
    name: str
    tokens: int
    price: int
    currency: str


class TokenPackageListResponse(BaseModel):
    packages: list[TokenPackageResponse]


# ==================== Subscription ====================

class BillingAuthRequestResponse(BaseModel):
    """Payload the browser SDK needs to open the card registration window."""
    client_key: str
    customer_key: str
    customer_email: Optional[str] = None
    customer_name: str
    plan_id: str
    amount: int
    success_url: str
    fail_url: str


class SubscriptionResponse(BaseModel):
    """Subscription record without gateway secrets."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    plan: str
    status: str
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    current_period_start: datetime
    current_period_end: datetime
    tokens_total: int
    tokens_used: int
    tokens_remaining: int
    max_characters: int
    max_projects: int
    canceled_at: Optional[datetime] = None


class TokenBalanceResponse(BaseModel):
    tokens_total: int
    tokens_used: int
    tokens_remaining: int
    is_unlimited: bool


class SubscriptionStatusResponse(BaseModel):
    """Subscription plus usage for the billing page."""
    subscription: SubscriptionResponse
    plan: PlanResponse
    balance: TokenBalanceResponse
    has_payment_method: bool
    days_until_renewal: int
    images_remaining: int
    low_balance: bool
    images_generated_today: int = 0
    daily_image_limit: int = -1
    warnings: list[str] = []


# ==================== Tokens ====================

class TokenTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    amount: int
    reason: str
    description: Optional[str] = None
    image_count: Optional[int] = None
    balance_after: int
    created_at: datetime


class TokenHistoryResponse(BaseModel):
    transactions: list[TokenTransactionResponse]


class TokenDebitResponse(BaseModel):
    success: bool
    tokens_used: int
    tokens_remaining: int


class TokenPurchaseResponse(BaseModel):
    package_id: str
    tokens_added: int
    amount_charged: int
    order_id: str
    tokens_remaining: int


class TokenGrantResponse(BaseModel):
    user_id: uuid.UUID
    tokens_added: int
    tokens_remaining: int


# ==================== Referrals ====================

class ReferralCodeResponse(BaseModel):
    referral_code: str
    referrer_bonus_tokens: int
    referred_bonus_tokens: int


class ReferralRewardResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    referrer_id: uuid.UUID
    referred_id: uuid.UUID
    referrer_tokens: int
    referred_tokens: int
    created_at: datetime


# ==================== Payments ====================

class PaymentTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    kind: str
    status: str
    order_id: str
    amount: int
    refunded_amount: int = 0
    tokens: Optional[int] = None
    description: Optional[str] = None
    created_at: datetime


class PaymentHistoryResponse(BaseModel):
    payments: list[PaymentTransactionResponse]


class RefundResponse(BaseModel):
    """The charge after the refund, and the refund record if one was written."""
    payment: PaymentTransactionResponse
    refund: Optional[PaymentTransactionResponse] = None


class WebhookAckResponse(BaseModel):
    success: bool = True
    result: str


# ==================== Cron ====================

class RenewalResultResponse(BaseModel):
    subscription_id: uuid.UUID
    user_id: uuid.UUID
    status: str
    plan: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    charged_amount: Optional[int] = None
    next_billing_date: Optional[datetime] = None


class RecurringBillingResponse(BaseModel):
    """Batch summary returned to the cron trigger."""
    processed: int
    successful: int
    failed: int
    skipped: int
    results: list[RenewalResultResponse]
    run_at: datetime
