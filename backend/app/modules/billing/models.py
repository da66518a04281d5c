"""Billing models for subscriptions, the token ledger, payment history and referral rewards."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.clock import utc_now
from app.core.database import Base
from app.modules.billing.plans import UNLIMITED, PlanId


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    PAST_DUE = "PAST_DUE"


class TokenReason(str, Enum):
    """Why a token balance changed."""
    GENERATION = "GENERATION"
    PURCHASE = "PURCHASE"
    RENEWAL_GRANT = "RENEWAL_GRANT"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"
    REFERRAL_BONUS = "REFERRAL_BONUS"
    REFUND = "REFUND"


class PaymentKind(str, Enum):
    """What a gateway charge paid for."""
    SUBSCRIPTION_START = "SUBSCRIPTION_START"
    RENEWAL = "RENEWAL"
    TOKEN_PURCHASE = "TOKEN_PURCHASE"
    REFUND = "REFUND"


class PaymentStatus(str, Enum):
    """Outcome of a gateway charge."""
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


def customer_key_for(user_id: uuid.UUID) -> str:
    """Gateway customer key derived from the user id.

    Only letters, digits, hyphens and underscores are accepted by the gateway.
    """
    return f"customer_{user_id.hex}"


def user_id_from_customer_key(customer_key: str) -> Optional[uuid.UUID]:
    """Inverse of ``customer_key_for``; None if the key is malformed."""
    prefix, _, hex_id = customer_key.partition("_")
    if prefix != "customer" or len(hex_id) != 32:
        return None
    try:
        return uuid.UUID(hex=hex_id)
    except ValueError:
        return None


class Subscription(Base):
    """User subscription model.

    One row per user. ``tokens_total``/``tokens_used`` hold the balance for
    the current period; ``tokens_total == -1`` means unlimited.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )

    # User association
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, unique=True, index=True
    )

    # Plan details
    plan: Mapped[str] = mapped_column(
        String(50), default=PlanId.FREE.value, nullable=False, index=True
    )

    # Status
    status: Mapped[str] = mapped_column(
        String(50), default=SubscriptionStatus.ACTIVE.value, nullable=False, index=True
    )

    # Gateway references
    customer_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    billing_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    card_brand: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    card_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)

    # Billing period
    current_period_start: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False
    )
    current_period_end: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, index=True
    )

    # Token balance for the current period
    tokens_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Plan limits snapshot
    max_characters: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_projects: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Cancellation
    canceled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("current_period_end > current_period_start", name="ck_subscription_period"),
        CheckConstraint("tokens_used >= 0", name="ck_subscription_tokens_used_non_negative"),
        CheckConstraint(
            f"tokens_total = {UNLIMITED} OR tokens_used <= tokens_total",
            name="ck_subscription_tokens_within_total",
        ),
        Index("ix_subscription_status_period_end", "status", "current_period_end"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user={self.user_id}, plan={self.plan}, status={self.status})>"

    @property
    def has_unlimited_tokens(self) -> bool:
        return self.tokens_total == UNLIMITED

    @property
    def tokens_remaining(self) -> int:
        """Remaining tokens, clamped at zero; -1 for unlimited."""
        if self.has_unlimited_tokens:
            return UNLIMITED
        return max(0, self.tokens_total - self.tokens_used)

    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """Check if the current period has ended."""
        return self.current_period_end <= (now or utc_now())


class TokenTransaction(Base):
    """Append-only token ledger entry.

    ``amount`` is signed (positive = grant, negative = debit) and
    ``balance_after`` is the remaining balance once the entry is applied.
    """

    __tablename__ = "token_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    # Images paid for by a GENERATION debit, counted against the daily limit
    image_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("ix_token_transaction_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<TokenTransaction(id={self.id}, reason={self.reason}, amount={self.amount})>"


class PaymentTransaction(Base):
    """Gateway charge record backing the payment history page."""

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Gateway order id doubles as the charge idempotency key
    order_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refunded_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payment_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("refunded_amount >= 0", name="ck_payment_refunded_non_negative"),
        Index("ix_payment_transaction_user_created", "user_id", "created_at"),
        Index("ix_payment_transaction_payment_key", "payment_key"),
    )

    def __repr__(self) -> str:
        return f"<PaymentTransaction(id={self.id}, kind={self.kind}, status={self.status})>"

    @property
    def refundable_amount(self) -> int:
        if self.status == PaymentStatus.FAILED.value or self.kind == PaymentKind.REFUND.value:
            return 0
        return max(0, self.amount - self.refunded_amount)


def referral_code_for(user_id: uuid.UUID) -> str:
    """Shareable referral code of a user."""
    return f"ref_{user_id.hex}"


def user_id_from_referral_code(code: str) -> Optional[uuid.UUID]:
    prefix, _, hex_id = code.strip().partition("_")
    if prefix != "ref" or len(hex_id) != 32:
        return None
    try:
        return uuid.UUID(hex=hex_id)
    except ValueError:
        return None


class ReferralReward(Base):
    """Bonus tokens granted once per referred user."""

    __tablename__ = "referral_rewards"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    referrer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    referred_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)

    referrer_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    referred_tokens: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("referrer_id <> referred_id", name="ck_referral_not_self"),
    )

    def __repr__(self) -> str:
        return f"<ReferralReward(referrer={self.referrer_id}, referred={self.referred_id})>"
