"""Token ledger.

Owns the token balance stored on a subscription and the append-only
``token_transactions`` history. Every balance change and its ledger entry are
written in the same database transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, utc_now
from app.core.metrics import TOKEN_DEBITS_TOTAL, TOKENS_CREDITED_TOTAL
from app.modules.billing.exceptions import (
    DailyLimitExceededError,
    InsufficientBalanceError,
    SubscriptionNotFoundError,
)
from app.modules.billing.models import Subscription, TokenReason, TokenTransaction
from app.modules.billing.plans import UNLIMITED
from app.modules.billing.repository import SubscriptionRepository, TokenTransactionRepository

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100


def start_of_day(moment: datetime) -> datetime:
    """Midnight (UTC) of the day ``moment`` falls on."""
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass
class TokenBalance:
    """Point-in-time token balance."""
    tokens_total: int
    tokens_used: int
    tokens_remaining: int
    is_unlimited: bool

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "TokenBalance":
        return cls(
            tokens_total=subscription.tokens_total,
            tokens_used=subscription.tokens_used,
            tokens_remaining=subscription.tokens_remaining,
            is_unlimited=subscription.has_unlimited_tokens,
        )


@dataclass
class DebitResult:
    """Outcome of a successful debit."""
    success: bool
    new_balance: int
    transaction_id: Optional[uuid.UUID] = None


class TokenLedger:
    """Debit, credit and balance reads for a user's tokens.

    ``debit`` and ``credit`` commit their own transaction. The ``apply_*``
    variants stage the same writes without committing so a caller can fold
    them into a larger unit of work.
    """

    def __init__(self, session: AsyncSession, clock: Clock = utc_now):
        self.session = session
        self.clock = clock
        self.subscriptions = SubscriptionRepository(session)
        self.transactions = TokenTransactionRepository(session)

    async def _get_subscription(self, user_id: uuid.UUID, for_update: bool = False) -> Subscription:
        subscription = await self.subscriptions.get_by_user_id(user_id, for_update=for_update)
        if subscription is None:
            raise SubscriptionNotFoundError(user_id)
        return subscription

    async def get_balance(self, user_id: uuid.UUID) -> TokenBalance:
        """Get the current balance.

        Raises:
            SubscriptionNotFoundError: if the user has no subscription
        """
        subscription = await self._get_subscription(user_id)
        return TokenBalance.from_subscription(subscription)

    # ==================== Debit ====================

    async def apply_debit(
        self,
        user_id: uuid.UUID,
        amount: int,
        reason: TokenReason = TokenReason.GENERATION,
        description: Optional[str] = None,
        image_count: Optional[int] = None,
        daily_image_limit: int = UNLIMITED,
    ) -> DebitResult:
        """Stage a debit and its ledger entry without committing.

        The balance check and the decrement are a single conditional
        UPDATE, so concurrent debits can never overdraw the balance. That
        UPDATE also holds the row lock while today's image count is checked
        against ``daily_image_limit``; the caller rolls back on any error.

        Raises:
            ValueError: if amount is not positive
            SubscriptionNotFoundError: if the user has no subscription
            InsufficientBalanceError: if amount exceeds the remaining balance
            DailyLimitExceededError: if the images would pass the daily limit
        """
        if amount <= 0:
            raise ValueError("Debit amount must be positive")

        debited = await self.subscriptions.debit_tokens(user_id, amount)
        subscription = await self._get_subscription(user_id)
        if not debited:
            raise InsufficientBalanceError(user_id, amount, subscription.tokens_remaining)

        now = self.clock()
        if image_count and daily_image_limit != UNLIMITED:
            used_today = await self.transactions.images_generated_since(user_id, start_of_day(now))
            if used_today + image_count > daily_image_limit:
                raise DailyLimitExceededError(user_id, image_count, used_today, daily_image_limit)

        balance_after = subscription.tokens_remaining
        entry = await self.transactions.add(
            user_id=user_id,
            subscription_id=subscription.id,
            amount=-amount,
            reason=TokenReason(reason).value,
            balance_after=balance_after,
            description=description,
            image_count=image_count,
            created_at=now,
        )
        return DebitResult(success=True, new_balance=balance_after, transaction_id=entry.id)

    async def debit(
        self,
        user_id: uuid.UUID,
        amount: int,
        reason: TokenReason = TokenReason.GENERATION,
        description: Optional[str] = None,
        image_count: Optional[int] = None,
        daily_image_limit: int = UNLIMITED,
    ) -> DebitResult:
        """Debit tokens and commit.

        Raises:
            SubscriptionNotFoundError: if the user has no subscription
            InsufficientBalanceError: if amount exceeds the remaining balance
            DailyLimitExceededError: if the images would pass the daily limit
        """
        reason_label = TokenReason(reason).value
        try:
            result = await self.apply_debit(
                user_id, amount, reason, description,
                image_count=image_count, daily_image_limit=daily_image_limit,
            )
            await self.session.commit()
        except InsufficientBalanceError as e:
            await self.session.rollback()
            TOKEN_DEBITS_TOTAL.labels(reason=reason_label, result="insufficient").inc()
            logger.info(
                f"Debit of {amount} tokens rejected for user {user_id}: "
                f"{e.remaining} remaining"
            )
            raise
        except DailyLimitExceededError as e:
            await self.session.rollback()
            TOKEN_DEBITS_TOTAL.labels(reason=reason_label, result="daily_limit").inc()
            logger.info(f"Daily limit reached for user {user_id}: {e.used}/{e.limit} images")
            raise
        except Exception:
            await self.session.rollback()
            TOKEN_DEBITS_TOTAL.labels(reason=reason_label, result="error").inc()
            raise

        TOKEN_DEBITS_TOTAL.labels(reason=reason_label, result="success").inc()
        return result

    async def apply_clawback(
        self,
        user_id: uuid.UUID,
        amount: int,
        description: Optional[str] = None,
    ) -> int:
        """Stage the removal of up to ``amount`` unspent tokens.

        Tokens already spent are not recovered, and unlimited balances are
        left alone.

        Returns:
            Number of tokens removed
        """
        subscription = await self._get_subscription(user_id, for_update=True)
        removable = 0 if subscription.has_unlimited_tokens else min(amount, subscription.tokens_remaining)
        if removable <= 0:
            return 0
        await self.apply_debit(user_id, removable, TokenReason.REFUND, description)
        return removable

    # ==================== Credit ====================

    async def apply_credit(
        self,
        user_id: uuid.UUID,
        amount: int,
        reason: TokenReason,
        description: Optional[str] = None,
    ) -> int:
        """Stage a credit and its ledger entry without committing.

        ``RENEWAL_GRANT`` replaces the period allowance (``amount`` may be
        ``UNLIMITED``) and clears usage; every other reason adds ``amount``
        to the allowance.

        Returns:
            Remaining balance after the credit, ``UNLIMITED`` for unlimited plans
        """
        reason = TokenReason(reason)
        if reason in (TokenReason.GENERATION, TokenReason.REFUND):
            raise ValueError(f"{reason.value} is a debit reason")

        if reason == TokenReason.RENEWAL_GRANT:
            if amount < 0 and amount != UNLIMITED:
                raise ValueError("Renewal grant must be non-negative or UNLIMITED")
            previous = await self._get_subscription(user_id, for_update=True)
            previous_remaining = previous.tokens_remaining
            was_unlimited = previous.has_unlimited_tokens
            await self.subscriptions.reset_tokens(user_id, amount)
            subscription = await self._get_subscription(user_id)
            if subscription.has_unlimited_tokens:
                change = 0
            elif was_unlimited:
                change = subscription.tokens_remaining
            else:
                change = subscription.tokens_remaining - previous_remaining
        else:
            if amount <= 0:
                raise ValueError("Credit amount must be positive")
            added = await self.subscriptions.add_tokens(user_id, amount)
            subscription = await self._get_subscription(user_id)
            if not added:
                # Unlimited allowance: nothing to add, nothing to record
                logger.info(
                    f"Ignoring {reason.value} credit of {amount} tokens for "
                    f"unlimited subscription {subscription.id}"
                )
                return UNLIMITED
            change = amount

        balance_after = subscription.tokens_remaining
        await self.transactions.add(
            user_id=user_id,
            subscription_id=subscription.id,
            amount=change,
            reason=reason.value,
            balance_after=balance_after,
            description=description,
            created_at=self.clock(),
        )
        if change > 0:
            TOKENS_CREDITED_TOTAL.labels(reason=reason.value).inc(change)
        return balance_after

    async def credit(
        self,
        user_id: uuid.UUID,
        amount: int,
        reason: TokenReason,
        description: Optional[str] = None,
    ) -> int:
        """Credit tokens and commit.

        Raises:
            SubscriptionNotFoundError: if the user has no subscription
        """
        try:
            balance = await self.apply_credit(user_id, amount, reason, description)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return balance

    async def record_opening_grant(self, subscription: Subscription) -> TokenTransaction:
        """Stage the ledger entry for the allowance a new subscription starts with."""
        opening = 0 if subscription.has_unlimited_tokens else subscription.tokens_remaining
        return await self.transactions.add(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            amount=opening,
            reason=TokenReason.RENEWAL_GRANT.value,
            balance_after=subscription.tokens_remaining,
            description=f"{subscription.plan} plan allowance",
            created_at=self.clock(),
        )

    # ==================== History ====================

    async def get_usage_history(self, user_id: uuid.UUID, limit: int = 50) -> list[TokenTransaction]:
        """Ledger entries for a user, most recent first."""
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        return await self.transactions.get_for_user(user_id, limit=limit)
