"""Repository for billing database operations.

Repositories only stage statements on the session they are given; the
ledger and the subscription service own commit and rollback.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.models import (
    PaymentKind,
    PaymentStatus,
    PaymentTransaction,
    ReferralReward,
    Subscription,
    SubscriptionStatus,
    TokenReason,
    TokenTransaction,
)
from app.modules.billing.plans import UNLIMITED

RENEWABLE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
)

# Expired CANCELLED subscriptions are picked up too, to fall back to FREE
DUE_STATUSES = RENEWABLE_STATUSES + (SubscriptionStatus.CANCELLED.value,)


def _insert_ignoring(session: AsyncSession, model, values: dict[str, Any], conflict_column: str):
    dialect = session.get_bind().dialect.name
    insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
    return (
        insert_fn(model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=[conflict_column])
    )


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        """Get subscription by ID."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_user_id(
        self,
        user_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        """Get subscription by user ID, always reloading column values."""
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert_if_absent(self, values: dict[str, Any]) -> bool:
        """Insert a subscription unless the user already has one.

        Returns:
            True if this call created the row
        """
        result = await self.session.execute(
            _insert_ignoring(self.session, Subscription, values, "user_id")
        )
        return result.rowcount == 1

    async def debit_tokens(self, user_id: uuid.UUID, amount: int) -> bool:
        """Increment ``tokens_used`` only if the balance covers ``amount``.

        Returns:
            True if a row was updated
        """
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                or_(
                    Subscription.tokens_total == UNLIMITED,
                    Subscription.tokens_used + amount <= Subscription.tokens_total,
                ),
            )
            .values(tokens_used=Subscription.tokens_used + amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def add_tokens(self, user_id: uuid.UUID, amount: int) -> bool:
        """Grow ``tokens_total`` of a limited subscription by ``amount``."""
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.tokens_total != UNLIMITED,
            )
            .values(tokens_total=Subscription.tokens_total + amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reset_tokens(self, user_id: uuid.UUID, tokens_total: int) -> bool:
        """Set the period allowance and clear usage."""
        result = await self.session.execute(
            update(Subscription)
            .where(Subscription.user_id == user_id)
            .values(tokens_total=tokens_total, tokens_used=0)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_fields(self, subscription_id: uuid.UUID, **values: Any) -> bool:
        """Update subscription columns by id."""
        result = await self.session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def advance_period(
        self,
        subscription_id: uuid.UUID,
        expected_period_end: datetime,
        expected_status: Optional[str] = None,
        **values: Any,
    ) -> bool:
        """Update a subscription only if its period has not moved meanwhile.

        Returns:
            False if another run already advanced the period
        """
        conditions = [
            Subscription.id == subscription_id,
            Subscription.current_period_end == expected_period_end,
        ]
        if expected_status is not None:
            conditions.append(Subscription.status == expected_status)
        result = await self.session.execute(
            update(Subscription)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_past_due_if_due(self, subscription_id: uuid.UUID, now: datetime) -> bool:
        """Flag an ACTIVE subscription PAST_DUE unless its period was renewed."""
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.current_period_end <= now,
            )
            .values(status=SubscriptionStatus.PAST_DUE.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_due_ids(self, now: datetime) -> list[uuid.UUID]:
        """IDs of subscriptions whose period ended."""
        result = await self.session.execute(
            select(Subscription.id)
            .where(
                and_(
                    Subscription.status.in_(DUE_STATUSES),
                    Subscription.current_period_end <= now,
                )
            )
            .order_by(Subscription.current_period_end, Subscription.id)
        )
        return list(result.scalars().all())


class TokenTransactionRepository:
    """Repository for token ledger entries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(
        self,
        user_id: uuid.UUID,
        subscription_id: uuid.UUID,
        amount: int,
        reason: str,
        balance_after: int,
        created_at: datetime,
        description: Optional[str] = None,
        image_count: Optional[int] = None,
    ) -> TokenTransaction:
        """Stage a ledger entry."""
        entry = TokenTransaction(
            user_id=user_id,
            subscription_id=subscription_id,
            amount=amount,
            reason=reason,
            balance_after=balance_after,
            description=description,
            image_count=image_count,
            created_at=created_at,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_for_user(self, user_id: uuid.UUID, limit: int = 50) -> list[TokenTransaction]:
        """Get ledger entries for a user, newest first."""
        result = await self.session.execute(
            select(TokenTransaction)
            .where(TokenTransaction.user_id == user_id)
            .order_by(TokenTransaction.created_at.desc(), TokenTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_for_user(self, user_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count(TokenTransaction.id)).where(TokenTransaction.user_id == user_id)
        )
        return result.scalar_one()

    async def images_generated_since(self, user_id: uuid.UUID, since: datetime) -> int:
        """Images paid for by GENERATION debits at or after ``since``."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(TokenTransaction.image_count), 0)).where(
                TokenTransaction.user_id == user_id,
                TokenTransaction.reason == TokenReason.GENERATION.value,
                TokenTransaction.created_at >= since,
            )
        )
        return int(result.scalar_one())


class PaymentTransactionRepository:
    """Repository for gateway charge records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, **kwargs: Any) -> PaymentTransaction:
        """Stage a payment record."""
        payment = PaymentTransaction(**kwargs)
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def add_if_absent(self, **values: Any) -> bool:
        """Insert a payment record unless its order id is already recorded.

        Returns:
            True if this call created the row
        """
        values.setdefault("id", uuid.uuid4())
        result = await self.session.execute(
            _insert_ignoring(self.session, PaymentTransaction, values, "order_id")
        )
        return result.rowcount == 1

    async def get_by_id(
        self,
        payment_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[PaymentTransaction]:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.id == payment_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_order_id(self, order_id: str) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_charge_by_payment_key(
        self,
        payment_key: str,
        for_update: bool = False,
    ) -> Optional[PaymentTransaction]:
        """The charge a gateway payment key belongs to; refund records are ignored."""
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.payment_key == payment_key,
                PaymentTransaction.kind != PaymentKind.REFUND.value,
            )
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def update_fields(self, payment_id: uuid.UUID, **values: Any) -> bool:
        result = await self.session.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == payment_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_for_user(self, user_id: uuid.UUID, limit: int = 20) -> list[PaymentTransaction]:
        """Get payment records for a user, newest first."""
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.user_id == user_id)
            .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_by_order_prefix(self, prefix: str) -> int:
        """Count payment records whose order id starts with ``prefix``."""
        result = await self.session.execute(
            select(func.count(PaymentTransaction.id)).where(
                PaymentTransaction.order_id.startswith(prefix, autoescape=True)
            )
        )
        return result.scalar_one()

    async def count_failed_since(
        self,
        subscription_id: uuid.UUID,
        kind: str,
        since: datetime,
    ) -> int:
        """Count failed charges of one kind for a subscription since a time."""
        result = await self.session.execute(
            select(func.count(PaymentTransaction.id)).where(
                PaymentTransaction.subscription_id == subscription_id,
                PaymentTransaction.kind == kind,
                PaymentTransaction.status == PaymentStatus.FAILED.value,
                PaymentTransaction.created_at >= since,
            )
        )
        return result.scalar_one()


class ReferralRewardRepository:
    """Repository for referral rewards."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_if_absent(self, values: dict[str, Any]) -> bool:
        """Record a reward unless the referred user already has one.

        Returns:
            True if this call created the row
        """
        values.setdefault("id", uuid.uuid4())
        result = await self.session.execute(
            _insert_ignoring(self.session, ReferralReward, values, "referred_id")
        )
        return result.rowcount == 1

    async def get_by_referred_id(self, referred_id: uuid.UUID) -> Optional[ReferralReward]:
        result = await self.session.execute(
            select(ReferralReward).where(ReferralReward.referred_id == referred_id)
        )
        return result.scalar_one_or_none()
