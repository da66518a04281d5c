"""Billing background tasks.

Recurring billing runs once a day: from the Celery beat schedule, from the
cron HTTP trigger, or by hand via ``scripts/run_billing_tasks.py``.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.celery_app import celery_app
from app.core.clock import Clock, utc_now
from app.core.config import settings
from app.core.logging import correlation_scope, log_error, log_info
from app.core.metrics import (
    RECURRING_BILLING_DUE,
    RECURRING_BILLING_DURATION_SECONDS,
    RECURRING_BILLING_LAST_RUN,
    SUBSCRIPTION_RENEWALS_TOTAL,
)
from app.modules.billing.repository import SubscriptionRepository
from app.modules.billing.service import (
    RENEWAL_FAILED,
    RENEWAL_SKIPPED,
    RENEWAL_SUCCESS,
    RenewalResult,
    SubscriptionService,
)
from app.modules.payment_gateway.interface import BillingGatewayInterface

logger = logging.getLogger(__name__)

INTERNAL_ERROR_KIND = "internal_error"
INTERNAL_ERROR_MESSAGE = "An unexpected error occurred while renewing the subscription."


@dataclass
class BatchSummary:
    """Aggregated outcome of one recurring billing run."""
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[RenewalResult] = field(default_factory=list)

    def add(self, result: RenewalResult) -> None:
        self.results.append(result)
        self.processed += 1
        if result.status == RENEWAL_SUCCESS:
            self.successful += 1
        elif result.status == RENEWAL_FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [result.to_dict() for result in self.results],
        }


class RecurringBillingScheduler:
    """Charges and renews every subscription whose period has ended.

    The set of due subscriptions is read once when the run starts. Each one
    is then renewed sequentially in its own session, and an error for one
    subscription is recorded without stopping the others.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: BillingGatewayInterface,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.clock = clock

    async def _select_due(self) -> list[uuid.UUID]:
        async with self.session_factory() as session:
            return await SubscriptionRepository(session).get_due_ids(self.clock())

    async def run(self) -> BatchSummary:
        """Run one recurring billing pass."""
        started = time.perf_counter()
        due_ids = await self._select_due()
        RECURRING_BILLING_DUE.set(len(due_ids))
        log_info(logger, f"Recurring billing: {len(due_ids)} subscription(s) due")

        summary = BatchSummary()
        for subscription_id in due_ids:
            summary.add(await self._process(subscription_id))

        RECURRING_BILLING_LAST_RUN.set(time.time())
        RECURRING_BILLING_DURATION_SECONDS.observe(time.perf_counter() - started)
        log_info(
            logger,
            "Recurring billing completed",
            processed=summary.processed,
            successful=summary.successful,
            failed=summary.failed,
            skipped=summary.skipped,
        )
        return summary

    async def _process(self, subscription_id: uuid.UUID) -> RenewalResult:
        user_id: Optional[uuid.UUID] = None
        plan: Optional[str] = None
        async with self.session_factory() as session:
            service = SubscriptionService(session, self.gateway, clock=self.clock)
            try:
                subscription = await service.subscriptions.get_by_id(subscription_id)
                if subscription is None:
                    await session.commit()
                    return RenewalResult(
                        subscription_id=subscription_id,
                        user_id=uuid.UUID(int=0),
                        status=RENEWAL_SKIPPED,
                        error_kind="not_found",
                    )
                user_id = subscription.user_id
                plan = subscription.plan
                return await service.renew_one(subscription)
            except Exception as e:
                await session.rollback()
                log_error(
                    logger,
                    "Renewal raised unexpectedly",
                    exception=e,
                    subscription_id=str(subscription_id),
                )
                await self._mark_past_due(subscription_id)
                SUBSCRIPTION_RENEWALS_TOTAL.labels(plan=plan or "unknown", result=RENEWAL_FAILED).inc()
                return RenewalResult(
                    subscription_id=subscription_id,
                    user_id=user_id or uuid.UUID(int=0),
                    status=RENEWAL_FAILED,
                    plan=plan,
                    error_kind=INTERNAL_ERROR_KIND,
                    error_message=INTERNAL_ERROR_MESSAGE,
                )

    async def _mark_past_due(self, subscription_id: uuid.UUID) -> None:
        async with self.session_factory() as session:
            try:
                await SubscriptionService(session, self.gateway, clock=self.clock).mark_past_due(
                    subscription_id
                )
            except Exception as e:
                log_error(
                    logger,
                    "Could not mark subscription past due",
                    exception=e,
                    subscription_id=str(subscription_id),
                )


async def run_recurring_billing(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: BillingGatewayInterface,
    clock: Clock = utc_now,
) -> BatchSummary:
    """Run one recurring billing pass with the given collaborators."""
    return await RecurringBillingScheduler(session_factory, gateway, clock=clock).run()


@celery_app.task(
    bind=True,
    name="billing.process_recurring_payments",
)
def process_recurring_payments_task(self):
    """Daily recurring billing run.

    Not retried by Celery: subscriptions that fail stay PAST_DUE and are
    picked up again by the next scheduled run.
    """
    with correlation_scope(f"celery-{self.request.id or uuid.uuid4()}"):
        summary = asyncio.run(_process_recurring_payments())
    return {key: value for key, value in summary.to_dict().items() if key != "results"}


async def _process_recurring_payments() -> BatchSummary:
    from app.core.database import create_engine, create_session_maker
    from app.modules.payment_gateway import create_gateway

    engine = create_engine(settings.DATABASE_URL)
    try:
        return await run_recurring_billing(create_session_maker(engine), create_gateway(settings))
    finally:
        await engine.dispose()
