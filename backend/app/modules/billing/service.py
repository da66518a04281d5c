"""Subscription service.

Drives a subscription through ``NONE -> ACTIVE -> {CANCELLED, PAST_DUE} ->
ACTIVE``: lazy FREE bootstrap, billing key issuance with the first charge,
cancellation with a fall back to FREE once the paid period ends, and
single-subscription renewal used by the recurring billing scheduler. Also
handles refunds, gateway webhooks, referral rewards and bonus grants.

Gateway calls happen outside any open database transaction; the writes that
confirm a charge (period, plan, token grant, payment record) are committed
together.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, utc_now
from app.core.config import settings
from app.core.logging import log_error, log_info, log_warning
from app.core.metrics import (
    GATEWAY_ERRORS_TOTAL,
    REFUNDS_TOTAL,
    SUBSCRIPTION_RENEWALS_TOTAL,
    WEBHOOK_EVENTS_TOTAL,
)
from app.modules.billing.exceptions import (
    AlreadySubscribedError,
    BillingKeyMissingError,
    CustomerKeyMismatchError,
    InvalidPlanError,
    PaymentNotFoundError,
    ReferralAlreadyClaimedError,
    ReferralError,
    RefundNotAllowedError,
    SubscriptionNotFoundError,
)
from app.modules.billing.ledger import DebitResult, TokenBalance, TokenLedger, start_of_day
from app.modules.billing.models import (
    PaymentKind,
    PaymentStatus,
    PaymentTransaction,
    ReferralReward,
    Subscription,
    SubscriptionStatus,
    TokenReason,
    TokenTransaction,
    customer_key_for,
    user_id_from_referral_code,
)
from app.modules.billing.plans import (
    LOW_BALANCE_IMAGE_THRESHOLD,
    REFERRED_BONUS_TOKENS,
    REFERRER_BONUS_TOKENS,
    UNLIMITED,
    PlanDefinition,
    PlanId,
    TokenPackage,
    calculate_generation_cost,
    get_plan,
    get_token_package,
    images_affordable,
)
from app.modules.billing.repository import (
    RENEWABLE_STATUSES,
    PaymentTransactionRepository,
    ReferralRewardRepository,
    SubscriptionRepository,
)
from app.modules.payment_gateway.interface import (
    DUPLICATE_ORDER_CODE,
    BillingAuthRequest,
    BillingGatewayInterface,
    ChargeResult,
    GatewayError,
    GatewayErrorKind,
    WebhookEvent,
    WebhookEventType,
)

logger = logging.getLogger(__name__)

MAX_PAYMENT_HISTORY_LIMIT = 100

RENEWAL_SUCCESS = "success"
RENEWAL_FAILED = "failed"
RENEWAL_SKIPPED = "skipped"

WEBHOOK_APPLIED = "applied"
WEBHOOK_IGNORED = "ignored"
WEBHOOK_UNMATCHED = "unmatched"


@dataclass
class BillingIssuanceResult:
    """Billing key registration followed by a confirmed first charge."""
    subscription: Subscription
    billing_key: str
    charge: ChargeResult


@dataclass
class RenewalResult:
    """Outcome of renewing one subscription."""
    subscription_id: uuid.UUID
    user_id: uuid.UUID
    status: str
    plan: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    charged_amount: Optional[int] = None
    next_billing_date: Optional[datetime] = None
    subscription_status: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RENEWAL_SUCCESS

    def to_dict(self) -> dict:
        return {
            "subscription_id": str(self.subscription_id),
            "user_id": str(self.user_id),
            "status": self.status,
            "plan": self.plan,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "charged_amount": self.charged_amount,
            "next_billing_date": self.next_billing_date.isoformat() if self.next_billing_date else None,
            "subscription_status": self.subscription_status,
        }


@dataclass
class TokenPurchaseResult:
    """Token package bought with the stored billing key."""
    package: TokenPackage
    charge: ChargeResult
    tokens_remaining: int


@dataclass
class RefundOutcome:
    """A charge after a refund, and the refund record it produced."""
    payment: PaymentTransaction
    refund: Optional[PaymentTransaction]


@dataclass
class SubscriptionOverview:
    """Subscription, plan and balance summary for the billing page."""
    subscription: Subscription
    plan: PlanDefinition
    balance: TokenBalance
    days_until_renewal: int
    images_remaining: int
    low_balance: bool
    images_generated_today: int = 0
    daily_image_limit: int = UNLIMITED
    warnings: list[str] = field(default_factory=list)


class SubscriptionService:
    """Service for subscription lifecycle and paid token operations."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: BillingGatewayInterface,
        clock: Clock = utc_now,
        max_failed_attempts: Optional[int] = None,
        failure_window_days: Optional[int] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.clock = clock
        if max_failed_attempts is None:
            max_failed_attempts = settings.BILLING_MAX_FAILED_ATTEMPTS
        if failure_window_days is None:
            failure_window_days = settings.BILLING_FAILURE_WINDOW_DAYS
        self.max_failed_attempts = max_failed_attempts
        self.failure_window_days = failure_window_days
        self.subscriptions = SubscriptionRepository(session)
        self.payments = PaymentTransactionRepository(session)
        self.referrals = ReferralRewardRepository(session)
        self.ledger = TokenLedger(session, clock=clock)

    # ==================== Bootstrap ====================

    async def ensure_subscription(self, user_id: uuid.UUID) -> Subscription:
        """Return the user's subscription, creating a FREE one on first touch.

        Uses an insert that ignores a conflicting ``user_id``, so concurrent
        first requests end up with exactly one row and one opening grant.
        """
        plan = get_plan(PlanId.FREE)
        now = self.clock()
        try:
            created = await self.subscriptions.insert_if_absent({
                "id": uuid.uuid4(),
                "user_id": user_id,
                "plan": plan.plan_id.value,
                "status": SubscriptionStatus.ACTIVE.value,
                "customer_key": customer_key_for(user_id),
                "current_period_start": now,
                "current_period_end": now + timedelta(days=plan.billing_interval_days),
                "tokens_total": plan.token_allowance,
                "tokens_used": 0,
                "max_characters": plan.max_characters,
                "max_projects": plan.max_projects,
            })
            subscription = await self.subscriptions.get_by_user_id(user_id)
            if subscription is None:
                raise SubscriptionNotFoundError(user_id)
            if created:
                await self.ledger.record_opening_grant(subscription)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if created:
            log_info(logger, "Created FREE subscription", user_id=str(user_id))
        return subscription

    async def get_subscription(self, user_id: uuid.UUID) -> Subscription:
        """Get a user's subscription.

        Raises:
            SubscriptionNotFoundError: if the user has none
        """
        subscription = await self.subscriptions.get_by_user_id(user_id)
        if subscription is None:
            raise SubscriptionNotFoundError(user_id)
        return subscription

    # ==================== Plan change ====================

    async def request_plan_change(
        self,
        user_id: uuid.UUID,
        plan_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> BillingAuthRequest:
        """Build the payment-method collection request for a paid plan.

        Raises:
            InvalidPlanError: unknown plan, or the FREE plan
            AlreadySubscribedError: already active on that plan with a card
        """
        plan = get_plan(plan_id)
        if plan.is_free:
            raise InvalidPlanError(plan_id, "The free plan does not require payment")

        subscription = await self.ensure_subscription(user_id)
        if self._is_active_on(subscription, plan):
            raise AlreadySubscribedError(f"Already subscribed to the {plan.name} plan")

        return self.gateway.create_billing_auth_request(
            user_id=str(user_id),
            plan_id=plan.plan_id.value,
            amount=plan.price_minor_units,
            customer_key=subscription.customer_key,
            email=email,
            name=name,
        )

    def _is_active_on(self, subscription: Subscription, plan: PlanDefinition) -> bool:
        return (
            subscription.plan == plan.plan_id.value
            and subscription.is_active()
            and subscription.billing_key is not None
            and subscription.current_period_end > self.clock()
        )

    async def complete_billing_key_issuance(
        self,
        user_id: uuid.UUID,
        auth_key: str,
        customer_key: str,
        plan_id: str,
    ) -> BillingIssuanceResult:
        """Exchange the auth key for a billing key, charge, then activate.

        Nothing about the subscription changes unless the first charge is
        confirmed. A charge failure cancels the freshly issued key and
        re-raises the ``GatewayError``.

        Raises:
            InvalidPlanError: unknown plan, or the FREE plan
            CustomerKeyMismatchError: customer key of another user
            AlreadySubscribedError: already active on that plan with a card
            GatewayError: issuance or charge failed
        """
        plan = get_plan(plan_id)
        if plan.is_free:
            raise InvalidPlanError(plan_id, "The free plan does not require payment")
        if customer_key != customer_key_for(user_id):
            raise CustomerKeyMismatchError(user_id, customer_key)

        subscription = await self.ensure_subscription(user_id)
        if self._is_active_on(subscription, plan):
            raise AlreadySubscribedError(f"Already subscribed to the {plan.name} plan")

        try:
            issued = await self.gateway.issue_billing_key(auth_key, customer_key)
        except GatewayError as e:
            GATEWAY_ERRORS_TOTAL.labels(operation="issue_billing_key", kind=e.kind.value).inc()
            log_warning(
                logger,
                "Billing key issuance failed",
                user_id=str(user_id),
                error_code=e.code,
                provider_message=e.provider_message,
            )
            raise

        now = self.clock()
        order_id = f"sub_start_{user_id.hex}_{now:%Y%m%d%H%M%S%f}"
        try:
            charge = await self.gateway.charge_billing_key(
                billing_key=issued.billing_key,
                customer_key=customer_key,
                amount=plan.price_minor_units,
                order_id=order_id,
                order_name=f"{plan.name} plan subscription",
            )
        except GatewayError as e:
            GATEWAY_ERRORS_TOTAL.labels(operation="charge", kind=e.kind.value).inc()
            log_warning(
                logger,
                "First charge failed, subscription left unchanged",
                user_id=str(user_id),
                plan=plan.plan_id.value,
                error_code=e.code,
                provider_message=e.provider_message,
            )
            await self._record_payment(
                subscription,
                kind=PaymentKind.SUBSCRIPTION_START,
                status=PaymentStatus.FAILED,
                order_id=order_id,
                amount=plan.price_minor_units,
                error_code=e.code,
                description=f"{plan.name} plan subscription",
                commit=True,
            )
            await self._cancel_billing_key_quietly(issued.billing_key, user_id)
            raise

        previous_billing_key = subscription.billing_key
        period_end = now + timedelta(days=plan.billing_interval_days)
        try:
            await self.subscriptions.update_fields(
                subscription.id,
                plan=plan.plan_id.value,
                status=SubscriptionStatus.ACTIVE.value,
                billing_key=issued.billing_key,
                card_brand=issued.card_brand,
                card_last4=issued.card_last4,
                current_period_start=now,
                current_period_end=period_end,
                max_characters=plan.max_characters,
                max_projects=plan.max_projects,
                canceled_at=None,
            )
            await self.ledger.apply_credit(
                user_id,
                plan.token_allowance,
                TokenReason.RENEWAL_GRANT,
                description=f"{plan.name} plan allowance",
            )
            await self._record_payment(
                subscription,
                kind=PaymentKind.SUBSCRIPTION_START,
                status=PaymentStatus.COMPLETED,
                order_id=charge.order_id,
                amount=charge.amount,
                payment_key=charge.payment_key,
                tokens=plan.token_allowance,
                description=f"{plan.name} plan subscription",
            )
            subscription = await self.subscriptions.get_by_id(subscription.id)
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            log_error(
                logger,
                "Charge confirmed but subscription activation failed",
                exception=e,
                user_id=str(user_id),
                order_id=charge.order_id,
            )
            raise

        log_info(
            logger,
            "Subscription activated",
            user_id=str(user_id),
            plan=plan.plan_id.value,
            order_id=charge.order_id,
        )

        # The old key is superseded only once the new one is committed
        if previous_billing_key and previous_billing_key != issued.billing_key:
            await self._cancel_billing_key_quietly(previous_billing_key, user_id)

        return BillingIssuanceResult(
            subscription=subscription,
            billing_key=issued.billing_key,
            charge=charge,
        )

    async def _cancel_billing_key_quietly(self, billing_key: str, user_id: uuid.UUID) -> None:
        """Cancel a billing key, logging instead of raising on failure."""
        try:
            await self.gateway.cancel_billing_key(billing_key)
        except GatewayError as e:
            GATEWAY_ERRORS_TOTAL.labels(operation="cancel_billing_key", kind=e.kind.value).inc()
            log_warning(
                logger,
                "Failed to cancel billing key at gateway",
                user_id=str(user_id),
                error_code=e.code,
                provider_message=e.provider_message,
            )

    async def _record_payment(
        self,
        subscription: Subscription,
        kind: PaymentKind,
        status: PaymentStatus,
        order_id: str,
        amount: int,
        payment_key: Optional[str] = None,
        tokens: Optional[int] = None,
        error_code: Optional[str] = None,
        description: Optional[str] = None,
        commit: bool = False,
    ) -> PaymentTransaction:
        try:
            payment = await self.payments.add(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                kind=kind.value,
                status=status.value,
                order_id=order_id,
                amount=amount,
                payment_key=payment_key,
                tokens=tokens,
                error_code=error_code,
                description=description,
                created_at=self.clock(),
            )
            if commit:
                await self.session.commit()
        except Exception:
            if commit:
                await self.session.rollback()
            raise
        return payment

    # ==================== Cancellation ====================

    async def cancel_subscription(self, user_id: uuid.UUID) -> Subscription:
        """Cancel at period end.

        Tokens already granted stay usable and the billing key is kept for
        reactivation. Cancelling twice is a no-op.

        Raises:
            SubscriptionNotFoundError: if the user has no subscription
        """
        try:
            subscription = await self.get_subscription(user_id)
            if subscription.status != SubscriptionStatus.CANCELLED.value:
                await self.subscriptions.update_fields(
                    subscription.id,
                    status=SubscriptionStatus.CANCELLED.value,
                    canceled_at=self.clock(),
                )
                subscription = await self.subscriptions.get_by_id(subscription.id)
                log_info(logger, "Subscription cancelled", user_id=str(user_id))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return subscription

    def _cancellation_expired(self, subscription: Subscription) -> bool:
        return (
            subscription.status == SubscriptionStatus.CANCELLED.value
            and subscription.current_period_end <= self.clock()
        )

    async def _apply_free_downgrade(self, subscription: Subscription) -> bool:
        """Stage the move of an expired CANCELLED subscription onto FREE.

        Nothing is charged. The billing key is kept so the user can
        resubscribe without registering a card again.

        Returns:
            False if another request already moved the subscription
        """
        free = get_plan(PlanId.FREE)
        now = self.clock()
        downgraded = await self.subscriptions.advance_period(
            subscription.id,
            subscription.current_period_end,
            expected_status=SubscriptionStatus.CANCELLED.value,
            plan=free.plan_id.value,
            status=SubscriptionStatus.ACTIVE.value,
            current_period_start=now,
            current_period_end=now + timedelta(days=free.billing_interval_days),
            max_characters=free.max_characters,
            max_projects=free.max_projects,
            canceled_at=None,
        )
        if downgraded:
            await self.ledger.apply_credit(
                subscription.user_id,
                free.token_allowance,
                TokenReason.RENEWAL_GRANT,
                description=f"{free.name} plan allowance after cancellation",
            )
        return downgraded

    async def get_current_subscription(self, user_id: uuid.UUID) -> Subscription:
        """``ensure_subscription``, falling back to FREE if a cancellation has run out."""
        subscription = await self.ensure_subscription(user_id)
        if not self._cancellation_expired(subscription):
            return subscription

        previous_plan = subscription.plan
        try:
            downgraded = await self._apply_free_downgrade(subscription)
            subscription = await self.get_subscription(user_id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        if downgraded:
            SUBSCRIPTION_RENEWALS_TOTAL.labels(plan=previous_plan, result="downgraded").inc()
            log_info(
                logger,
                "Cancelled subscription moved to FREE",
                user_id=str(user_id),
                previous_plan=previous_plan,
            )
        return subscription

    # ==================== Renewal ====================

    async def renew_one(self, subscription: Subscription) -> RenewalResult:
        """Charge and renew a single due subscription.

        Success advances the period from now and resets the token balance
        to the plan allowance. A failed charge marks the subscription
        PAST_DUE and leaves its period and balance untouched; there is no
        retry here. An expired CANCELLED subscription is moved to FREE
        without a charge.
        """
        current = await self.subscriptions.get_by_id(subscription.id)
        if current is None:
            raise SubscriptionNotFoundError(subscription.user_id)

        if self._cancellation_expired(current):
            return await self._renew_as_free(current)

        now = self.clock()
        if current.status not in RENEWABLE_STATUSES or current.current_period_end > now:
            await self.session.commit()
            return RenewalResult(
                subscription_id=current.id,
                user_id=current.user_id,
                status=RENEWAL_SKIPPED,
                plan=current.plan,
                next_billing_date=current.current_period_end,
                subscription_status=current.status,
            )

        plan = get_plan(current.plan)
        expected_period_end = current.current_period_end
        next_period_end = now + timedelta(days=plan.billing_interval_days)

        if plan.is_free:
            return await self._confirm_renewal(current, plan, expected_period_end, now, next_period_end)

        prefix = f"recurring_{current.id.hex}_{expected_period_end:%Y%m%d}"
        attempt = await self.payments.count_by_order_prefix(prefix) + 1
        order_id = f"{prefix}_{attempt}"
        # Do not hold a transaction open across the gateway call
        await self.session.commit()

        if not current.billing_key:
            error = BillingKeyMissingError(current.user_id)
            return await self._fail_renewal(
                current, plan, expected_period_end, order_id,
                code="BILLING_KEY_MISSING", kind="billing_key_missing", message=str(error),
            )

        try:
            charge = await self.gateway.charge_billing_key(
                billing_key=current.billing_key,
                customer_key=current.customer_key,
                amount=plan.price_minor_units,
                order_id=order_id,
                order_name=f"{plan.name} plan renewal",
            )
        except GatewayError as e:
            GATEWAY_ERRORS_TOTAL.labels(operation="charge", kind=e.kind.value).inc()
            if e.kind == GatewayErrorKind.DUPLICATE_ORDER:
                return await self._reconcile_duplicate_order(
                    current, plan, expected_period_end, now, next_period_end, order_id
                )
            log_warning(
                logger,
                "Renewal charge failed",
                subscription_id=str(current.id),
                error_code=e.code,
                provider_message=e.provider_message,
            )
            return await self._fail_renewal(
                current, plan, expected_period_end, order_id,
                code=e.code, kind=e.kind.value, message=e.user_message,
            )

        return await self._confirm_renewal(
            current, plan, expected_period_end, now, next_period_end, charge=charge
        )

    async def _renew_as_free(self, subscription: Subscription) -> RenewalResult:
        previous_plan = subscription.plan
        try:
            downgraded = await self._apply_free_downgrade(subscription)
            current = await self.subscriptions.get_by_id(subscription.id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if not downgraded:
            return RenewalResult(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                status=RENEWAL_SKIPPED,
                plan=previous_plan,
                error_kind="already_renewed",
            )

        SUBSCRIPTION_RENEWALS_TOTAL.labels(plan=previous_plan, result="downgraded").inc()
        log_info(
            logger,
            "Cancelled subscription moved to FREE",
            subscription_id=str(subscription.id),
            previous_plan=previous_plan,
        )
        return RenewalResult(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            status=RENEWAL_SUCCESS,
            plan=current.plan,
            charged_amount=0,
            next_billing_date=current.current_period_end,
            subscription_status=current.status,
        )

    async def _reconcile_duplicate_order(
        self,
        subscription: Subscription,
        plan: PlanDefinition,
        expected_period_end: datetime,
        now: datetime,
        next_period_end: datetime,
        order_id: str,
    ) -> RenewalResult:
        """Settle an order id the gateway has already seen.

        A local record means another run owns the order. Without one, an
        earlier run was charged but never confirmed: the charge is looked up
        and applied, or, if the gateway holds no completed charge, the attempt
        is recorded as failed so the next run uses a fresh order id.
        """
        existing = await self.payments.get_by_order_id(order_id)
        await self.session.commit()
        if existing is not None:
            log_warning(
                logger,
                "Renewal order already handled by another run",
                subscription_id=str(subscription.id),
                order_id=order_id,
            )
            return RenewalResult(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                status=RENEWAL_SKIPPED,
                plan=plan.plan_id.value,
                error_kind=GatewayErrorKind.DUPLICATE_ORDER.value,
            )

        try:
            charge = await self.gateway.find_charge(order_id)
        except GatewayError as e:
            GATEWAY_ERRORS_TOTAL.labels(operation="find_charge", kind=e.kind.value).inc()
            log_warning(
                logger,
                "Could not look up unconfirmed renewal order",
                subscription_id=str(subscription.id),
                order_id=order_id,
                error_code=e.code,
            )
            return RenewalResult(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                status=RENEWAL_SKIPPED,
                plan=plan.plan_id.value,
                error_kind=e.kind.value,
            )

        if charge is None:
            error = GatewayError(DUPLICATE_ORDER_CODE)
            return await self._fail_renewal(
                subscription, plan, expected_period_end, order_id,
                code=error.code, kind=error.kind.value, message=error.user_message,
            )

        log_warning(
            logger,
            "Recovering renewal charge that was never confirmed locally",
            subscription_id=str(subscription.id),
            order_id=order_id,
        )
        return await self._confirm_renewal(
            subscription, plan, expected_period_end, now, next_period_end, charge=charge
        )

    async def _confirm_renewal(
        self,
        subscription: Subscription,
        plan: PlanDefinition,
        expected_period_end: datetime,
        now: datetime,
        next_period_end: datetime,
        charge: Optional[ChargeResult] = None,
    ) -> RenewalResult:
        try:
            advanced = await self.subscriptions.advance_period(
                subscription.id,
                expected_period_end,
                status=SubscriptionStatus.ACTIVE.value,
                current_period_start=now,
                current_period_end=next_period_end,
                max_characters=plan.max_characters,
                max_projects=plan.max_projects,
            )
            if advanced:
                await self.ledger.apply_credit(
                    subscription.user_id,
                    plan.token_allowance,
                    TokenReason.RENEWAL_GRANT,
                    description=f"{plan.name} plan renewal",
                )
            if charge is not None:
                # A replayed charge may already be recorded by the run that won
                await self.payments.add_if_absent(
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    kind=PaymentKind.RENEWAL.value,
                    status=PaymentStatus.COMPLETED.value,
                    order_id=charge.order_id,
                    amount=charge.amount,
                    refunded_amount=0,
                    payment_key=charge.payment_key,
                    tokens=plan.token_allowance if advanced else None,
                    description=f"{plan.name} plan renewal",
                    created_at=self.clock(),
                )
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            if charge is not None:
                log_error(
                    logger,
                    "Renewal charge confirmed but period update failed",
                    exception=e,
                    subscription_id=str(subscription.id),
                    order_id=charge.order_id,
                )
            raise

        if not advanced:
            log_warning(
                logger,
                "Subscription period already advanced by another run",
                subscription_id=str(subscription.id),
            )
            return RenewalResult(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                status=RENEWAL_SKIPPED,
                plan=plan.plan_id.value,
                error_kind="already_renewed",
            )

        SUBSCRIPTION_RENEWALS_TOTAL.labels(plan=plan.plan_id.value, result=RENEWAL_SUCCESS).inc()
        log_info(
            logger,
            "Subscription renewed",
            subscription_id=str(subscription.id),
            plan=plan.plan_id.value,
            next_billing_date=next_period_end.isoformat(),
        )
        return RenewalResult(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            status=RENEWAL_SUCCESS,
            plan=plan.plan_id.value,
            charged_amount=charge.amount if charge is not None else 0,
            next_billing_date=next_period_end,
            subscription_status=SubscriptionStatus.ACTIVE.value,
        )

    async def _fail_renewal(
        self,
        subscription: Subscription,
        plan: PlanDefinition,
        expected_period_end: datetime,
        order_id: str,
        code: str,
        kind: str,
        message: str,
    ) -> RenewalResult:
        """Mark PAST_DUE, record the failed charge, auto-cancel on repeat failures."""
        now = self.clock()
        status = SubscriptionStatus.PAST_DUE.value
        try:
            marked = await self.subscriptions.advance_period(
                subscription.id,
                expected_period_end,
                status=SubscriptionStatus.PAST_DUE.value,
            )
            if not marked:
                await self.session.commit()
                log_warning(
                    logger,
                    "Subscription renewed by another run while this charge failed",
                    subscription_id=str(subscription.id),
                )
                return RenewalResult(
                    subscription_id=subscription.id,
                    user_id=subscription.user_id,
                    status=RENEWAL_SKIPPED,
                    plan=plan.plan_id.value,
                    error_kind="already_renewed",
                )
            await self._record_payment(
                subscription,
                kind=PaymentKind.RENEWAL,
                status=PaymentStatus.FAILED,
                order_id=order_id,
                amount=plan.price_minor_units,
                error_code=code,
                description=f"{plan.name} plan renewal",
            )
            failures = await self.payments.count_failed_since(
                subscription.id,
                PaymentKind.RENEWAL.value,
                now - timedelta(days=self.failure_window_days),
            )
            if failures >= self.max_failed_attempts:
                await self.subscriptions.update_fields(
                    subscription.id,
                    status=SubscriptionStatus.CANCELLED.value,
                    canceled_at=now,
                )
                status = SubscriptionStatus.CANCELLED.value
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        SUBSCRIPTION_RENEWALS_TOTAL.labels(plan=plan.plan_id.value, result=RENEWAL_FAILED).inc()
        if status == SubscriptionStatus.CANCELLED.value:
            log_warning(
                logger,
                f"Subscription cancelled after {failures} failed renewal attempts",
                subscription_id=str(subscription.id),
            )

        return RenewalResult(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            status=RENEWAL_FAILED,
            plan=plan.plan_id.value,
            error_kind=kind,
            error_message=message,
            subscription_status=status,
        )

    async def mark_past_due(self, subscription_id: uuid.UUID) -> bool:
        """Flag an ACTIVE subscription as PAST_DUE after an unexpected renewal error.

        A subscription whose period was renewed meanwhile is left alone.
        """
        try:
            updated = await self.subscriptions.mark_past_due_if_due(subscription_id, self.clock())
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return updated

    # ==================== Tokens ====================

    async def purchase_tokens(self, user_id: uuid.UUID, package_id: str) -> TokenPurchaseResult:
        """Charge the stored billing key for a token package and credit it.

        Raises:
            InvalidPlanError: unknown package, or an unlimited plan
            SubscriptionNotFoundError: if the user has no subscription
            BillingKeyMissingError: no registered payment method
            GatewayError: the charge failed
        """
        package = get_token_package(package_id)
        subscription = await self.get_subscription(user_id)
        await self.session.commit()

        if not subscription.billing_key:
            raise BillingKeyMissingError(user_id)
        if subscription.has_unlimited_tokens:
            raise InvalidPlanError(subscription.plan, "Your plan already includes unlimited tokens")

        now = self.clock()
        order_id = f"tokens_{user_id.hex}_{package.package_id}_{now:%Y%m%d%H%M%S%f}"
        description = f"{package.name} ({package.tokens} tokens)"
        try:
            charge = await self.gateway.charge_billing_key(
                billing_key=subscription.billing_key,
                customer_key=subscription.customer_key,
                amount=package.price_minor_units,
                order_id=order_id,
                order_name=description,
            )
        except GatewayError as e:
            GATEWAY_ERRORS_TOTAL.labels(operation="charge", kind=e.kind.value).inc()
            log_warning(
                logger,
                "Token purchase charge failed",
                user_id=str(user_id),
                error_code=e.code,
                provider_message=e.provider_message,
            )
            await self._record_payment(
                subscription,
                kind=PaymentKind.TOKEN_PURCHASE,
                status=PaymentStatus.FAILED,
                order_id=order_id,
                amount=package.price_minor_units,
                error_code=e.code,
                description=description,
                commit=True,
            )
            raise

        try:
            remaining = await self.ledger.apply_credit(
                user_id, package.tokens, TokenReason.PURCHASE, description=description
            )
            await self._record_payment(
                subscription,
                kind=PaymentKind.TOKEN_PURCHASE,
                status=PaymentStatus.COMPLETED,
                order_id=charge.order_id,
                amount=charge.amount,
                payment_key=charge.payment_key,
                tokens=package.tokens,
                description=description,
            )
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            log_error(
                logger,
                "Token purchase charged but credit failed",
                exception=e,
                user_id=str(user_id),
                order_id=charge.order_id,
            )
            raise

        log_info(logger, "Tokens purchased", user_id=str(user_id), package=package.package_id)
        return TokenPurchaseResult(package=package, charge=charge, tokens_remaining=remaining)

    async def consume_generation_tokens(
        self,
        user_id: uuid.UUID,
        image_count: int,
        high_resolution: bool = False,
        save_character: bool = False,
    ) -> DebitResult:
        """Debit the token cost of a generation request.

        Raises:
            ValueError: if image_count is below 1
            InsufficientBalanceError: if the balance does not cover the cost
            DailyLimitExceededError: if the images pass the plan's daily limit
        """
        cost = calculate_generation_cost(image_count, high_resolution, save_character)
        subscription = await self.get_current_subscription(user_id)
        plan = get_plan(subscription.plan)

        details = [f"{image_count} image(s)"]
        if high_resolution:
            details.append("high resolution")
        if save_character:
            details.append("character saved")
        return await self.ledger.debit(
            user_id,
            cost,
            TokenReason.GENERATION,
            description="Generation: " + ", ".join(details),
            image_count=image_count,
            daily_image_limit=plan.daily_image_limit,
        )

    async def grant_bonus_tokens(
        self,
        user_id: uuid.UUID,
        amount: int,
        description: Optional[str] = None,
    ) -> int:
        """Credit bonus tokens granted by an operator.

        Returns:
            Remaining balance, ``UNLIMITED`` for unlimited plans
        """
        if amount <= 0:
            raise ValueError("Bonus amount must be positive")
        await self.get_current_subscription(user_id)
        balance = await self.ledger.credit(
            user_id,
            amount,
            TokenReason.ADMIN_ADJUSTMENT,
            description=description or "Bonus tokens",
        )
        log_info(logger, "Bonus tokens granted", user_id=str(user_id), amount=amount)
        return balance

    async def get_token_history(self, user_id: uuid.UUID, limit: int = 50) -> list[TokenTransaction]:
        return await self.ledger.get_usage_history(user_id, limit=limit)

    # ==================== Referrals ====================

    async def claim_referral(self, user_id: uuid.UUID, referral_code: str) -> ReferralReward:
        """Reward the referrer and the newly referred user once.

        Raises:
            ReferralError: unknown code, or the user's own code
            ReferralAlreadyClaimedError: the user already claimed a referral
        """
        referrer_id = user_id_from_referral_code(referral_code.strip())
        if referrer_id is None:
            raise ReferralError("Unknown referral code")
        if referrer_id == user_id:
            raise ReferralError("You cannot use your own referral code")

        referrer = await self.subscriptions.get_by_user_id(referrer_id)
        if referrer is None:
            await self.session.commit()
            raise ReferralError("Unknown referral code")
        await self.get_current_subscription(user_id)

        try:
            created = await self.referrals.insert_if_absent({
                "referrer_id": referrer_id,
                "referred_id": user_id,
                "referrer_tokens": REFERRER_BONUS_TOKENS,
                "referred_tokens": REFERRED_BONUS_TOKENS,
                "created_at": self.clock(),
            })
            if not created:
                raise ReferralAlreadyClaimedError("A referral reward was already claimed")
            await self.ledger.apply_credit(
                referrer_id,
                REFERRER_BONUS_TOKENS,
                TokenReason.REFERRAL_BONUS,
                description="Referral reward",
            )
            await self.ledger.apply_credit(
                user_id,
                REFERRED_BONUS_TOKENS,
                TokenReason.REFERRAL_BONUS,
                description="Welcome bonus for joining through a referral",
            )
            reward = await self.referrals.get_by_referred_id(user_id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        log_info(
            logger,
            "Referral reward granted",
            referrer_id=str(referrer_id),
            referred_id=str(user_id),
        )
        return reward

    # ==================== Refunds ====================

    async def refund_payment(
        self,
        payment_id: uuid.UUID,
        amount: Optional[int] = None,
        reason: str = "Refund requested",
    ) -> RefundOutcome:
        """Refund part or all of a completed charge through the gateway.

        ``amount`` defaults to everything not yet refunded. Refunding a
        token purchase removes the matching share of its tokens that are
        still unspent; subscription charges leave the plan untouched.

        Raises:
            PaymentNotFoundError: unknown payment
            RefundNotAllowedError: nothing left to refund, or amount out of range
            GatewayError: the gateway refused the refund
        """
        payment = await self.payments.get_by_id(payment_id)
        await self.session.commit()
        if payment is None:
            raise PaymentNotFoundError(payment_id)

        refundable = payment.refundable_amount
        if not payment.payment_key or refundable <= 0:
            raise RefundNotAllowedError("This payment has nothing left to refund")
        if amount is None:
            amount = refundable
        if amount <= 0 or amount > refundable:
            raise RefundNotAllowedError(f"Refund amount must be between 1 and {refundable}")

        target_total = payment.refunded_amount + amount
        try:
            refund = await self.gateway.refund_payment(
                payment.payment_key,
                amount,
                reason,
                idempotency_key=f"refund_{payment.order_id}_{target_total}",
            )
        except GatewayError as e:
            GATEWAY_ERRORS_TOTAL.labels(operation="refund", kind=e.kind.value).inc()
            log_warning(
                logger,
                "Refund failed at gateway",
                payment_id=str(payment.id),
                error_code=e.code,
                provider_message=e.provider_message,
            )
            raise

        refunded_total = refund.refunded_total if refund.refunded_total is not None else target_total
        record = await self._apply_refund(payment.id, refunded_total, f"Refund: {reason}", source="api")
        if record is None:
            # A webhook for the same cancellation got there first
            record = await self.payments.get_by_order_id(
                f"refund_{payment.order_id}_{min(refunded_total, payment.amount)}"
            )
        payment = await self.payments.get_by_id(payment.id)
        await self.session.commit()
        return RefundOutcome(payment=payment, refund=record)

    async def _apply_refund(
        self,
        payment_id: uuid.UUID,
        refunded_total: int,
        description: str,
        source: str,
    ) -> Optional[PaymentTransaction]:
        """Raise a charge's refunded total to ``refunded_total`` and record the difference.

        Totals never go down, so applying the same cancellation twice is a
        no-op.

        Returns:
            The new refund record, or None if nothing changed
        """
        try:
            payment = await self.payments.get_by_id(payment_id, for_update=True)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            target = min(refunded_total, payment.amount)
            delta = target - payment.refunded_amount
            if delta <= 0:
                await self.session.commit()
                return None

            tokens_removed = 0
            if payment.kind == PaymentKind.TOKEN_PURCHASE.value and payment.tokens and payment.amount > 0:
                tokens_removed = await self.ledger.apply_clawback(
                    payment.user_id,
                    math.ceil(payment.tokens * delta / payment.amount),
                    description=description,
                )

            fully_refunded = target >= payment.amount
            await self.payments.update_fields(
                payment.id,
                refunded_amount=target,
                status=PaymentStatus.REFUNDED.value if fully_refunded else payment.status,
            )
            order_id = f"refund_{payment.order_id}_{target}"
            await self.payments.add_if_absent(
                user_id=payment.user_id,
                subscription_id=payment.subscription_id,
                kind=PaymentKind.REFUND.value,
                status=PaymentStatus.COMPLETED.value,
                order_id=order_id,
                amount=-delta,
                refunded_amount=0,
                payment_key=payment.payment_key,
                tokens=-tokens_removed if tokens_removed else None,
                description=description,
                created_at=self.clock(),
            )
            record = await self.payments.get_by_order_id(order_id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        REFUNDS_TOTAL.labels(kind=payment.kind, source=source).inc()
        log_info(
            logger,
            "Refund recorded",
            payment_id=str(payment.id),
            amount=delta,
            refunded_total=target,
            tokens_removed=tokens_removed,
        )
        return record

    # ==================== Webhooks ====================

    async def handle_webhook_event(self, event: WebhookEvent) -> str:
        """Apply a verified gateway webhook to local payment records.

        Redelivered events are harmless. Events that match no local payment
        are acknowledged and left for the recurring run to reconcile.

        Returns:
            ``WEBHOOK_APPLIED``, ``WEBHOOK_IGNORED`` or ``WEBHOOK_UNMATCHED``
        """
        data = event.data or {}
        try:
            event_type = WebhookEventType(event.event_type)
        except ValueError:
            log_info(logger, "Ignoring unhandled webhook event", event_type=event.event_type)
            result = WEBHOOK_IGNORED
        else:
            payment = await self._find_webhook_payment(data)
            await self.session.commit()
            if payment is None:
                log_warning(
                    logger,
                    "Webhook matches no payment record",
                    event_type=event_type.value,
                    order_id=data.get("orderId"),
                )
                result = WEBHOOK_UNMATCHED
            elif event_type == WebhookEventType.BILLING_PAYMENT_DONE:
                result = await self._webhook_payment_done(payment, data)
            elif event_type == WebhookEventType.BILLING_PAYMENT_FAILED:
                result = await self._webhook_payment_failed(payment, data)
            else:
                result = await self._webhook_payment_canceled(payment, data)

        WEBHOOK_EVENTS_TOTAL.labels(event_type=event.event_type or "unknown", result=result).inc()
        return result

    async def _find_webhook_payment(self, data: dict) -> Optional[PaymentTransaction]:
        payment = None
        if data.get("orderId"):
            payment = await self.payments.get_by_order_id(str(data["orderId"]))
        if payment is None and data.get("paymentKey"):
            payment = await self.payments.get_charge_by_payment_key(str(data["paymentKey"]))
        if payment is not None and payment.kind == PaymentKind.REFUND.value:
            return None
        return payment

    async def _webhook_payment_done(self, payment: PaymentTransaction, data: dict) -> str:
        if payment.status == PaymentStatus.FAILED.value:
            # The period was never granted for this order; the recurring run settles it
            log_warning(
                logger,
                "Gateway reports a charge recorded locally as failed",
                payment_id=str(payment.id),
                order_id=payment.order_id,
            )
            return WEBHOOK_UNMATCHED
        if payment.payment_key or not data.get("paymentKey"):
            return WEBHOOK_IGNORED
        try:
            await self.payments.update_fields(payment.id, payment_key=str(data["paymentKey"]))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return WEBHOOK_APPLIED

    async def _webhook_payment_failed(self, payment: PaymentTransaction, data: dict) -> str:
        if payment.status != PaymentStatus.COMPLETED.value:
            return WEBHOOK_IGNORED
        error_code = data.get("errorCode") or data.get("code") or "BILLING_PAYMENT_FAILED"
        try:
            await self.payments.update_fields(
                payment.id,
                status=PaymentStatus.FAILED.value,
                error_code=str(error_code),
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        log_warning(
            logger,
            "Gateway reports a recorded charge as failed",
            payment_id=str(payment.id),
            order_id=payment.order_id,
            error_code=str(error_code),
        )
        return WEBHOOK_APPLIED

    async def _webhook_payment_canceled(self, payment: PaymentTransaction, data: dict) -> str:
        try:
            canceled_total = int(data.get("canceledAmount") or data.get("cancelAmount") or payment.amount)
        except (TypeError, ValueError):
            canceled_total = payment.amount
        reason = data.get("cancelReason") or "Cancelled at the payment provider"
        record = await self._apply_refund(payment.id, canceled_total, f"Refund: {reason}", source="webhook")
        return WEBHOOK_APPLIED if record is not None else WEBHOOK_IGNORED

    # ==================== Status ====================

    async def get_status(self, user_id: uuid.UUID) -> SubscriptionOverview:
        """Subscription, plan, balance and renewal countdown for a user."""
        subscription = await self.get_current_subscription(user_id)
        plan = get_plan(subscription.plan)
        balance = TokenBalance.from_subscription(subscription)

        now = self.clock()
        seconds_left = (subscription.current_period_end - now).total_seconds()
        days_until_renewal = max(0, math.ceil(seconds_left / 86400))

        images_remaining = images_affordable(balance.tokens_remaining)
        low_balance = (
            images_remaining != UNLIMITED
            and images_remaining < LOW_BALANCE_IMAGE_THRESHOLD
        )
        images_today = await self.ledger.transactions.images_generated_since(user_id, start_of_day(now))
        await self.session.commit()

        warnings = []
        if low_balance:
            warnings.append(f"Only {images_remaining} image(s) worth of tokens left")
        if plan.daily_image_limit != UNLIMITED and images_today >= plan.daily_image_limit:
            warnings.append("You have reached today's generation limit.")
        if subscription.status == SubscriptionStatus.PAST_DUE.value:
            warnings.append("Your last payment failed. Please check your payment method.")
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            warnings.append("Your subscription is cancelled and will not renew.")

        return SubscriptionOverview(
            subscription=subscription,
            plan=plan,
            balance=balance,
            days_until_renewal=days_until_renewal,
            images_remaining=images_remaining,
            low_balance=low_balance,
            images_generated_today=images_today,
            daily_image_limit=plan.daily_image_limit,
            warnings=warnings,
        )

    async def get_payment_history(self, user_id: uuid.UUID, limit: int = 20) -> list[PaymentTransaction]:
        limit = max(1, min(limit, MAX_PAYMENT_HISTORY_LIMIT))
        return await self.payments.get_for_user(user_id, limit=limit)
