"""Tests for the subscription lifecycle."""

import asyncio
import uuid
from datetime import timedelta

import pytest

from app.modules.billing.exceptions import (
    AlreadySubscribedError,
    BillingKeyMissingError,
    CustomerKeyMismatchError,
    DailyLimitExceededError,
    InsufficientBalanceError,
    InvalidPlanError,
    ReferralAlreadyClaimedError,
    ReferralError,
    SubscriptionNotFoundError,
)
from app.modules.billing.models import (
    PaymentKind,
    PaymentStatus,
    SubscriptionStatus,
    TokenReason,
    customer_key_for,
    referral_code_for,
    user_id_from_customer_key,
)
from app.modules.billing.plans import REFERRED_BONUS_TOKENS, REFERRER_BONUS_TOKENS, UNLIMITED, PlanId
from app.modules.billing.service import (
    RENEWAL_FAILED,
    RENEWAL_SKIPPED,
    RENEWAL_SUCCESS,
    SubscriptionService,
)
from app.modules.payment_gateway.interface import GatewayError, GatewayErrorKind


class TestEnsureSubscription:

    @pytest.mark.asyncio
    async def test_creates_free_subscription(self, run_service, fetch) -> None:
        user_id = uuid.uuid4()

        subscription = await run_service(lambda service: service.ensure_subscription(user_id))

        assert subscription.plan == PlanId.FREE.value
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.tokens_total == 10
        assert subscription.tokens_used == 0
        assert subscription.billing_key is None
        assert subscription.customer_key == customer_key_for(user_id)
        assert subscription.current_period_end - subscription.current_period_start == timedelta(days=30)

    @pytest.mark.asyncio
    async def test_concurrent_first_touch_creates_one_row(self, run_service, fetch) -> None:
        user_id = uuid.uuid4()

        results = await asyncio.gather(
            run_service(lambda service: service.ensure_subscription(user_id)),
            run_service(lambda service: service.ensure_subscription(user_id)),
        )

        assert results[0].id == results[1].id
        assert await fetch.subscription_count(user_id) == 1
        subscription = await fetch.subscription(user_id)
        assert subscription.plan == PlanId.FREE.value
        assert subscription.tokens_total == 10

        entries = await fetch.token_transactions(user_id)
        assert len(entries) == 1
        assert entries[0].reason == TokenReason.RENEWAL_GRANT.value
        assert entries[0].balance_after == 10

    @pytest.mark.asyncio
    async def test_second_call_returns_existing_row(self, run_service) -> None:
        user_id = uuid.uuid4()
        first = await run_service(lambda service: service.ensure_subscription(user_id))
        await run_service(lambda service: service.consume_generation_tokens(user_id, 3))

        second = await run_service(lambda service: service.ensure_subscription(user_id))

        assert second.id == first.id
        assert second.tokens_used == 3


class TestPlanChange:

    @pytest.mark.asyncio
    async def test_returns_auth_request_for_paid_plan(self, run_service) -> None:
        user_id = uuid.uuid4()

        auth_request = await run_service(
            lambda service: service.request_plan_change(
                user_id, "PERSONAL", email="artist@example.com", name="Artist"
            )
        )

        assert auth_request.plan_id == "PERSONAL"
        assert auth_request.amount == 30_000
        assert auth_request.customer_key == customer_key_for(user_id)
        assert auth_request.customer_email == "artist@example.com"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan_id", ["FREE", "GOLD", ""])
    async def test_rejects_free_and_unknown_plans(self, run_service, plan_id: str) -> None:
        with pytest.raises(InvalidPlanError):
            await run_service(lambda service: service.request_plan_change(uuid.uuid4(), plan_id))

    @pytest.mark.asyncio
    async def test_rejects_current_active_plan(self, subscribe, run_service) -> None:
        user_id = await subscribe(PlanId.PERSONAL)

        with pytest.raises(AlreadySubscribedError):
            await run_service(lambda service: service.request_plan_change(user_id, "PERSONAL"))

        auth_request = await run_service(lambda service: service.request_plan_change(user_id, "HEAVY"))
        assert auth_request.amount == 100_000


class TestBillingKeyIssuance:

    @pytest.mark.asyncio
    async def test_success_activates_plan_and_grants_tokens(self, run_service, gateway, fetch) -> None:
        user_id = uuid.uuid4()

        result = await run_service(
            lambda service: service.complete_billing_key_issuance(
                user_id, "auth-ok", customer_key_for(user_id), "PERSONAL"
            )
        )

        assert result.billing_key == "bk_auth-ok"
        assert result.charge.amount == 30_000
        subscription = await fetch.subscription(user_id)
        assert subscription.plan == PlanId.PERSONAL.value
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.billing_key == "bk_auth-ok"
        assert subscription.card_last4 == "4242"
        assert subscription.tokens_total == 500_000
        assert subscription.tokens_used == 0
        assert subscription.max_characters == 3
        assert subscription.current_period_end - subscription.current_period_start == timedelta(days=30)

        entries = await fetch.token_transactions(user_id)
        assert [entry.reason for entry in entries] == [TokenReason.RENEWAL_GRANT.value] * 2
        assert entries[-1].balance_after == 500_000

        payments = await fetch.payments(user_id)
        assert len(payments) == 1
        assert payments[0].kind == PaymentKind.SUBSCRIPTION_START.value
        assert payments[0].status == PaymentStatus.COMPLETED.value
        assert payments[0].order_id == gateway.charges[0]["order_id"]

    @pytest.mark.asyncio
    async def test_charge_failure_leaves_subscription_untouched(self, run_service, gateway, fetch) -> None:
        user_id = uuid.uuid4()
        await run_service(lambda service: service.ensure_subscription(user_id))
        before = await fetch.subscription(user_id)
        gateway.charge_failures["bk_auth-declined"] = GatewayError(
            "REJECT_CARD_PAYMENT", "raw issuer response 0051"
        )

        with pytest.raises(GatewayError) as exc_info:
            await run_service(
                lambda service: service.complete_billing_key_issuance(
                    user_id, "auth-declined", customer_key_for(user_id), "HEAVY"
                )
            )

        error = exc_info.value
        assert error.kind == GatewayErrorKind.CARD_DECLINED
        assert "REJECT_CARD_PAYMENT" not in error.user_message
        assert "0051" not in error.user_message

        after = await fetch.subscription(user_id)
        assert after.plan == before.plan == PlanId.FREE.value
        assert after.billing_key is None
        assert after.tokens_total == before.tokens_total
        assert after.current_period_end == before.current_period_end

        entries = await fetch.token_transactions(user_id)
        assert len(entries) == 1

        assert gateway.cancelled == ["bk_auth-declined"]
        payments = await fetch.payments(user_id)
        assert [payment.status for payment in payments] == [PaymentStatus.FAILED.value]
        assert payments[0].error_code == "REJECT_CARD_PAYMENT"

    @pytest.mark.asyncio
    async def test_issuance_failure_propagates(self, run_service, gateway, fetch) -> None:
        user_id = uuid.uuid4()
        gateway.issue_failure = GatewayError("INVALID_CARD_EXPIRATION", "expired")

        with pytest.raises(GatewayError):
            await run_service(
                lambda service: service.complete_billing_key_issuance(
                    user_id, "auth-x", customer_key_for(user_id), "PERSONAL"
                )
            )

        assert gateway.charges == []
        assert (await fetch.subscription(user_id)).plan == PlanId.FREE.value

    @pytest.mark.asyncio
    async def test_same_plan_twice_is_rejected_without_charging(self, subscribe, run_service, gateway) -> None:
        user_id = await subscribe(PlanId.PERSONAL, auth_key="auth-1")
        charges_before = len(gateway.charges)

        with pytest.raises(AlreadySubscribedError):
            await run_service(
                lambda service: service.complete_billing_key_issuance(
                    user_id, "auth-2", customer_key_for(user_id), "PERSONAL"
                )
            )

        assert len(gateway.charges) == charges_before

    @pytest.mark.asyncio
    async def test_new_card_supersedes_old_key(self, subscribe, run_service, gateway, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL, auth_key="auth-old")

        await run_service(
            lambda service: service.complete_billing_key_issuance(
                user_id, "auth-new", customer_key_for(user_id), "HEAVY"
            )
        )

        subscription = await fetch.subscription(user_id)
        assert subscription.plan == PlanId.HEAVY.value
        assert subscription.billing_key == "bk_auth-new"
        assert subscription.tokens_total == 2_000_000
        assert gateway.cancelled == ["bk_auth-old"]

    @pytest.mark.asyncio
    async def test_rejects_foreign_customer_key(self, run_service, gateway) -> None:
        with pytest.raises(CustomerKeyMismatchError):
            await run_service(
                lambda service: service.complete_billing_key_issuance(
                    uuid.uuid4(), "auth", customer_key_for(uuid.uuid4()), "PERSONAL"
                )
            )
        assert gateway.issued == []

    def test_customer_key_round_trip(self) -> None:
        user_id = uuid.uuid4()
        assert user_id_from_customer_key(customer_key_for(user_id)) == user_id
        assert user_id_from_customer_key("customer_nothex") is None
        assert user_id_from_customer_key(f"client_{user_id.hex}") is None


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_keeps_tokens_and_billing_key(self, subscribe, run_service, gateway, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL, auth_key="auth-keep")
        await run_service(lambda service: service.consume_generation_tokens(user_id, 5))

        cancelled = await run_service(lambda service: service.cancel_subscription(user_id))

        assert cancelled.status == SubscriptionStatus.CANCELLED.value
        assert cancelled.canceled_at is not None
        assert cancelled.billing_key == "bk_auth-keep"
        assert cancelled.tokens_remaining == 500_000 - 5
        assert gateway.cancelled == []

        again = await run_service(lambda service: service.cancel_subscription(user_id))
        assert again.canceled_at == cancelled.canceled_at

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, run_service) -> None:
        with pytest.raises(SubscriptionNotFoundError):
            await run_service(lambda service: service.cancel_subscription(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_cancelled_user_can_subscribe_again(self, subscribe, run_service, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL, auth_key="auth-a")
        await run_service(lambda service: service.cancel_subscription(user_id))

        await run_service(
            lambda service: service.complete_billing_key_issuance(
                user_id, "auth-b", customer_key_for(user_id), "PERSONAL"
            )
        )

        subscription = await fetch.subscription(user_id)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.canceled_at is None

    @pytest.mark.asyncio
    async def test_expired_cancellation_falls_back_to_free_on_use(
        self, subscribe, run_service, gateway, clock, fetch
    ) -> None:
        user_id = await subscribe(PlanId.ENTERPRISE, auth_key="auth-ent")
        await run_service(lambda service: service.cancel_subscription(user_id))
        charges_before = len(gateway.charges)
        clock.advance(days=400)

        result = await run_service(lambda service: service.consume_generation_tokens(user_id, 1))

        assert result.new_balance == 9
        subscription = await fetch.subscription(user_id)
        assert subscription.plan == PlanId.FREE.value
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.tokens_total == 10
        assert not subscription.has_unlimited_tokens
        assert subscription.current_period_end > clock.now
        assert len(gateway.charges) == charges_before

        with pytest.raises(InsufficientBalanceError):
            await run_service(lambda service: service.consume_generation_tokens(user_id, 10))

    @pytest.mark.asyncio
    async def test_status_reports_free_after_cancelled_period(self, subscribe, run_service, clock) -> None:
        user_id = await subscribe(PlanId.HEAVY)
        await run_service(lambda service: service.cancel_subscription(user_id))

        clock.advance(days=15)
        overview = await run_service(lambda service: service.get_status(user_id))
        assert overview.plan.plan_id == PlanId.HEAVY
        assert overview.subscription.status == SubscriptionStatus.CANCELLED.value

        clock.advance(days=16)
        overview = await run_service(lambda service: service.get_status(user_id))
        assert overview.plan.plan_id == PlanId.FREE
        assert overview.balance.tokens_remaining == 10
        assert overview.warnings == []


class TestRenewOne:

    @pytest.mark.asyncio
    async def test_failed_charge_marks_past_due_and_freezes_state(
        self, subscribe, run_service, gateway, clock, fetch
    ) -> None:
        user_id = await subscribe(PlanId.PERSONAL, auth_key="auth-renew")
        await run_service(lambda service: service.consume_generation_tokens(user_id, 12))
        before = await fetch.subscription(user_id)
        clock.advance(days=31)
        gateway.charge_failures["bk_auth-renew"] = GatewayError("TIMEOUT", "read timed out")

        result = await run_service(lambda service: service.renew_one(before))

        assert result.status == RENEWAL_FAILED
        assert result.error_kind == GatewayErrorKind.TIMEOUT.value
        assert "timed out" not in result.error_message
        after = await fetch.subscription(user_id)
        assert after.status == SubscriptionStatus.PAST_DUE.value
        assert after.current_period_end == before.current_period_end
        assert after.tokens_total == before.tokens_total
        assert after.tokens_used == before.tokens_used

    @pytest.mark.asyncio
    async def test_success_advances_period_and_resets_tokens(
        self, subscribe, run_service, gateway, clock, fetch
    ) -> None:
        user_id = await subscribe(PlanId.PERSONAL, auth_key="auth-ok")
        await run_service(lambda service: service.consume_generation_tokens(user_id, 40))
        before = await fetch.subscription(user_id)
        clock.advance(days=31)

        result = await run_service(lambda service: service.renew_one(before))

        assert result.status == RENEWAL_SUCCESS
        assert result.charged_amount == 30_000
        after = await fetch.subscription(user_id)
        assert after.status == SubscriptionStatus.ACTIVE.value
        assert after.current_period_end > clock.now - timedelta(seconds=60)
        assert after.current_period_end == result.next_billing_date
        assert after.tokens_total == 500_000
        assert after.tokens_used == 0

        payments = await fetch.payments(user_id)
        assert payments[-1].kind == PaymentKind.RENEWAL.value
        assert payments[-1].status == PaymentStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_late_renewal_after_past_due_resets_balance(
        self, subscribe, run_service, gateway, clock, fetch
    ) -> None:
        user_id = await subscribe(PlanId.PERSONAL, auth_key="auth-late")
        await run_service(lambda service: service.consume_generation_tokens(user_id, 100))
        clock.advance(days=31)
        gateway.charge_failures["bk_auth-late"] = GatewayError("REJECT_CARD_COMPANY")
        subscription = await fetch.subscription(user_id)
        await run_service(lambda service: service.renew_one(subscription))

        clock.advance(days=14)
        del gateway.charge_failures["bk_auth-late"]
        subscription = await fetch.subscription(user_id)
        result = await run_service(lambda service: service.renew_one(subscription))

        assert result.status == RENEWAL_SUCCESS
        after = await fetch.subscription(user_id)
        assert after.status == SubscriptionStatus.ACTIVE.value
        assert after.tokens_remaining == 500_000
        assert after.current_period_start > subscription.current_period_end

        order_ids = [charge["order_id"] for charge in gateway.charges_for("bk_auth-late")[1:]]
        assert len(order_ids) == len(set(order_ids)) == 2

    @pytest.mark.asyncio
    async def test_not_yet_due_is_skipped(self, subscribe, run_service, gateway, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL)
        subscription = await fetch.subscription(user_id)
        charges_before = len(gateway.charges)

        result = await run_service(lambda service: service.renew_one(subscription))

        assert result.status == RENEWAL_SKIPPED
        assert len(gateway.charges) == charges_before

    @pytest.mark.asyncio
    async def test_free_plan_renews_without_charge(self, run_service, gateway, clock, fetch) -> None:
        user_id = uuid.uuid4()
        await run_service(lambda service: service.ensure_subscription(user_id))
        await run_service(lambda service: service.consume_generation_tokens(user_id, 9))
        clock.advance(days=30, seconds=5)
        subscription = await fetch.subscription(user_id)

        result = await run_service(lambda service: service.renew_one(subscription))

        assert result.status == RENEWAL_SUCCESS
        assert result.charged_amount == 0
        assert gateway.charges == []
        assert (await fetch.subscription(user_id)).tokens_remaining == 10


class TestTokens:

    @pytest.mark.asyncio
    async def test_consume_prices_generation_request(self, run_service, fetch) -> None:
        user_id = uuid.uuid4()

        result = await run_service(
            lambda service: service.consume_generation_tokens(
                user_id, 2, high_resolution=True, save_character=True
            )
        )

        assert result.new_balance == 10 - 4
        entry = (await fetch.token_transactions(user_id))[-1]
        assert entry.reason == TokenReason.GENERATION.value
        assert entry.amount == -4

    @pytest.mark.asyncio
    async def test_consume_more_than_balance(self, run_service) -> None:
        user_id = uuid.uuid4()
        with pytest.raises(InsufficientBalanceError):
            await run_service(lambda service: service.consume_generation_tokens(user_id, 11))

    @pytest.mark.asyncio
    async def test_purchase_requires_billing_key(self, run_service, gateway) -> None:
        user_id = uuid.uuid4()
        await run_service(lambda service: service.ensure_subscription(user_id))

        with pytest.raises(BillingKeyMissingError):
            await run_service(lambda service: service.purchase_tokens(user_id, "small"))
        assert gateway.charges == []

    @pytest.mark.asyncio
    async def test_purchase_charges_and_credits(self, subscribe, run_service, gateway, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL, auth_key="auth-buy")

        result = await run_service(lambda service: service.purchase_tokens(user_id, "medium"))

        assert result.tokens_remaining == 500_500
        assert gateway.charges[-1]["amount"] == 20_000
        payments = await fetch.payments(user_id)
        assert payments[-1].kind == PaymentKind.TOKEN_PURCHASE.value
        assert payments[-1].tokens == 500

    @pytest.mark.asyncio
    async def test_failed_purchase_credits_nothing(self, subscribe, run_service, gateway, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL, auth_key="auth-nofunds")
        gateway.charge_failures["bk_auth-nofunds"] = GatewayError("REJECT_CARD_COMPANY")

        with pytest.raises(GatewayError):
            await run_service(lambda service: service.purchase_tokens(user_id, "large"))

        assert (await fetch.subscription(user_id)).tokens_total == 500_000
        assert (await fetch.payments(user_id))[-1].status == PaymentStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_unknown_package(self, subscribe, run_service) -> None:
        user_id = await subscribe(PlanId.PERSONAL)
        with pytest.raises(InvalidPlanError):
            await run_service(lambda service: service.purchase_tokens(user_id, "gigantic"))


class TestStatus:

    @pytest.mark.asyncio
    async def test_low_balance_flag(self, run_service) -> None:
        user_id = uuid.uuid4()
        await run_service(lambda service: service.consume_generation_tokens(user_id, 6))

        overview = await run_service(lambda service: service.get_status(user_id))

        assert overview.plan.plan_id == PlanId.FREE
        assert overview.balance.tokens_remaining == 4
        assert overview.images_remaining == 4
        assert overview.low_balance
        assert overview.days_until_renewal == 30
        assert overview.warnings

    @pytest.mark.asyncio
    async def test_paid_plan_status(self, subscribe, run_service) -> None:
        user_id = await subscribe(PlanId.HEAVY)

        overview = await run_service(lambda service: service.get_status(user_id))

        assert overview.plan.plan_id == PlanId.HEAVY
        assert not overview.low_balance
        assert overview.warnings == []

    @pytest.mark.asyncio
    async def test_payment_history_newest_first(self, subscribe, run_service) -> None:
        user_id = await subscribe(PlanId.PERSONAL)
        await run_service(lambda service: service.purchase_tokens(user_id, "small"))

        history = await run_service(lambda service: service.get_payment_history(user_id))

        assert [payment.kind for payment in history] == [
            PaymentKind.TOKEN_PURCHASE.value,
            PaymentKind.SUBSCRIPTION_START.value,
        ]


class TestServiceSettings:

    @pytest.mark.asyncio
    async def test_explicit_zero_is_not_replaced_by_defaults(self, session_maker, gateway, clock) -> None:
        async with session_maker() as session:
            service = SubscriptionService(
                session, gateway, clock=clock, max_failed_attempts=0, failure_window_days=0
            )
            defaults = SubscriptionService(session, gateway, clock=clock)

        assert (service.max_failed_attempts, service.failure_window_days) == (0, 0)
        assert defaults.max_failed_attempts == 3
        assert defaults.failure_window_days == 30


class TestDailyLimit:

    @pytest.mark.asyncio
    async def test_free_plan_daily_limit_with_bonus_tokens(self, run_service, clock, fetch) -> None:
        user_id = uuid.uuid4()
        await run_service(lambda service: service.grant_bonus_tokens(user_id, 100, "Launch promotion"))

        await run_service(lambda service: service.consume_generation_tokens(user_id, 10))
        with pytest.raises(DailyLimitExceededError):
            await run_service(lambda service: service.consume_generation_tokens(user_id, 1))
        assert (await fetch.subscription(user_id)).tokens_used == 10

        overview = await run_service(lambda service: service.get_status(user_id))
        assert (overview.images_generated_today, overview.daily_image_limit) == (10, 10)
        assert "You have reached today's generation limit." in overview.warnings

        clock.advance(days=1)
        result = await run_service(lambda service: service.consume_generation_tokens(user_id, 1))
        assert result.new_balance == 110 - 11

    @pytest.mark.asyncio
    async def test_enterprise_has_no_daily_limit(self, subscribe, run_service) -> None:
        user_id = await subscribe(PlanId.ENTERPRISE)

        for _ in range(3):
            await run_service(lambda service: service.consume_generation_tokens(user_id, 100))

        overview = await run_service(lambda service: service.get_status(user_id))
        assert overview.daily_image_limit == UNLIMITED
        assert overview.images_generated_today == 300


class TestReferrals:

    @pytest.mark.asyncio
    async def test_claim_rewards_both_users_once(self, run_service, fetch) -> None:
        referrer_id, referred_id = uuid.uuid4(), uuid.uuid4()
        await run_service(lambda service: service.ensure_subscription(referrer_id))

        reward = await run_service(
            lambda service: service.claim_referral(referred_id, referral_code_for(referrer_id))
        )

        assert (reward.referrer_id, reward.referred_id) == (referrer_id, referred_id)
        assert (await fetch.subscription(referrer_id)).tokens_remaining == 10 + REFERRER_BONUS_TOKENS
        assert (await fetch.subscription(referred_id)).tokens_remaining == 10 + REFERRED_BONUS_TOKENS
        entry = (await fetch.token_transactions(referrer_id))[-1]
        assert (entry.reason, entry.amount) == (TokenReason.REFERRAL_BONUS.value, REFERRER_BONUS_TOKENS)

        other_referrer = uuid.uuid4()
        await run_service(lambda service: service.ensure_subscription(other_referrer))
        with pytest.raises(ReferralAlreadyClaimedError):
            await run_service(
                lambda service: service.claim_referral(referred_id, referral_code_for(other_referrer))
            )
        assert (await fetch.subscription(other_referrer)).tokens_remaining == 10
        assert (await fetch.subscription(referred_id)).tokens_remaining == 10 + REFERRED_BONUS_TOKENS

    @pytest.mark.asyncio
    async def test_own_code_is_rejected(self, run_service) -> None:
        user_id = uuid.uuid4()
        await run_service(lambda service: service.ensure_subscription(user_id))

        with pytest.raises(ReferralError, match="own referral code"):
            await run_service(lambda service: service.claim_referral(user_id, referral_code_for(user_id)))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["ref_not-a-user", "SUMMER2026", referral_code_for(uuid.UUID(int=7))])
    async def test_unknown_code_is_rejected(self, run_service, code: str) -> None:
        with pytest.raises(ReferralError, match="Unknown referral code"):
            await run_service(lambda service: service.claim_referral(uuid.uuid4(), code))


class TestBonusGrants:

    @pytest.mark.asyncio
    async def test_grant_is_recorded_as_admin_adjustment(self, subscribe, run_service, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL)

        balance = await run_service(lambda service: service.grant_bonus_tokens(user_id, 250, "Apology credit"))

        assert balance == 500_250
        entry = (await fetch.token_transactions(user_id))[-1]
        assert (entry.reason, entry.amount, entry.description) == (
            TokenReason.ADMIN_ADJUSTMENT.value, 250, "Apology credit",
        )

    @pytest.mark.asyncio
    async def test_grant_on_unlimited_plan_changes_nothing(self, subscribe, run_service) -> None:
        user_id = await subscribe(PlanId.ENTERPRISE)
        balance = await run_service(lambda service: service.grant_bonus_tokens(user_id, 50))
        assert balance == UNLIMITED

    @pytest.mark.asyncio
    async def test_grant_must_be_positive(self, run_service) -> None:
        with pytest.raises(ValueError):
            await run_service(lambda service: service.grant_bonus_tokens(uuid.uuid4(), 0))
