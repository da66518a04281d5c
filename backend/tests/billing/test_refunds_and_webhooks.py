"""Tests for refunds and gateway webhook handling."""

import uuid

import pytest

from app.modules.billing.exceptions import PaymentNotFoundError, RefundNotAllowedError
from app.modules.billing.models import PaymentKind, PaymentStatus, TokenReason
from app.modules.billing.plans import PlanId
from app.modules.billing.service import WEBHOOK_APPLIED, WEBHOOK_IGNORED, WEBHOOK_UNMATCHED
from app.modules.payment_gateway.interface import GatewayError, WebhookEvent


async def charge_of(fetch, user_id: uuid.UUID, kind: PaymentKind):
    return next(payment for payment in await fetch.payments(user_id) if payment.kind == kind.value)


async def refunds_of(fetch, user_id: uuid.UUID):
    return [payment for payment in await fetch.payments(user_id) if payment.kind == PaymentKind.REFUND.value]


class TestRefunds:

    @pytest.mark.asyncio
    async def test_full_refund_of_subscription_charge(self, subscribe, run_service, gateway, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL)
        charge = await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)

        outcome = await run_service(
            lambda service: service.refund_payment(charge.id, reason="Duplicate signup")
        )

        assert outcome.payment.status == PaymentStatus.REFUNDED.value
        assert outcome.payment.refunded_amount == 30_000
        assert outcome.refund.amount == -30_000
        assert outcome.refund.kind == PaymentKind.REFUND.value
        assert gateway.refunds == [{
            "payment_key": charge.payment_key,
            "amount": 30_000,
            "reason": "Duplicate signup",
            "idempotency_key": f"refund_{charge.order_id}_30000",
        }]

        subscription = await fetch.subscription(user_id)
        assert subscription.plan == PlanId.PERSONAL.value
        assert subscription.tokens_remaining == 500_000

        with pytest.raises(RefundNotAllowedError):
            await run_service(lambda service: service.refund_payment(charge.id))
        assert len(gateway.refunds) == 1

    @pytest.mark.asyncio
    async def test_partial_refunds_claw_back_purchased_tokens(
        self, subscribe, run_service, gateway, fetch
    ) -> None:
        user_id = await subscribe(PlanId.PERSONAL)
        await run_service(lambda service: service.purchase_tokens(user_id, "medium"))
        purchase = await charge_of(fetch, user_id, PaymentKind.TOKEN_PURCHASE)

        outcome = await run_service(lambda service: service.refund_payment(purchase.id, amount=5_000))

        assert outcome.payment.status == PaymentStatus.COMPLETED.value
        assert outcome.payment.refunded_amount == 5_000
        assert outcome.refund.tokens == -125
        assert (await fetch.subscription(user_id)).tokens_remaining == 500_500 - 125
        entry = (await fetch.token_transactions(user_id))[-1]
        assert (entry.reason, entry.amount) == (TokenReason.REFUND.value, -125)

        with pytest.raises(RefundNotAllowedError, match="between 1 and 15000"):
            await run_service(lambda service: service.refund_payment(purchase.id, amount=20_000))

        rest = await run_service(lambda service: service.refund_payment(purchase.id))

        assert rest.payment.status == PaymentStatus.REFUNDED.value
        assert rest.refund.amount == -15_000
        assert (await fetch.subscription(user_id)).tokens_remaining == 500_000
        assert [refund.amount for refund in await refunds_of(fetch, user_id)] == [-5_000, -15_000]

    @pytest.mark.asyncio
    async def test_failed_charge_cannot_be_refunded(self, subscribe, run_service, gateway, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL, auth_key="auth-declined")
        gateway.charge_failures["bk_auth-declined"] = GatewayError("REJECT_CARD_COMPANY")
        with pytest.raises(GatewayError):
            await run_service(lambda service: service.purchase_tokens(user_id, "small"))
        failed = (await fetch.payments(user_id))[-1]

        with pytest.raises(RefundNotAllowedError):
            await run_service(lambda service: service.refund_payment(failed.id))
        assert gateway.refunds == []

    @pytest.mark.asyncio
    async def test_unknown_payment(self, run_service) -> None:
        with pytest.raises(PaymentNotFoundError):
            await run_service(lambda service: service.refund_payment(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_gateway_refusal_records_nothing(self, subscribe, run_service, gateway, fetch) -> None:
        user_id = await subscribe(PlanId.HEAVY)
        charge = await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)
        gateway.refund_failure = GatewayError("NOT_CANCELABLE_PAYMENT", "settlement closed")

        with pytest.raises(GatewayError):
            await run_service(lambda service: service.refund_payment(charge.id))

        assert await refunds_of(fetch, user_id) == []
        assert (await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)).refunded_amount == 0


class TestWebhookEvents:

    @pytest.mark.asyncio
    async def test_payment_canceled_is_applied_once(self, subscribe, run_service, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL)
        charge = await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)
        event = WebhookEvent(
            event_type="PAYMENT_CANCELED",
            data={"paymentKey": charge.payment_key, "canceledAmount": 30_000, "cancelReason": "customer request"},
        )

        first = await run_service(lambda service: service.handle_webhook_event(event))
        again = await run_service(lambda service: service.handle_webhook_event(event))

        assert (first, again) == (WEBHOOK_APPLIED, WEBHOOK_IGNORED)
        refunds = await refunds_of(fetch, user_id)
        assert [(refund.amount, refund.description) for refund in refunds] == [
            (-30_000, "Refund: customer request")
        ]
        assert (await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)).status == (
            PaymentStatus.REFUNDED.value
        )

    @pytest.mark.asyncio
    async def test_canceled_amount_is_cumulative(self, subscribe, run_service, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL)
        charge = await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)

        for canceled in (10_000, 25_000, 10_000):
            event = WebhookEvent(
                event_type="PAYMENT_CANCELED",
                data={"orderId": charge.order_id, "canceledAmount": canceled},
            )
            await run_service(lambda service: service.handle_webhook_event(event))

        assert [refund.amount for refund in await refunds_of(fetch, user_id)] == [-10_000, -15_000]
        after = await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)
        assert (after.refunded_amount, after.status) == (25_000, PaymentStatus.COMPLETED.value)

    @pytest.mark.asyncio
    async def test_api_refund_then_webhook_does_not_double_count(self, subscribe, run_service, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL)
        charge = await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)
        await run_service(lambda service: service.refund_payment(charge.id, amount=12_000))

        result = await run_service(
            lambda service: service.handle_webhook_event(
                WebhookEvent("PAYMENT_CANCELED", {"paymentKey": charge.payment_key, "canceledAmount": 12_000})
            )
        )

        assert result == WEBHOOK_IGNORED
        assert [refund.amount for refund in await refunds_of(fetch, user_id)] == [-12_000]

    @pytest.mark.asyncio
    async def test_billing_payment_failed_marks_the_charge(self, subscribe, run_service, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL)
        charge = await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)
        payments_before = len(await fetch.payments(user_id))

        result = await run_service(
            lambda service: service.handle_webhook_event(
                WebhookEvent(
                    "BILLING_PAYMENT_FAILED",
                    {"paymentKey": charge.payment_key, "errorCode": "REJECT_CARD_PAYMENT"},
                )
            )
        )

        assert result == WEBHOOK_APPLIED
        after = await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)
        assert (after.status, after.error_code) == (PaymentStatus.FAILED.value, "REJECT_CARD_PAYMENT")
        assert len(await fetch.payments(user_id)) == payments_before
        assert (await fetch.subscription(user_id)).plan == PlanId.PERSONAL.value

    @pytest.mark.asyncio
    async def test_billing_payment_done_for_recorded_charge(self, subscribe, run_service, fetch) -> None:
        user_id = await subscribe(PlanId.PERSONAL)
        charge = await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)

        result = await run_service(
            lambda service: service.handle_webhook_event(
                WebhookEvent("BILLING_PAYMENT_DONE", {"orderId": charge.order_id, "paymentKey": charge.payment_key})
            )
        )

        assert result == WEBHOOK_IGNORED
        assert (await charge_of(fetch, user_id, PaymentKind.SUBSCRIPTION_START)).status == (
            PaymentStatus.COMPLETED.value
        )

    @pytest.mark.asyncio
    async def test_unknown_payment_and_event_type(self, run_service) -> None:
        unmatched = await run_service(
            lambda service: service.handle_webhook_event(
                WebhookEvent("PAYMENT_CANCELED", {"paymentKey": "pk_missing", "canceledAmount": 1_000})
            )
        )
        ignored = await run_service(
            lambda service: service.handle_webhook_event(
                WebhookEvent("CUSTOMER_STATUS_CHANGED", {"customerKey": "customer_x"})
            )
        )

        assert (unmatched, ignored) == (WEBHOOK_UNMATCHED, WEBHOOK_IGNORED)
