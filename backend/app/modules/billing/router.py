"""API Router for the billing service.

Subscription lifecycle, the payment-method callbacks, tokens, payment
history, referrals, the gateway webhook, operator endpoints and the recurring
billing cron trigger. Domain errors are translated
here; gateway errors only ever surface as their user-facing message.
"""

import logging
import uuid
from typing import NoReturn, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, utc_now
from app.core.config import settings
from app.core.database import get_session
from app.core.logging import log_info, log_warning
from app.modules.auth import Identity, get_current_identity, require_admin, verify_cron_secret
from app.modules.billing.exceptions import (
    AlreadySubscribedError,
    BillingError,
    BillingKeyMissingError,
    CustomerKeyMismatchError,
    DailyLimitExceededError,
    InsufficientBalanceError,
    InvalidPlanError,
    PaymentNotFoundError,
    ReferralAlreadyClaimedError,
    ReferralError,
    RefundNotAllowedError,
    SubscriptionNotFoundError,
)
from app.modules.billing.models import referral_code_for, user_id_from_customer_key
from app.modules.billing.plans import (
    PLAN_CATALOG,
    REFERRED_BONUS_TOKENS,
    REFERRER_BONUS_TOKENS,
    TOKEN_PACKAGES,
)
from app.modules.billing.schemas import (
    BillingAuthRequestResponse,
    PaymentHistoryResponse,
    PaymentTransactionResponse,
    PlanChangeRequest,
    PlanListResponse,
    PlanResponse,
    RecurringBillingResponse,
    ReferralClaimRequest,
    ReferralCodeResponse,
    ReferralRewardResponse,
    RefundRequest,
    RefundResponse,
    SubscriptionResponse,
    SubscriptionStatusResponse,
    TokenBalanceResponse,
    TokenConsumeRequest,
    TokenDebitResponse,
    TokenGrantRequest,
    TokenGrantResponse,
    TokenHistoryResponse,
    TokenPackageListResponse,
    TokenPackageResponse,
    TokenPurchaseRequest,
    TokenPurchaseResponse,
    TokenTransactionResponse,
    WebhookAckResponse,
)
from app.modules.billing.service import SubscriptionService
from app.modules.billing.tasks import run_recurring_billing
from app.modules.payment_gateway.interface import (
    BillingGatewayInterface,
    GatewayError,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


# ==================== Dependencies ====================

def get_gateway(request: Request) -> BillingGatewayInterface:
    """The billing gateway configured on the application."""
    return request.app.state.gateway


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", utc_now)


def get_subscription_service(
    session: AsyncSession = Depends(get_session),
    gateway: BillingGatewayInterface = Depends(get_gateway),
    clock: Clock = Depends(get_clock),
) -> SubscriptionService:
    return SubscriptionService(session, gateway, clock=clock)


def raise_http_error(error: Exception) -> NoReturn:
    """Translate a billing or gateway error into an HTTPException."""
    if isinstance(error, GatewayError):
        code = (
            status.HTTP_502_BAD_GATEWAY
            if error.is_upstream_failure
            else status.HTTP_402_PAYMENT_REQUIRED
        )
        raise HTTPException(status_code=code, detail=error.user_message)
    if isinstance(error, (InvalidPlanError, CustomerKeyMismatchError, BillingKeyMissingError)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, InsufficientBalanceError):
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(error))
    if isinstance(error, DailyLimitExceededError):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(error))
    if isinstance(error, SubscriptionNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    if isinstance(error, PaymentNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    if isinstance(error, (AlreadySubscribedError, ReferralAlreadyClaimedError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, (RefundNotAllowedError, ReferralError)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    raise error


def _redirect(path: str, **params: str) -> RedirectResponse:
    url = f"{settings.APP_URL.rstrip('/')}{path}"
    if params:
        url = f"{url}?{urlencode(params)}"
    return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)


def _subscription_response(subscription) -> SubscriptionResponse:
    return SubscriptionResponse.model_validate(subscription)


# ==================== Plans ====================

@router.get("/plans", response_model=PlanListResponse)
async def get_plans():
    """Get all plans with their limits and prices."""
    return {"plans": [plan.to_dict() for plan in PLAN_CATALOG.values()]}


# ==================== Subscription ====================

@router.post("/subscription/plan-change", response_model=BillingAuthRequestResponse)
async def request_plan_change(
    data: PlanChangeRequest,
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Start a paid plan: returns what the browser needs to register a card."""
    try:
        auth_request = await service.request_plan_change(
            identity.user_id,
            data.plan_id.value,
            email=identity.email,
            name=identity.name,
        )
    except (BillingError, GatewayError) as e:
        raise_http_error(e)
    return BillingAuthRequestResponse(**auth_request.__dict__)


@router.get("/billing/callback")
async def billing_callback(
    auth_key: str = Query(..., alias="authKey"),
    customer_key: str = Query(..., alias="customerKey"),
    plan_id: str = Query(..., alias="planId"),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Card registration success redirect from the gateway.

    The user is identified by the customer key the gateway bound the auth key
    to. Always answers with a redirect to the web app.
    """
    user_id = user_id_from_customer_key(customer_key)
    if user_id is None:
        log_warning(logger, "Billing callback with malformed customer key", customer_key=customer_key)
        return _redirect(
            "/pricing/error",
            code="INVALID_CUSTOMER_KEY",
            message="We could not verify your account. Please try again.",
        )

    try:
        result = await service.complete_billing_key_issuance(user_id, auth_key, customer_key, plan_id)
    except GatewayError as e:
        return _redirect("/pricing/error", code=e.kind.value, message=e.user_message)
    except AlreadySubscribedError as e:
        return _redirect("/pricing/error", code="ALREADY_SUBSCRIBED", message=str(e))
    except BillingError as e:
        return _redirect("/pricing/error", code="INVALID_REQUEST", message=str(e))

    return _redirect(
        "/pricing/success",
        plan=result.subscription.plan,
        orderId=result.charge.order_id,
    )


@router.get("/billing/fail")
async def billing_fail(
    code: str = Query("UNKNOWN"),
    message: str = Query(""),
):
    """Card registration failure redirect from the gateway."""
    log_warning(logger, "Billing authorization failed", error_code=code, provider_message=message)
    error = GatewayError(code, message)
    return _redirect("/pricing/error", code=error.kind.value, message=error.user_message)


@router.post("/subscription/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel renewal; tokens stay usable until the period ends."""
    try:
        subscription = await service.cancel_subscription(identity.user_id)
    except BillingError as e:
        raise_http_error(e)
    return _subscription_response(subscription)


@router.get("/subscription/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Get subscription, plan and token usage."""
    try:
        overview = await service.get_status(identity.user_id)
    except BillingError as e:
        raise_http_error(e)
    return SubscriptionStatusResponse(
        subscription=_subscription_response(overview.subscription),
        plan=PlanResponse(**overview.plan.to_dict()),
        balance=TokenBalanceResponse(**overview.balance.__dict__),
        has_payment_method=overview.subscription.billing_key is not None,
        days_until_renewal=overview.days_until_renewal,
        images_remaining=overview.images_remaining,
        low_balance=overview.low_balance,
        images_generated_today=overview.images_generated_today,
        daily_image_limit=overview.daily_image_limit,
        warnings=overview.warnings,
    )


# ==================== Tokens ====================

@router.get("/tokens/balance", response_model=TokenBalanceResponse)
async def get_token_balance(
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Get the current token balance."""
    await service.get_current_subscription(identity.user_id)
    balance = await service.ledger.get_balance(identity.user_id)
    return TokenBalanceResponse(**balance.__dict__)


@router.get("/tokens/history", response_model=TokenHistoryResponse)
async def get_token_history(
    limit: int = Query(50, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Get token ledger entries, newest first."""
    transactions = await service.get_token_history(identity.user_id, limit=limit)
    return TokenHistoryResponse(
        transactions=[TokenTransactionResponse.model_validate(t) for t in transactions]
    )


@router.get("/tokens/packages", response_model=TokenPackageListResponse)
async def get_token_packages():
    """List one-off token packages."""
    return TokenPackageListResponse(
        packages=[TokenPackageResponse(**package.to_dict()) for package in TOKEN_PACKAGES.values()]
    )


@router.post("/tokens/purchase", response_model=TokenPurchaseResponse)
async def purchase_tokens(
    data: TokenPurchaseRequest,
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Buy a token package with the stored card."""
    try:
        result = await service.purchase_tokens(identity.user_id, data.package_id)
    except (BillingError, GatewayError) as e:
        raise_http_error(e)
    return TokenPurchaseResponse(
        package_id=result.package.package_id,
        tokens_added=result.package.tokens,
        amount_charged=result.charge.amount,
        order_id=result.charge.order_id,
        tokens_remaining=result.tokens_remaining,
    )


@router.post("/tokens/consume", response_model=TokenDebitResponse)
async def consume_tokens(
    data: TokenConsumeRequest,
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Debit the token cost of a generation request."""
    try:
        result = await service.consume_generation_tokens(
            identity.user_id,
            data.image_count,
            high_resolution=data.high_resolution,
            save_character=data.save_character,
        )
    except (BillingError, ValueError) as e:
        raise_http_error(e)
    balance = await service.ledger.get_balance(identity.user_id)
    return TokenDebitResponse(
        success=result.success,
        tokens_used=balance.tokens_used,
        tokens_remaining=result.new_balance,
    )


# ==================== Payments ====================

@router.get("/payments/history", response_model=PaymentHistoryResponse)
async def get_payment_history(
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Get gateway charges, newest first."""
    payments = await service.get_payment_history(identity.user_id, limit=limit)
    return PaymentHistoryResponse(
        payments=[PaymentTransactionResponse.model_validate(p) for p in payments]
    )


@router.post("/payments/webhook", response_model=WebhookAckResponse)
async def payment_webhook(
    request: Request,
    toss_signature: Optional[str] = Header(None, alias="toss-signature"),
    gateway: BillingGatewayInterface = Depends(get_gateway),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Payment status notifications from the gateway.

    The ``toss-signature`` header must be the HMAC-SHA256 hex digest of the
    raw body under ``TOSS_WEBHOOK_SECRET``.
    """
    body = await request.body()
    event = gateway.parse_webhook(body, toss_signature)
    if not event.is_valid:
        log_warning(logger, "Rejected payment webhook", reason=event.error_message)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    result = await service.handle_webhook_event(event)
    log_info(logger, "Payment webhook handled", event_type=event.event_type, result=result)
    return WebhookAckResponse(result=result)


# ==================== Referrals ====================

@router.get("/referrals/code", response_model=ReferralCodeResponse)
async def get_referral_code(identity: Identity = Depends(get_current_identity)):
    """The caller's referral code to share."""
    return ReferralCodeResponse(
        referral_code=referral_code_for(identity.user_id),
        referrer_bonus_tokens=REFERRER_BONUS_TOKENS,
        referred_bonus_tokens=REFERRED_BONUS_TOKENS,
    )


@router.post("/referrals/claim", response_model=ReferralRewardResponse)
async def claim_referral(
    data: ReferralClaimRequest,
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Claim the sign-up reward for a referral code, once per user."""
    try:
        reward = await service.claim_referral(identity.user_id, data.referral_code)
    except BillingError as e:
        raise_http_error(e)
    return ReferralRewardResponse.model_validate(reward)


# ==================== Admin ====================

@router.post("/admin/tokens/grant", response_model=TokenGrantResponse)
async def grant_tokens(
    data: TokenGrantRequest,
    admin: Identity = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Grant bonus tokens to a user."""
    try:
        remaining = await service.grant_bonus_tokens(data.user_id, data.amount, data.description)
    except (BillingError, ValueError) as e:
        raise_http_error(e)
    log_info(
        logger,
        "Admin token grant",
        admin_id=str(admin.user_id),
        user_id=str(data.user_id),
        amount=data.amount,
    )
    return TokenGrantResponse(user_id=data.user_id, tokens_added=data.amount, tokens_remaining=remaining)


@router.post("/admin/payments/{payment_id}/refund", response_model=RefundResponse)
async def refund_payment(
    payment_id: uuid.UUID,
    data: RefundRequest,
    admin: Identity = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Refund part or all of a charge."""
    try:
        outcome = await service.refund_payment(payment_id, amount=data.amount, reason=data.reason)
    except (BillingError, GatewayError) as e:
        raise_http_error(e)
    log_info(logger, "Admin refund", admin_id=str(admin.user_id), payment_id=str(payment_id))
    return RefundResponse(
        payment=PaymentTransactionResponse.model_validate(outcome.payment),
        refund=PaymentTransactionResponse.model_validate(outcome.refund) if outcome.refund else None,
    )


# ==================== Cron ====================

@router.post(
    "/cron/recurring-payments",
    response_model=RecurringBillingResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def process_recurring_payments(
    request: Request,
    gateway: BillingGatewayInterface = Depends(get_gateway),
    clock: Clock = Depends(get_clock),
):
    """Renew every due subscription. Requires ``Bearer CRON_SECRET``."""
    summary = await run_recurring_billing(request.app.state.session_maker, gateway, clock=clock)
    return RecurringBillingResponse(
        processed=summary.processed,
        successful=summary.successful,
        failed=summary.failed,
        skipped=summary.skipped,
        results=[result.__dict__ for result in summary.results],
        run_at=clock(),
    )
