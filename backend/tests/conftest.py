"""Shared fixtures: a SQLite database per test, a scripted gateway and a controllable clock."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./webtoon-studio-test.db")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("APP_URL", "http://localhost:3000")
os.environ.setdefault("LOG_JSON", "false")

import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy import event, select

from app.core.database import Base, create_engine, create_session_maker
from app.modules.billing.models import (
    PaymentTransaction,
    Subscription,
    TokenTransaction,
    customer_key_for,
)
from app.modules.billing.plans import PlanId
from app.modules.billing.service import SubscriptionService
from app.modules.payment_gateway.interface import (
    BillingAuthRequest,
    BillingGatewayInterface,
    ChargeResult,
    GatewayError,
    IssuedBillingKey,
    RefundResult,
    WebhookEvent,
)


class FakeBillingGateway(BillingGatewayInterface):
    """In-memory gateway with scripted failures.

    Billing keys are ``bk_<auth_key>``; put an exception into
    ``charge_failures`` under a billing key to make charges on it fail.
    A repeated order id replays the first charge, as the real gateway does
    for a repeated idempotency key; set ``duplicate_order_mode = "reject"``
    to refuse it with ``DUPLICATED_ORDER_ID`` instead.
    """

    provider = "fake"
    webhook_secret = "whsec_test"

    def __init__(self):
        self.issued: list[str] = []
        self.charges: list[dict] = []
        self.cancelled: list[str] = []
        self.refunds: list[dict] = []
        self.charge_failures: dict[str, Exception] = {}
        self.issue_failure: Optional[GatewayError] = None
        self.refund_failure: Optional[GatewayError] = None
        self.duplicate_order_mode = "replay"
        self.completed: dict[str, ChargeResult] = {}

    def create_billing_auth_request(
        self,
        user_id: str,
        plan_id: str,
        amount: int,
        customer_key: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> BillingAuthRequest:
        return BillingAuthRequest(
            client_key="test_ck",
            customer_key=customer_key,
            customer_email=email,
            customer_name=name or "Customer",
            plan_id=plan_id,
            amount=amount,
            success_url="http://testserver/api/v1/billing/callback",
            fail_url="http://testserver/api/v1/billing/fail",
        )

    async def issue_billing_key(self, auth_key: str, customer_key: str) -> IssuedBillingKey:
        if self.issue_failure is not None:
            raise self.issue_failure
        billing_key = f"bk_{auth_key}"
        self.issued.append(billing_key)
        return IssuedBillingKey(
            billing_key=billing_key,
            customer_key=customer_key,
            card_brand="Shinhan",
            card_last4="4242",
        )

    async def charge_billing_key(
        self,
        billing_key: str,
        customer_key: str,
        amount: int,
        order_id: str,
        order_name: str,
    ) -> ChargeResult:
        if order_id in self.completed:
            if self.duplicate_order_mode == "reject":
                raise GatewayError("DUPLICATED_ORDER_ID", "order id already used")
            return self.completed[order_id]

        self.charges.append({
            "billing_key": billing_key,
            "customer_key": customer_key,
            "amount": amount,
            "order_id": order_id,
            "order_name": order_name,
        })
        failure = self.charge_failures.get(billing_key)
        if failure is not None:
            raise failure
        charge = ChargeResult(
            order_id=order_id,
            amount=amount,
            payment_key=f"pk_{len(self.charges)}",
        )
        self.completed[order_id] = charge
        return charge

    async def cancel_billing_key(self, billing_key: str) -> None:
        self.cancelled.append(billing_key)

    async def find_charge(self, order_id: str) -> Optional[ChargeResult]:
        return self.completed.get(order_id)

    async def refund_payment(
        self,
        payment_key: str,
        amount: int,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        if self.refund_failure is not None:
            raise self.refund_failure
        self.refunds.append({
            "payment_key": payment_key,
            "amount": amount,
            "reason": reason,
            "idempotency_key": idempotency_key,
        })
        refunded_total = sum(r["amount"] for r in self.refunds if r["payment_key"] == payment_key)
        return RefundResult(payment_key=payment_key, amount=amount, refunded_total=refunded_total)

    def sign(self, body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()

    def parse_webhook(self, body: bytes, signature: Optional[str]) -> WebhookEvent:
        if not signature or not hmac.compare_digest(self.sign(body), signature):
            return WebhookEvent(event_type="", is_valid=False, error_message="Invalid signature")
        payload = json.loads(body)
        return WebhookEvent(event_type=payload.get("eventType", ""), data=payload.get("data") or {})

    def charges_for(self, billing_key: str) -> list[dict]:
        return [charge for charge in self.charges if charge["billing_key"] == billing_key]


class TickingClock:
    """Naive UTC clock that moves one second per reading."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")

    # Every transaction takes the write lock up front so concurrent sessions
    # serialize the way row locks do on PostgreSQL.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
def gateway():
    return FakeBillingGateway()


@pytest.fixture
def clock():
    return TickingClock(datetime(2026, 1, 1, 9, 0, 0))


@pytest.fixture
def run_service(session_maker, gateway, clock):
    """Run one service call in its own, closed-afterwards session."""

    async def _run(call):
        async with session_maker() as session:
            return await call(SubscriptionService(session, gateway, clock=clock))

    return _run


@pytest.fixture
def subscribe(run_service):
    """Create a user and put them on a paid plan through card registration."""

    async def _subscribe(plan: PlanId = PlanId.PERSONAL, auth_key: Optional[str] = None) -> uuid.UUID:
        user_id = uuid.uuid4()
        auth_key = auth_key or f"auth-{user_id.hex[:8]}"
        await run_service(
            lambda service: service.complete_billing_key_issuance(
                user_id, auth_key, customer_key_for(user_id), plan.value
            )
        )
        return user_id

    return _subscribe


@pytest.fixture
def fetch(session_maker):
    """Read helpers that open and close their own session."""

    class _Fetch:
        async def subscription(self, user_id: uuid.UUID) -> Optional[Subscription]:
            async with session_maker() as session:
                result = await session.execute(
                    select(Subscription).where(Subscription.user_id == user_id)
                )
                return result.scalar_one_or_none()

        async def subscription_count(self, user_id: uuid.UUID) -> int:
            async with session_maker() as session:
                result = await session.execute(
                    select(Subscription.id).where(Subscription.user_id == user_id)
                )
                return len(result.all())

        async def token_transactions(self, user_id: uuid.UUID) -> list[TokenTransaction]:
            async with session_maker() as session:
                result = await session.execute(
                    select(TokenTransaction)
                    .where(TokenTransaction.user_id == user_id)
                    .order_by(TokenTransaction.created_at)
                )
                return list(result.scalars().all())

        async def payments(self, user_id: uuid.UUID) -> list[PaymentTransaction]:
            async with session_maker() as session:
                result = await session.execute(
                    select(PaymentTransaction)
                    .where(PaymentTransaction.user_id == user_id)
                    .order_by(PaymentTransaction.created_at)
                )
                return list(result.scalars().all())

    return _Fetch()
