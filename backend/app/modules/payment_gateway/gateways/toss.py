"""Toss Payments billing gateway implementation.

Talks to the Toss Payments v1 billing API: billing key issuance from an
auth key, billing key charges, billing key deletion, payment cancellation
(refunds) and order lookups. Also verifies signed webhook deliveries.
"""

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Optional
from urllib.parse import urlencode

import httpx

from app.modules.payment_gateway.interface import (
    BillingAuthRequest,
    BillingGatewayInterface,
    ChargeResult,
    GatewayError,
    GatewayErrorKind,
    IssuedBillingKey,
    RefundResult,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


class TossPaymentsGateway(BillingGatewayInterface):
    """Toss Payments recurring billing (auto-pay) client.

    An ``httpx.AsyncClient`` may be injected; otherwise one is created per
    call. Every transport failure is normalized into ``GatewayError`` so a
    timed-out charge is never mistaken for a confirmed one.
    """

    provider = "toss"

    DEFAULT_API_BASE_URL = "https://api.tosspayments.com/v1"

    def __init__(
        self,
        secret_key: str,
        client_key: str,
        app_url: str,
        api_base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = 10.0,
        webhook_secret: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.secret_key = secret_key
        self.client_key = client_key
        self.app_url = app_url.rstrip("/")
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = timeout
        self.webhook_secret = webhook_secret
        self._http_client = http_client

    def _get_auth_header(self) -> str:
        """Basic auth header: the secret key with an empty password."""
        if not self.secret_key:
            raise GatewayError("UNAUTHORIZED_KEY", "Toss secret key is not configured")
        token = base64.b64encode(f"{self.secret_key}:".encode()).decode()
        return f"Basic {token}"

    async def _make_request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """Make an authenticated request to the Toss API.

        Raises:
            GatewayError: for non-2xx responses, timeouts and transport errors
        """
        headers = {
            "Authorization": self._get_auth_header(),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        url = f"{self.api_base_url}{path}"

        try:
            if self._http_client is not None:
                response = await self._http_client.request(
                    method, url, headers=headers, json=data, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=headers, json=data)
        except httpx.TimeoutException as e:
            logger.warning(f"Toss {method} {path} timed out: {e}")
            raise GatewayError("TIMEOUT", str(e)) from e
        except httpx.HTTPError as e:
            logger.warning(f"Toss {method} {path} transport error: {e}")
            raise GatewayError("NETWORK_ERROR", str(e)) from e

        if response.is_success:
            return response.json() if response.content else {}

        try:
            body = response.json()
        except ValueError:
            body = {}
        code = body.get("code") or f"HTTP_{response.status_code}"
        message = body.get("message") or response.text
        logger.warning(f"Toss {method} {path} failed with {code}: {message}")
        raise GatewayError(code, message)

    def create_billing_auth_request(
        self,
        user_id: str,
        plan_id: str,
        amount: int,
        customer_key: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> BillingAuthRequest:
        query = urlencode({"planId": plan_id, "customerKey": customer_key})
        return BillingAuthRequest(
            client_key=self.client_key,
            customer_key=customer_key,
            customer_email=email,
            customer_name=name or "Customer",
            plan_id=plan_id,
            amount=amount,
            success_url=f"{self.app_url}/api/v1/billing/callback?{query}",
            fail_url=f"{self.app_url}/api/v1/billing/fail",
        )

    async def issue_billing_key(self, auth_key: str, customer_key: str) -> IssuedBillingKey:
        response = await self._make_request(
            "POST",
            "/billing/authorizations/issue",
            {"authKey": auth_key, "customerKey": customer_key},
        )
        card = response.get("card") or {}
        card_number = card.get("number") or ""
        return IssuedBillingKey(
            billing_key=response["billingKey"],
            customer_key=response.get("customerKey", customer_key),
            card_brand=response.get("cardCompany") or card.get("issuerCode"),
            card_last4=card_number[-4:] if card_number else None,
        )

    async def charge_billing_key(
        self,
        billing_key: str,
        customer_key: str,
        amount: int,
        order_id: str,
        order_name: str,
    ) -> ChargeResult:
        response = await self._make_request(
            "POST",
            f"/billing/{billing_key}",
            {
                "customerKey": customer_key,
                "amount": amount,
                "orderId": order_id,
                "orderName": order_name,
            },
            idempotency_key=order_id,
        )

        status = response.get("status")
        if status and status != "DONE":
            raise GatewayError(
                (response.get("failure") or {}).get("code") or "PAYMENT_NOT_DONE",
                f"Charge finished with status {status}",
            )

        return self._charge_from_response(response, order_id, amount)

    def _charge_from_response(self, response: dict, order_id: str, amount: int) -> ChargeResult:
        approved_at = None
        if response.get("approvedAt"):
            try:
                approved_at = datetime.fromisoformat(response["approvedAt"])
            except ValueError:
                logger.warning(f"Unparseable approvedAt: {response['approvedAt']}")

        return ChargeResult(
            order_id=response.get("orderId", order_id),
            amount=int(response.get("totalAmount", amount)),
            payment_key=response.get("paymentKey"),
            approved_at=approved_at,
            gateway_response=response,
        )

    async def cancel_billing_key(self, billing_key: str) -> None:
        await self._make_request("DELETE", f"/billing/{billing_key}")

    async def find_charge(self, order_id: str) -> Optional[ChargeResult]:
        try:
            response = await self._make_request("GET", f"/payments/orders/{order_id}")
        except GatewayError as e:
            if e.kind == GatewayErrorKind.NOT_FOUND or e.code == "HTTP_404":
                return None
            raise

        if response.get("status") != "DONE":
            logger.info(f"Order {order_id} found with status {response.get('status')}")
            return None
        return self._charge_from_response(response, order_id, int(response.get("totalAmount", 0)))

    async def refund_payment(
        self,
        payment_key: str,
        amount: int,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        response = await self._make_request(
            "POST",
            f"/payments/{payment_key}/cancel",
            {"cancelReason": reason, "cancelAmount": amount},
            idempotency_key=idempotency_key,
        )
        cancels = response.get("cancels") or []
        refunded_total = sum(int(cancel.get("cancelAmount", 0)) for cancel in cancels) or None
        return RefundResult(
            payment_key=response.get("paymentKey", payment_key),
            amount=amount,
            refunded_total=refunded_total,
            gateway_response=response,
        )

    def _sign(self, body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()

    def parse_webhook(self, body: bytes, signature: Optional[str]) -> WebhookEvent:
        """Verify the ``toss-signature`` HMAC-SHA256 of the raw body and parse it."""
        if not self.webhook_secret:
            logger.warning("Webhook received but no webhook secret is configured")
            return WebhookEvent(event_type="", is_valid=False, error_message="Webhook secret not configured")
        if not signature or not hmac.compare_digest(self._sign(body), signature.strip()):
            return WebhookEvent(event_type="", is_valid=False, error_message="Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError as e:
            return WebhookEvent(event_type="", is_valid=False, error_message=f"Malformed payload: {e}")
        if not isinstance(payload, dict):
            return WebhookEvent(event_type="", is_valid=False, error_message="Malformed payload")

        return WebhookEvent(
            event_type=str(payload.get("eventType", "")),
            data=payload.get("data") or {},
        )
