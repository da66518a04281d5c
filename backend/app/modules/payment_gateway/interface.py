"""Billing gateway interface - abstract base class for recurring-payment providers.

Defines the contract the subscription service relies on: collect a payment
method, exchange the resulting auth key for a billing key, charge that key
and cancel it, plus refunds, charge lookups and webhook verification.
Provider error codes never leave this module raw; they are wrapped in
``GatewayError`` which carries an internal kind and a user-facing message.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class GatewayErrorKind(str, Enum):
    """Internal taxonomy for gateway failures."""
    CARD_DECLINED = "card_declined"
    CARD_EXPIRED = "card_expired"
    UNSUPPORTED_CARD = "unsupported_card"
    RATE_LIMITED = "rate_limited"
    BILLING_KEY_INVALID = "billing_key_invalid"
    CANCELED = "canceled"
    CONFIGURATION = "configuration"
    INVALID_REQUEST = "invalid_request"
    DUPLICATE_ORDER = "duplicate_order"
    NOT_FOUND = "not_found"
    NOT_REFUNDABLE = "not_refundable"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNKNOWN = "unknown"


DUPLICATE_ORDER_CODE = "DUPLICATED_ORDER_ID"


GENERIC_GATEWAY_MESSAGE = (
    "Something went wrong while processing your payment. "
    "Please contact customer support."
)

# Gateway error code -> (kind, user-facing message)
GATEWAY_ERROR_MESSAGES: dict[str, tuple[GatewayErrorKind, str]] = {
    "PAY_PROCESS_CANCELED": (
        GatewayErrorKind.CANCELED,
        "The payment was cancelled.",
    ),
    "USER_CANCEL": (
        GatewayErrorKind.CANCELED,
        "The payment was cancelled.",
    ),
    "REJECT_CARD_COMPANY": (
        GatewayErrorKind.CARD_DECLINED,
        "Your card issuer declined the payment. Please try a different card.",
    ),
    "REJECT_CARD_PAYMENT": (
        GatewayErrorKind.CARD_DECLINED,
        "Your card issuer declined the payment. Please try a different card.",
    ),
    "EXCEED_MAX_DAILY_PAYMENT_COUNT": (
        GatewayErrorKind.CARD_DECLINED,
        "Your card has reached its daily payment limit.",
    ),
    "INVALID_CARD_EXPIRATION": (
        GatewayErrorKind.CARD_EXPIRED,
        "Your card has expired.",
    ),
    "NOT_SUPPORTED_CARD_TYPE": (
        GatewayErrorKind.UNSUPPORTED_CARD,
        "This card is not supported.",
    ),
    "EXCEED_MAX_AUTH_COUNT": (
        GatewayErrorKind.RATE_LIMITED,
        "Too many payment attempts. Please try again later.",
    ),
    "BILLING_KEY_NOT_FOUND": (
        GatewayErrorKind.BILLING_KEY_INVALID,
        "We could not find your saved card. Please register your card again.",
    ),
    "NOT_FOUND_BILLING_KEY": (
        GatewayErrorKind.BILLING_KEY_INVALID,
        "We could not find your saved card. Please register your card again.",
    ),
    "UNAUTHORIZED_KEY": (
        GatewayErrorKind.CONFIGURATION,
        "Payments are temporarily unavailable. Please try again later.",
    ),
    "FORBIDDEN_REQUEST": (
        GatewayErrorKind.CONFIGURATION,
        "This payment request is not allowed.",
    ),
    "INVALID_REQUEST": (
        GatewayErrorKind.INVALID_REQUEST,
        "The payment request was invalid.",
    ),
    "NOT_FOUND_PAYMENT": (
        GatewayErrorKind.NOT_FOUND,
        "We could not find this payment.",
    ),
    "ALREADY_CANCELED_PAYMENT": (
        GatewayErrorKind.NOT_REFUNDABLE,
        "This payment has already been refunded.",
    ),
    "NOT_CANCELABLE_AMOUNT": (
        GatewayErrorKind.NOT_REFUNDABLE,
        "The refund amount exceeds what can be refunded.",
    ),
    "NOT_CANCELABLE_PAYMENT": (
        GatewayErrorKind.NOT_REFUNDABLE,
        "This payment can no longer be refunded.",
    ),
    DUPLICATE_ORDER_CODE: (
        GatewayErrorKind.DUPLICATE_ORDER,
        "This payment has already been processed.",
    ),
    "TIMEOUT": (
        GatewayErrorKind.TIMEOUT,
        "The payment provider did not respond in time. You have not been charged "
        "for this attempt; please try again later.",
    ),
    "NETWORK_ERROR": (
        GatewayErrorKind.NETWORK,
        "We could not reach the payment provider. Please try again later.",
    ),
}

# Kinds that mean the provider (not the customer's card) is at fault
UPSTREAM_FAILURE_KINDS = frozenset({
    GatewayErrorKind.TIMEOUT,
    GatewayErrorKind.NETWORK,
    GatewayErrorKind.CONFIGURATION,
    GatewayErrorKind.UNKNOWN,
})


class GatewayError(Exception):
    """Billing key issuance or charge failure reported by the gateway.

    ``str(error)`` and ``provider_message`` hold the raw provider text for
    logs; only ``user_message`` may be shown to end users.
    """

    def __init__(self, code: str, provider_message: Optional[str] = None):
        self.code = code or "UNKNOWN"
        self.provider_message = provider_message or ""
        super().__init__(f"{self.code}: {self.provider_message}")

    @property
    def kind(self) -> GatewayErrorKind:
        entry = GATEWAY_ERROR_MESSAGES.get(self.code)
        return entry[0] if entry else GatewayErrorKind.UNKNOWN

    @property
    def user_message(self) -> str:
        return get_user_friendly_message(self.code)

    @property
    def is_upstream_failure(self) -> bool:
        return self.kind in UPSTREAM_FAILURE_KINDS


def get_user_friendly_message(code: Optional[str]) -> str:
    """Map a gateway error code to a message safe to show end users."""
    entry = GATEWAY_ERROR_MESSAGES.get(code or "")
    return entry[1] if entry else GENERIC_GATEWAY_MESSAGE


@dataclass
class BillingAuthRequest:
    """Payload the browser SDK needs to collect a payment method."""
    client_key: str
    customer_key: str
    customer_email: Optional[str]
    customer_name: str
    plan_id: str
    amount: int
    success_url: str
    fail_url: str


@dataclass
class IssuedBillingKey:
    """Billing key returned by the gateway plus cached card metadata."""
    billing_key: str
    customer_key: str
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None


@dataclass
class ChargeResult:
    """Confirmed charge against a billing key."""
    order_id: str
    amount: int
    payment_key: Optional[str] = None
    approved_at: Optional[datetime] = None
    success: bool = True
    gateway_response: dict = field(default_factory=dict)


@dataclass
class RefundResult:
    """Result from a refund (payment cancellation)."""
    payment_key: str
    amount: int
    refunded_total: Optional[int] = None
    gateway_response: dict = field(default_factory=dict)


class WebhookEventType(str, Enum):
    """Webhook events the billing core acts on."""
    BILLING_PAYMENT_DONE = "BILLING_PAYMENT_DONE"
    BILLING_PAYMENT_FAILED = "BILLING_PAYMENT_FAILED"
    PAYMENT_CANCELED = "PAYMENT_CANCELED"


@dataclass
class WebhookEvent:
    """Parsed and verified webhook delivery."""
    event_type: str
    data: dict = field(default_factory=dict)
    is_valid: bool = True
    error_message: Optional[str] = None


class BillingGatewayInterface(ABC):
    """Abstract interface for recurring-billing gateway implementations."""

    provider: str = "unknown"

    @abstractmethod
    def create_billing_auth_request(
        self,
        user_id: str,
        plan_id: str,
        amount: int,
        customer_key: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> BillingAuthRequest:
        """Build the payload for collecting a payment method."""

    @abstractmethod
    async def issue_billing_key(self, auth_key: str, customer_key: str) -> IssuedBillingKey:
        """Exchange a one-time auth key for a reusable billing key.

        Raises:
            GatewayError: if the gateway rejects the request
        """

    @abstractmethod
    async def charge_billing_key(
        self,
        billing_key: str,
        customer_key: str,
        amount: int,
        order_id: str,
        order_name: str,
    ) -> ChargeResult:
        """Charge a billing key.

        ``order_id`` is the idempotency key: a second charge with the same
        order id either replays the first response or is refused with
        ``DUPLICATE_ORDER``, and never charges twice.

        Raises:
            GatewayError: on decline, timeout or transport failure
        """

    @abstractmethod
    async def cancel_billing_key(self, billing_key: str) -> None:
        """Invalidate a billing key at the gateway."""

    @abstractmethod
    async def find_charge(self, order_id: str) -> Optional[ChargeResult]:
        """Look up a completed charge by order id.

        Returns:
            The charge, or None if no completed charge carries that order id

        Raises:
            GatewayError: if the lookup itself fails
        """

    @abstractmethod
    async def refund_payment(
        self,
        payment_key: str,
        amount: int,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """Refund part or all of a completed charge.

        Raises:
            GatewayError: if the gateway refuses the refund
        """

    @abstractmethod
    def parse_webhook(self, body: bytes, signature: Optional[str]) -> WebhookEvent:
        """Verify a webhook signature and parse the event.

        Returns:
            WebhookEvent with ``is_valid`` False if verification failed
        """
