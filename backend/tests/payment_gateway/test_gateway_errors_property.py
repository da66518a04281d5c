"""Property-based tests for gateway error mapping.

Tests that:
- Every known gateway code maps to a fixed kind and a user-facing message
- Unknown codes fall back to the generic message and the UNKNOWN kind
- Raw provider text never reaches the user-facing message
"""

from hypothesis import given, settings, strategies as st

from app.modules.payment_gateway.interface import (
    GATEWAY_ERROR_MESSAGES,
    GENERIC_GATEWAY_MESSAGE,
    GatewayError,
    GatewayErrorKind,
    get_user_friendly_message,
)


known_code_strategy = st.sampled_from(sorted(GATEWAY_ERROR_MESSAGES))
unknown_code_strategy = st.text(
    alphabet="ABCDEFGHIJKLMNOPQRSTUVWXYZ_0123456789",
    min_size=1,
    max_size=40,
).filter(lambda code: code not in GATEWAY_ERROR_MESSAGES)
provider_message_strategy = st.text(min_size=8, max_size=120).filter(
    lambda text: text.strip()
    and all(text not in message for _, message in GATEWAY_ERROR_MESSAGES.values())
    and text not in GENERIC_GATEWAY_MESSAGE
)


@given(code=known_code_strategy, provider_message=provider_message_strategy)
@settings(max_examples=100)
def test_known_codes_map_to_catalog_entry(code: str, provider_message: str) -> None:
    kind, message = GATEWAY_ERROR_MESSAGES[code]
    error = GatewayError(code, provider_message)

    assert error.kind == kind
    assert error.user_message == message == get_user_friendly_message(code)
    assert provider_message not in error.user_message
    assert provider_message in str(error)


@given(code=unknown_code_strategy, provider_message=provider_message_strategy)
@settings(max_examples=100)
def test_unknown_codes_use_generic_message(code: str, provider_message: str) -> None:
    error = GatewayError(code, provider_message)

    assert error.kind == GatewayErrorKind.UNKNOWN
    assert error.user_message == GENERIC_GATEWAY_MESSAGE
    assert error.is_upstream_failure


@given(code=known_code_strategy)
def test_user_message_never_echoes_the_code(code: str) -> None:
    assert code not in get_user_friendly_message(code)


def test_missing_code_is_unknown() -> None:
    error = GatewayError("", None)
    assert error.code == "UNKNOWN"
    assert error.provider_message == ""
    assert get_user_friendly_message(None) == GENERIC_GATEWAY_MESSAGE


def test_card_problems_are_not_upstream_failures() -> None:
    assert not GatewayError("REJECT_CARD_COMPANY").is_upstream_failure
    assert not GatewayError("INVALID_CARD_EXPIRATION").is_upstream_failure
    assert GatewayError("TIMEOUT").is_upstream_failure
    assert GatewayError("NETWORK_ERROR").is_upstream_failure


def test_duplicate_order_is_its_own_kind() -> None:
    error = GatewayError("DUPLICATED_ORDER_ID", "already processed")
    assert error.kind == GatewayErrorKind.DUPLICATE_ORDER
    assert not error.is_upstream_failure
