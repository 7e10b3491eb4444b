"""
Tests for the YooKassa gateway adapter.
"""
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from billing.utils.gateway import ChargeResult, ChargeStatus, YooKassaGateway, format_amount, validate_instrument_token

TOKEN = "2d9f6e8a-000f-5000-a000-1f2e3d4c5b6a"


@pytest.fixture
def yk():
    return YooKassaGateway(shop_id=None, secret_key=None, poll_attempts=2, poll_delay_sec=0)


def _payment(status, payment_id="pay_1", reason=None):
    details = SimpleNamespace(reason=reason) if reason else None
    return SimpleNamespace(id=payment_id, status=status, cancellation_details=details)


def test_format_amount():
    assert format_amount(2000) == "20.00"
    assert format_amount(1) == "0.01"
    for bad in (0, -5, 20.0, True):
        with pytest.raises(ValueError):
            format_amount(bad)


def test_validate_instrument_token():
    validate_instrument_token(TOKEN)
    for bad in ("", "short", None):
        with pytest.raises(ValueError):
            validate_instrument_token(bad)


def test_charge_succeeded(yk):
    with patch("billing.utils.gateway.Payment") as mock_payment:
        mock_payment.create.return_value = _payment("succeeded")

        result = yk.charge(TOKEN, 2000, "USD", "acct-1-20260115T000000Z-a1-pm1", {"account_id": 1})

    assert result.succeeded
    assert result.external_tx_id == "pay_1"
    body, key = mock_payment.create.call_args.args
    assert key == "acct-1-20260115T000000Z-a1-pm1"
    assert body["amount"] == {"value": "20.00", "currency": "USD"}
    assert body["payment_method_id"] == TOKEN
    assert body["capture"] is True
    assert body["metadata"]["account_id"] == "1"
    assert body["metadata"]["idempotency_key"] == key


def test_charge_declined_maps_cancellation_reason(yk):
    with patch("billing.utils.gateway.Payment") as mock_payment:
        mock_payment.create.return_value = _payment("canceled", reason="insufficient_funds")

        result = yk.charge(TOKEN, 2000, "USD", "key-1")

    assert result.status is ChargeStatus.DECLINED
    assert result.decline_reason == "insufficient_funds"


def test_pending_payment_is_polled(yk):
    with patch("billing.utils.gateway.Payment") as mock_payment:
        mock_payment.create.return_value = _payment("pending")
        mock_payment.find_one.return_value = _payment("succeeded")

        result = yk.charge(TOKEN, 2000, "USD", "key-1")

    assert result.succeeded
    mock_payment.find_one.assert_called_once_with("pay_1")


def test_unresolved_payment_is_an_error(yk):
    with patch("billing.utils.gateway.Payment") as mock_payment:
        mock_payment.create.return_value = _payment("pending")
        mock_payment.find_one.return_value = _payment("pending")

        result = yk.charge(TOKEN, 2000, "USD", "key-1")

    assert result.status is ChargeStatus.ERROR
    assert result.external_tx_id == "pay_1"
    assert result.decline_reason == "unresolved_status: pending"
    assert mock_payment.find_one.call_count == 2


def test_sdk_exception_is_an_error(yk):
    with patch("billing.utils.gateway.Payment") as mock_payment:
        mock_payment.create.side_effect = ConnectionError("timeout")

        result = yk.charge(TOKEN, 2000, "USD", "key-1")

    assert result.status is ChargeStatus.ERROR
    assert result.decline_reason == "gateway_exception: ConnectionError"


def test_invalid_request_never_reaches_provider(yk):
    with patch("billing.utils.gateway.Payment") as mock_payment:
        result = yk.charge("short", 2000, "USD", "key-1")

    assert result.status is ChargeStatus.ERROR
    assert result.decline_reason.startswith("invalid_request")
    mock_payment.create.assert_not_called()


def test_outcome_unknown_only_for_errors_that_may_have_charged():
    unknown = ["timeout", "unresolved_status: pending", "gateway_exception: ConnectionError"]
    definitive = ["bad_request: invalid card", "forbidden: shop disabled", "invalid_request: short token", None]

    for reason in unknown:
        assert ChargeResult(ChargeStatus.ERROR, decline_reason=reason).outcome_unknown
    for reason in definitive:
        assert not ChargeResult(ChargeStatus.ERROR, decline_reason=reason).outcome_unknown
    assert not ChargeResult(ChargeStatus.DECLINED, decline_reason="timeout").outcome_unknown
