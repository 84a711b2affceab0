"""Tests for Momo request signing, callback verification and gateway clients."""

import hashlib
import hmac
import random
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from errors import GatewayError
from gateway import (MockMomoGateway, MomoGateway, PaymentGateway, build_gateway,
                     format_amount, raw_signature, sign, INITIATE_SIGNATURE_FIELDS)


def test_sign_is_hex_hmac_sha256():
    expected = hmac.new(b"secret", b"a=1&b=2", hashlib.sha256).hexdigest()
    assert sign("a=1&b=2", "secret") == expected


@pytest.mark.parametrize("amount,expected", [
    (Decimal("100000.00"), "100000"),
    (Decimal("10.50"), "10.50"),
    (100000, "100000"),
    (2500.0, "2500"),
])
def test_format_amount(amount, expected):
    assert format_amount(amount) == expected


def test_build_request_signs_fields_in_fixed_order(settings):
    gw = PaymentGateway(settings)

    body = gw.build_request("PAY_1", Decimal("100000"), "Top up", "https://app/return",
                            "https://api/ipn", "req-1")

    raw = ("accessKey=test-access&amount=100000&extraData=&ipnUrl=https://api/ipn&orderId=PAY_1"
           "&orderInfo=Top up&partnerCode=MOMOTEST&redirectUrl=https://app/return&requestId=req-1")
    assert body["signature"] == sign(raw, "test-secret-key")
    assert "accessKey" not in body
    assert body["partnerCode"] == "MOMOTEST"
    assert raw_signature(INITIATE_SIGNATURE_FIELDS, {"accessKey": "test-access"}).startswith("accessKey=test-access&amount=&")


def test_verify_callback(settings):
    gw = PaymentGateway(settings)
    payload = {"orderId": "PAY_1", "requestId": "req-1", "amount": 100000,
               "resultCode": 0, "message": "Successful.", "transId": "T1"}
    payload["signature"] = gw.callback_signature(payload)

    assert gw.verify_callback(payload) is True
    assert gw.verify_callback({**payload, "resultCode": 1006}) is False
    assert gw.verify_callback({**payload, "signature": None}) is False


def test_callback_signature_depends_on_secret(settings):
    payload = {"orderId": "PAY_1", "requestId": "req-1", "amount": 1, "resultCode": 0,
               "message": "", "transId": "T1"}
    other = PaymentGateway(type(settings)(momo_secret_key="another", momo_access_key="test-access"))

    assert PaymentGateway(settings).callback_signature(payload) != other.callback_signature(payload)


def test_mock_gateway_accepts(settings):
    gw = MockMomoGateway(settings, rng=random.Random(1), success_rate=1.0)

    response = gw.initiate("PAY_1", Decimal("50000"), "acc", "info", "https://r", "https://n")

    assert response.ok
    assert response.correlation_id
    assert "orderId=PAY_1" in response.pay_url
    assert response.to_dict()["requestId"] == response.correlation_id


def test_mock_gateway_rejects(settings):
    gw = MockMomoGateway(settings, rng=random.Random(1), success_rate=0.0)

    response = gw.initiate("PAY_1", Decimal("50000"), "acc", "info", "https://r", "https://n")

    assert not response.ok
    assert response.result_code == 1001
    assert response.correlation_id is None


def test_build_gateway_by_mode(settings):
    assert isinstance(build_gateway(settings), MockMomoGateway)
    settings.momo_mode = "live"
    assert isinstance(build_gateway(settings), MomoGateway)
    settings.momo_mode = "carrier-pigeon"
    with pytest.raises(ValueError):
        build_gateway(settings)


# ============================================================================
# Live client (HTTP mocked)
# ============================================================================


@patch("gateway.requests.post")
def test_live_gateway_success(mock_post, settings):
    mock_post.return_value = MagicMock(json=MagicMock(return_value={
        "resultCode": 0, "message": "Success", "payUrl": "https://momo/pay/1", "requestId": "req-9",
    }))

    response = MomoGateway(settings).initiate("PAY_1", Decimal("1000"), "acc", "info", "https://r", "https://n")

    assert response.ok
    assert response.correlation_id == "req-9"
    _, kwargs = mock_post.call_args
    assert kwargs["timeout"] == settings.momo_timeout
    assert kwargs["json"]["orderId"] == "PAY_1"


@patch("gateway.requests.post")
def test_live_gateway_rejection(mock_post, settings):
    mock_post.return_value = MagicMock(json=MagicMock(return_value={"resultCode": 42, "message": "Bad"}))

    response = MomoGateway(settings).initiate("PAY_1", Decimal("1000"), "acc", "info", "https://r", "https://n")

    assert not response.ok
    assert response.message == "Bad"


@patch("gateway.requests.post", side_effect=requests.ReadTimeout("slow"))
def test_live_gateway_timeout_is_a_failure_envelope(mock_post, settings):
    response = MomoGateway(settings).initiate("PAY_1", Decimal("1000"), "acc", "info", "https://r", "https://n")

    assert not response.ok
    assert "timed out" in response.message


@patch("gateway.requests.post", side_effect=requests.ConnectionError("refused"))
def test_live_gateway_unreachable_raises(mock_post, settings):
    with pytest.raises(GatewayError):
        MomoGateway(settings).initiate("PAY_1", Decimal("1000"), "acc", "info", "https://r", "https://n")
