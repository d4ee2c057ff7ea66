"""
Tests for the Razorpay REST adapter, driven through httpx.MockTransport.
"""
from __future__ import annotations

import base64
import json

import httpx
import pytest

from carebilling.core.exceptions import ErrorCode, ExternalGatewayError
from carebilling.domain.gateways.razorpay_gateway import RazorpayGateway


def _gateway(handler) -> RazorpayGateway:
    return RazorpayGateway(
        key_id="rzp_test_key",
        key_secret="secret",
        base_url="https://api.razorpay.test/v1/",
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.unit
async def test_refund_posts_amount_and_returns_refund_id():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"id": "rfnd_123", "amount": 49950})

    refund_id = await _gateway(handler).refund("pay_abc", 49950)

    assert refund_id == "rfnd_123"
    request = captured[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/payments/pay_abc/refund"
    assert json.loads(request.content) == {"amount": 49950}
    expected_auth = base64.b64encode(b"rzp_test_key:secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected_auth}"


@pytest.mark.unit
async def test_subscription_create_payload():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"id": "sub_987", "status": "created"})

    subscription_id = await _gateway(handler).subscription_create(
        "plan_7", 12, notes={"user_id": "3", "plan_id": "7"}
    )

    assert subscription_id == "sub_987"
    assert captured[0].url.path == "/v1/subscriptions"
    assert json.loads(captured[0].content) == {
        "plan_id": "plan_7",
        "customer_notify": 1,
        "total_count": 12,
        "notes": {"user_id": "3", "plan_id": "7"},
    }


@pytest.mark.unit
async def test_subscription_fetch_maps_status_and_period_end():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/v1/subscriptions/sub_987"
        return httpx.Response(200, json={"id": "sub_987", "status": "active", "current_end": 1710496800})

    remote = await _gateway(handler).subscription_fetch("sub_987")

    assert remote.is_active
    assert remote.current_period_end_epoch == 1710496800


@pytest.mark.unit
async def test_subscription_cancel_hits_cancel_endpoint():
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"id": "sub_987", "status": "cancelled"})

    await _gateway(handler).subscription_cancel("sub_987")

    assert paths == ["/v1/subscriptions/sub_987/cancel"]


@pytest.mark.unit
async def test_rejection_raises_gateway_error_with_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"description": "The amount is invalid"}})

    with pytest.raises(ExternalGatewayError) as exc_info:
        await _gateway(handler).refund("pay_abc", 0)

    error = exc_info.value
    assert error.error_code == ErrorCode.GATEWAY_ERROR
    assert error.details["status_code"] == 400
    assert error.details["operation"] == "payments.refund"
    assert "amount is invalid" in error.details["response_text"]
    assert error.details["service"] == "razorpay"


@pytest.mark.unit
async def test_timeout_raises_timeout_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ExternalGatewayError) as exc_info:
        await _gateway(handler).subscription_fetch("sub_987")

    assert exc_info.value.error_code == ErrorCode.EXTERNAL_SERVICE_TIMEOUT
    assert exc_info.value.details["timeout_seconds"] == 5.0


@pytest.mark.unit
async def test_network_error_is_not_retried():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ExternalGatewayError) as exc_info:
        await _gateway(handler).subscription_cancel("sub_987")

    assert calls == 1
    assert exc_info.value.details["network_error"] is True


@pytest.mark.unit
async def test_non_json_success_body_raises_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>upstream maintenance</html>")

    with pytest.raises(ExternalGatewayError) as exc_info:
        await _gateway(handler).refund("pay_abc", 49950)

    error = exc_info.value
    assert error.error_code == ErrorCode.GATEWAY_ERROR
    assert error.details["operation"] == "payments.refund"
    assert error.details["status_code"] == 200
    assert "maintenance" in error.details["response_text"]


@pytest.mark.unit
async def test_success_body_without_id_raises_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"entity": "subscription", "status": "created"})

    with pytest.raises(ExternalGatewayError) as exc_info:
        await _gateway(handler).subscription_create("plan_monthly", 12)

    error = exc_info.value
    assert error.details["operation"] == "subscriptions.create"
    assert error.details["response_keys"] == ["entity", "status"]
    assert error.details["service"] == "razorpay"
