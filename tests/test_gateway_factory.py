"""
Tests for gateway selection and the in-memory gateway
"""
from unittest.mock import patch

import pytest

from carebilling.core.exceptions import ExternalGatewayError
from carebilling.domain.gateways import get_billing_gateway, reset_billing_gateway
from carebilling.domain.gateways.fake_gateway import InMemoryBillingGateway
from carebilling.domain.gateways.razorpay_gateway import RazorpayGateway


class TestGatewayFactory:

    @pytest.mark.unit
    def test_fake_provider_is_a_singleton(self):
        with patch("carebilling.domain.gateways.gateway_factory.settings.BILLING_GATEWAY_PROVIDER", "fake"):
            first = get_billing_gateway()
            second = get_billing_gateway()

        assert isinstance(first, InMemoryBillingGateway)
        assert first is second

    @pytest.mark.unit
    def test_razorpay_provider(self):
        with patch("carebilling.domain.gateways.gateway_factory.settings.BILLING_GATEWAY_PROVIDER", "razorpay"):
            gateway = get_billing_gateway()

        assert isinstance(gateway, RazorpayGateway)
        assert gateway.provider_name == "razorpay"

    @pytest.mark.unit
    def test_reset_builds_a_new_instance(self):
        with patch("carebilling.domain.gateways.gateway_factory.settings.BILLING_GATEWAY_PROVIDER", "fake"):
            first = get_billing_gateway()
            reset_billing_gateway()
            second = get_billing_gateway()

        assert first is not second

    @pytest.mark.unit
    def test_unknown_provider_raises(self):
        with patch("carebilling.domain.gateways.gateway_factory.settings.BILLING_GATEWAY_PROVIDER", "paypal"):
            with pytest.raises(ValueError):
                get_billing_gateway()


class TestInMemoryGateway:

    @pytest.mark.unit
    async def test_create_then_fetch_and_cancel(self):
        gateway = InMemoryBillingGateway()

        subscription_id = await gateway.subscription_create("plan_1", 12, notes={"user_id": "1"})
        assert subscription_id == "sub_fake_1"
        assert (await gateway.subscription_fetch(subscription_id)).is_active

        await gateway.subscription_cancel(subscription_id)
        assert gateway.cancelled == [subscription_id]
        assert not (await gateway.subscription_fetch(subscription_id)).is_active

    @pytest.mark.unit
    async def test_fail_next_applies_once(self):
        gateway = InMemoryBillingGateway()
        gateway.fail_next("refund")

        with pytest.raises(ExternalGatewayError):
            await gateway.refund("pay_1", 100)

        assert await gateway.refund("pay_1", 100) == "rfnd_fake_1"

    @pytest.mark.unit
    async def test_unknown_subscription_fetch_raises(self):
        with pytest.raises(ExternalGatewayError):
            await InMemoryBillingGateway().subscription_fetch("sub_missing")
