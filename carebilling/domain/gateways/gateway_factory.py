"""
Gateway Factory - builds the billing gateway selected in settings.
"""
from __future__ import annotations

import threading

from carebilling.core.config import settings
from carebilling.core.logging import get_logger
from carebilling.domain.gateways.base_gateway import BillingGateway

logger = get_logger(__name__)

_gateway: BillingGateway | None = None
_lock = threading.Lock()


def _create_gateway(provider_type: str) -> BillingGateway:
    if provider_type == "razorpay":
        from carebilling.domain.gateways.razorpay_gateway import RazorpayGateway

        return RazorpayGateway()

    if provider_type == "fake":
        from carebilling.domain.gateways.fake_gateway import InMemoryBillingGateway

        return InMemoryBillingGateway()

    raise ValueError(f"Unknown billing gateway provider: {provider_type}")


def get_billing_gateway() -> BillingGateway:
    """Process-wide gateway singleton"""
    global _gateway
    if _gateway is None:
        with _lock:
            if _gateway is None:
                _gateway = _create_gateway(settings.BILLING_GATEWAY_PROVIDER)
                logger.info(
                    "Billing gateway initialized",
                    extra_data={"provider": _gateway.provider_name},
                )
    return _gateway


def reset_billing_gateway() -> None:
    global _gateway
    with _lock:
        _gateway = None
