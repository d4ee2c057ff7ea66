"""
Billing Gateway Abstraction Layer

Lets the billing services switch between the Razorpay REST adapter and the
in-memory fake without touching business logic.
"""
from carebilling.domain.gateways.base_gateway import BillingGateway, GatewaySubscription
from carebilling.domain.gateways.gateway_factory import get_billing_gateway, reset_billing_gateway

__all__ = [
    "BillingGateway",
    "GatewaySubscription",
    "get_billing_gateway",
    "reset_billing_gateway",
]
