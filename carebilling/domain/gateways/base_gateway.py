"""
Billing gateway interface - Dependency Inversion.

Every adapter (Razorpay REST, in-memory fake) implements this interface. The
services depend only on it and never on a concrete vendor client.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

GATEWAY_STATUS_ACTIVE = "active"


@dataclass(frozen=True)
class GatewaySubscription:
    """Subscription state as reported by the gateway"""
    external_subscription_id: str
    status: str
    current_period_end_epoch: Optional[int]

    @property
    def is_active(self) -> bool:
        return self.status == GATEWAY_STATUS_ACTIVE


class BillingGateway(ABC):
    """
    Payment and recurring-billing capability.

    Every call is blocking I/O with unbounded latency. Implementations raise
    ExternalGatewayError on network failure or rejection and never retry.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Adapter name for logs"""

    @abstractmethod
    async def refund(self, external_payment_id: str, amount: int) -> str:
        """
        Refund part or all of a captured payment.

        Args:
            external_payment_id: Gateway id of the captured payment.
            amount: Amount in minor units.

        Returns:
            The gateway refund id.

        Raises:
            ExternalGatewayError: on rejection or network failure.
        """

    @abstractmethod
    async def subscription_create(
        self,
        plan_ref: str,
        max_cycles: int,
        notes: Optional[dict[str, str]] = None,
    ) -> str:
        """Register a recurring subscription and return its gateway id."""

    @abstractmethod
    async def subscription_cancel(self, external_subscription_id: str) -> None:
        """Cancel a recurring subscription."""

    @abstractmethod
    async def subscription_fetch(self, external_subscription_id: str) -> GatewaySubscription:
        """Fetch current status and billing period end."""
