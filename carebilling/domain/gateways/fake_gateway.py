"""
In-memory billing gateway.

Deterministic ids (``rfnd_fake_1``, ``sub_fake_1``, ...) and an explicit
``fail_next`` switch so tests and local runs can exercise gateway errors.
"""
from __future__ import annotations

import itertools
from typing import Optional

from carebilling.core.exceptions import ExternalGatewayError
from carebilling.domain.gateways.base_gateway import (
    BillingGateway,
    GatewaySubscription,
    GATEWAY_STATUS_ACTIVE,
)


class InMemoryBillingGateway(BillingGateway):

    def __init__(self) -> None:
        self._refund_ids = itertools.count(1)
        self._subscription_ids = itertools.count(1)
        self.refunds: dict[str, tuple[str, int]] = {}
        self.subscriptions: dict[str, GatewaySubscription] = {}
        self.created_with: dict[str, tuple[str, int, dict[str, str]]] = {}
        self.cancelled: list[str] = []
        self._fail_operations: set[str] = set()

    @property
    def provider_name(self) -> str:
        return "fake"

    def fail_next(self, operation: str) -> None:
        """Make the next call of ``operation`` raise ExternalGatewayError"""
        self._fail_operations.add(operation)

    def set_subscription_state(
        self,
        external_subscription_id: str,
        status: str,
        current_period_end_epoch: Optional[int] = None,
    ) -> None:
        self.subscriptions[external_subscription_id] = GatewaySubscription(
            external_subscription_id=external_subscription_id,
            status=status,
            current_period_end_epoch=current_period_end_epoch,
        )

    def _maybe_fail(self, operation: str) -> None:
        if operation in self._fail_operations:
            self._fail_operations.discard(operation)
            raise ExternalGatewayError(
                message=f"{operation} rejected by fake gateway",
                service_name="fake",
                details={"operation": operation},
            )

    async def refund(self, external_payment_id: str, amount: int) -> str:
        self._maybe_fail("refund")
        refund_id = f"rfnd_fake_{next(self._refund_ids)}"
        self.refunds[refund_id] = (external_payment_id, amount)
        return refund_id

    async def subscription_create(
        self,
        plan_ref: str,
        max_cycles: int,
        notes: Optional[dict[str, str]] = None,
    ) -> str:
        self._maybe_fail("subscription_create")
        subscription_id = f"sub_fake_{next(self._subscription_ids)}"
        self.created_with[subscription_id] = (plan_ref, max_cycles, dict(notes or {}))
        self.set_subscription_state(subscription_id, GATEWAY_STATUS_ACTIVE)
        return subscription_id

    async def subscription_cancel(self, external_subscription_id: str) -> None:
        self._maybe_fail("subscription_cancel")
        self.cancelled.append(external_subscription_id)
        current = self.subscriptions.get(external_subscription_id)
        self.set_subscription_state(
            external_subscription_id,
            "cancelled",
            current.current_period_end_epoch if current else None,
        )

    async def subscription_fetch(self, external_subscription_id: str) -> GatewaySubscription:
        self._maybe_fail("subscription_fetch")
        subscription = self.subscriptions.get(external_subscription_id)
        if subscription is None:
            raise ExternalGatewayError(
                message=f"unknown subscription {external_subscription_id}",
                service_name="fake",
                details={"operation": "subscription_fetch", "status_code": 404},
            )
        return subscription
