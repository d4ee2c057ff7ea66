"""
Razorpay Gateway - BillingGateway over the Razorpay REST API.

Plain httpx calls with basic auth; no SDK. Errors surface immediately as
ExternalGatewayError, there is no retry loop here.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from carebilling.core.config import settings
from carebilling.core.exceptions import ExternalGatewayError
from carebilling.core.logging import get_logger, log_async_operation
from carebilling.domain.gateways.base_gateway import BillingGateway, GatewaySubscription

logger = get_logger(__name__)


class RazorpayGateway(BillingGateway):
    """
    Endpoints used:
    - POST /payments/{id}/refund
    - POST /subscriptions
    - POST /subscriptions/{id}/cancel
    - GET  /subscriptions/{id}
    """

    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._auth = (
            key_id if key_id is not None else settings.RAZORPAY_KEY_ID,
            key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET,
        )
        self._base_url = (base_url or settings.RAZORPAY_API_URL).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS
        # Injected in tests (httpx.MockTransport)
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "razorpay"

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            auth=self._auth,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(method, path, json=payload)
            except httpx.TimeoutException:
                logger.error(
                    f"Razorpay {operation} timed out",
                    extra_data={"operation": operation, "timeout_seconds": self._timeout},
                )
                raise ExternalGatewayError.timeout(operation, self._timeout, service_name="razorpay")
            except httpx.RequestError as exc:
                logger.error(
                    f"Razorpay {operation} network error",
                    extra_data={"operation": operation, "error": str(exc)},
                )
                raise ExternalGatewayError(
                    message=f"{operation} network error: {str(exc)}",
                    service_name="razorpay",
                    details={"operation": operation, "network_error": True},
                )

        if response.status_code >= 400:
            logger.error(
                f"Razorpay {operation} rejected",
                extra_data={"operation": operation, "status_code": response.status_code},
            )
            raise ExternalGatewayError.from_response(operation, response, service_name="razorpay")

        try:
            body = response.json()
        except ValueError:
            logger.error(
                f"Razorpay {operation} returned a non-JSON body",
                extra_data={"operation": operation, "status_code": response.status_code},
            )
            raise ExternalGatewayError(
                message=f"{operation} returned a non-JSON body",
                service_name="razorpay",
                details={
                    "operation": operation,
                    "status_code": response.status_code,
                    "response_text": response.text[:500],
                },
            )
        if not isinstance(body, dict):
            raise ExternalGatewayError(
                message=f"{operation} returned an unexpected body",
                service_name="razorpay",
                details={"operation": operation, "status_code": response.status_code},
            )
        return body

    @staticmethod
    def _extract_id(body: dict[str, Any], operation: str) -> str:
        entity_id = body.get("id")
        if not entity_id:
            raise ExternalGatewayError(
                message=f"{operation} response has no id",
                service_name="razorpay",
                details={"operation": operation, "response_keys": sorted(body)},
            )
        return entity_id

    @log_async_operation("razorpay.refund")
    async def refund(self, external_payment_id: str, amount: int) -> str:
        body = await self._request(
            "POST",
            f"/payments/{external_payment_id}/refund",
            "payments.refund",
            payload={"amount": amount},
        )
        return self._extract_id(body, "payments.refund")

    @log_async_operation("razorpay.subscription_create")
    async def subscription_create(
        self,
        plan_ref: str,
        max_cycles: int,
        notes: Optional[dict[str, str]] = None,
    ) -> str:
        body = await self._request(
            "POST",
            "/subscriptions",
            "subscriptions.create",
            payload={
                "plan_id": plan_ref,
                "customer_notify": 1,
                "total_count": max_cycles,
                "notes": notes or {},
            },
        )
        return self._extract_id(body, "subscriptions.create")

    @log_async_operation("razorpay.subscription_cancel")
    async def subscription_cancel(self, external_subscription_id: str) -> None:
        await self._request(
            "POST",
            f"/subscriptions/{external_subscription_id}/cancel",
            "subscriptions.cancel",
        )

    @log_async_operation("razorpay.subscription_fetch")
    async def subscription_fetch(self, external_subscription_id: str) -> GatewaySubscription:
        body = await self._request(
            "GET",
            f"/subscriptions/{external_subscription_id}",
            "subscriptions.fetch",
        )
        return GatewaySubscription(
            external_subscription_id=body.get("id", external_subscription_id),
            status=body.get("status", ""),
            current_period_end_epoch=body.get("current_end"),
        )
