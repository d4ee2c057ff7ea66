"""
Refund Service - trigger-based refunds to wallet or original payment method

Refund amount = floor(payment.amount * percentage / 100). Wallet refunds
complete immediately inside one DB transaction (refund row + ledger credit);
original-method refunds hold their amount with a PENDING row, go through the
billing gateway and stay PROCESSING until the settlement notification arrives.

The payment row is locked while the refunded total is checked and the refund
row is written, so concurrent refunds of one payment never exceed it.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from carebilling.core.dates import utcnow
from carebilling.core.exceptions import (
    ForbiddenError,
    InvalidAmountError,
    InvalidStateError,
    NotFoundException,
    ValidationException,
)
from carebilling.core.logging import get_logger
from carebilling.db.models.payment import Payment
from carebilling.db.models.refund import Refund, RefundMethod, RefundStatus, RefundTrigger
from carebilling.db.models.wallet_transaction import CreditType
from carebilling.domain.gateways import BillingGateway, get_billing_gateway
from carebilling.domain.services.wallet_service import WalletService

logger = get_logger(__name__)

REFUND_PERCENTAGES: dict[RefundTrigger, int] = {
    RefundTrigger.DOCTOR_NOT_SUITABLE: 100,
    RefundTrigger.PATIENT_DECLINES_REFERRAL: 100,
    RefundTrigger.CANCEL_BEFORE_REVIEW: 100,
    RefundTrigger.CANCEL_AFTER_REVIEW: 50,
    RefundTrigger.TECHNICAL_ERROR: 100,
    RefundTrigger.DELIVERY_ISSUE: 100,
}

# Refunds still counting against the payment amount
_OPEN_REFUND_STATUSES = (RefundStatus.PENDING, RefundStatus.PROCESSING, RefundStatus.COMPLETED)


def _parse_trigger(trigger: RefundTrigger | str) -> RefundTrigger:
    try:
        return RefundTrigger(trigger)
    except ValueError:
        raise InvalidStateError(f"Unknown refund trigger: {trigger}", current_state=str(trigger))


class RefundService:

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[BillingGateway] = None,
        wallet_service: Optional[WalletService] = None,
    ):
        self.db = db
        self._gateway = gateway
        self.wallet_service = wallet_service or WalletService(db)

    @property
    def gateway(self) -> BillingGateway:
        if self._gateway is None:
            self._gateway = get_billing_gateway()
        return self._gateway

    @staticmethod
    def get_refund_percentage(trigger: RefundTrigger | str) -> int:
        return REFUND_PERCENTAGES[_parse_trigger(trigger)]

    async def _refunded_total(self, payment_id: int) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Refund.amount), 0)).where(
                Refund.payment_id == payment_id,
                Refund.status.in_(_OPEN_REFUND_STATUSES),
            )
        )
        return int(result.scalar_one())

    async def _ensure_refundable(self, payment: Payment, amount: int) -> None:
        already_refunded = await self._refunded_total(payment.id)
        if already_refunded + amount > payment.amount:
            raise InvalidStateError(
                "Refund would exceed the payment amount",
                details={
                    "payment_id": payment.id,
                    "payment_amount": payment.amount,
                    "already_refunded": already_refunded,
                    "requested": amount,
                },
            )

    async def _lock_payment(self, payment_id: int) -> Payment:
        """Serializes refunds of one payment until the refund row is committed"""
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def initiate_refund(
        self,
        user_id: int,
        payment_id: int,
        trigger: RefundTrigger | str,
        method: RefundMethod | str,
        order_id: Optional[str] = None,
        consultation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Refund:
        """
        Refund a payment according to the trigger policy.

        Raises:
            NotFoundException: payment does not exist
            ForbiddenError: payment belongs to another user
            InvalidStateError: unknown trigger, or the payment is already refunded
            ValidationException: original-method refund without a gateway payment id
            ExternalGatewayError: gateway rejected the refund (the PENDING hold is removed)
        """
        trigger = _parse_trigger(trigger)
        try:
            method = RefundMethod(method)
        except ValueError:
            raise ValidationException(f"Unknown refund method: {method}", field="method")
        now = now or utcnow()

        payment = await self.db.get(Payment, payment_id)
        if not payment:
            raise NotFoundException("Payment", payment_id)
        if payment.user_id != user_id:
            raise ForbiddenError(
                "Payment does not belong to this user",
                details={"payment_id": payment_id, "user_id": user_id},
            )

        percentage = REFUND_PERCENTAGES[trigger]
        amount = payment.amount * percentage // 100
        if amount <= 0:
            raise InvalidAmountError(amount, user_id=user_id)

        if method == RefundMethod.ORIGINAL_PAYMENT and not payment.external_payment_id:
            raise ValidationException(
                "Payment has no gateway payment id to refund against",
                field="external_payment_id",
                details={"payment_id": payment.id},
            )

        await self._ensure_refundable(payment, amount)
        # Re-checked under the payment lock
        payment = await self._lock_payment(payment.id)
        await self._ensure_refundable(payment, amount)

        refund = Refund(
            user_id=user_id,
            payment_id=payment.id,
            order_id=order_id,
            consultation_id=consultation_id,
            trigger=trigger,
            method=method,
            amount=amount,
            refund_percentage=percentage,
            status=RefundStatus.PENDING,
            created_at=now,
        )

        if method == RefundMethod.WALLET:
            await self._complete_to_wallet(refund, now)
        else:
            await self._send_to_gateway(refund, payment)

        logger.info(
            "Refund initiated",
            extra_data={
                "refund_id": refund.id,
                "user_id": user_id,
                "payment_id": payment.id,
                "trigger": trigger.value,
                "method": method.value,
                "amount": amount,
                "percentage": percentage,
                "status": refund.status.value,
            },
        )
        return refund

    async def _complete_to_wallet(self, refund: Refund, now: datetime) -> None:
        """Refund row and ledger credit commit together or not at all"""
        refund.status = RefundStatus.COMPLETED
        refund.processed_at = now
        try:
            self.db.add(refund)
            await self.db.flush()
            await self.wallet_service.credit(
                refund.user_id,
                refund.amount,
                CreditType.REFUND,
                description=f"Refund for {refund.trigger.value}",
                reference_id=str(refund.id),
                reference_type="REFUND",
                refund_trigger=refund.trigger.value,
                auto_commit=False,
                now=now,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def _send_to_gateway(self, refund: Refund, payment: Payment) -> None:
        """
        The PENDING row holds the amount against the payment while the gateway
        is called without any lock. A rejected gateway call removes the hold,
        so nothing remains locally.
        """
        self.db.add(refund)
        await self.db.commit()

        try:
            external_refund_id = await self.gateway.refund(payment.external_payment_id, refund.amount)
        except Exception as e:
            logger.error(
                "Gateway refund failed",
                extra_data={
                    "payment_id": payment.id,
                    "user_id": refund.user_id,
                    "amount": refund.amount,
                    "error": str(e),
                },
            )
            await self.db.delete(refund)
            await self.db.commit()
            raise

        refund.status = RefundStatus.PROCESSING
        refund.external_refund_id = external_refund_id
        self.db.add(refund)
        await self.db.commit()
        await self.db.refresh(refund)

    async def get_refund_status(self, refund_id: int) -> Refund:
        refund = await self.db.get(Refund, refund_id)
        if not refund:
            raise NotFoundException("Refund", refund_id)
        return refund

    async def get_refunds_by_user(self, user_id: int) -> list[Refund]:
        result = await self.db.execute(
            select(Refund)
            .where(Refund.user_id == user_id)
            .order_by(Refund.created_at.desc(), Refund.id.desc())
        )
        return list(result.scalars().all())

    @staticmethod
    def _ensure_unsettled(refund: Refund) -> None:
        if refund.status not in (RefundStatus.PENDING, RefundStatus.PROCESSING):
            raise InvalidStateError(
                f"Refund {refund.id} is already settled",
                current_state=refund.status.value,
            )

    async def _lock_refund(self, refund_id: int) -> Refund:
        self._ensure_unsettled(await self.get_refund_status(refund_id))
        result = await self.db.execute(
            select(Refund)
            .where(Refund.id == refund_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        refund = result.scalar_one()
        self._ensure_unsettled(refund)
        return refund

    async def mark_refund_completed(
        self,
        refund_id: int,
        external_refund_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Refund:
        """Gateway reported the refund as settled"""
        refund = await self._lock_refund(refund_id)
        refund.status = RefundStatus.COMPLETED
        refund.processed_at = now or utcnow()
        if external_refund_id:
            refund.external_refund_id = external_refund_id
        await self.db.commit()

        logger.info(
            "Refund completed",
            extra_data={"refund_id": refund.id, "external_refund_id": refund.external_refund_id},
        )
        return refund

    async def mark_refund_failed(self, refund_id: int, now: Optional[datetime] = None) -> Refund:
        """Gateway reported the refund as failed; the amount is released for a new refund"""
        refund = await self._lock_refund(refund_id)
        refund.status = RefundStatus.FAILED
        refund.processed_at = now or utcnow()
        await self.db.commit()

        logger.warning(
            "Refund failed",
            extra_data={"refund_id": refund.id, "external_refund_id": refund.external_refund_id},
        )
        return refund
