"""
Subscription Service - billing lifecycle state machine

    ACTIVE --pause--> PAUSED --resume--> ACTIVE
    ACTIVE/PAUSED --cancel--> CANCELLED        (terminal)
    ACTIVE --4th failed payment--> EXPIRED     (terminal)

Renewal extends the billing period to what the gateway reports and then
creates a reorder from the latest active prescription. Failed payments keep
the subscription ACTIVE through a grace period while retries are scheduled;
the retries themselves are driven by the Celery beat tasks.

Gateway calls never run while a subscription row is locked: cancellation and
renewal re-read the row under lock after the gateway has answered, so a
cancellation that lands during a renewal always wins.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from carebilling.core.config import settings
from carebilling.core.dates import add_months, from_epoch, utcnow
from carebilling.core.exceptions import ForbiddenError, InvalidStateError, NotFoundException
from carebilling.core.logging import get_logger
from carebilling.db.models.subscription import (
    PlanType,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    Vertical,
)
from carebilling.db.models.user import User
from carebilling.domain.collaborators import (
    OrderCollaborator,
    OrderDraft,
    PrescriptionCollaborator,
    SqlOrderCollaborator,
    SqlPrescriptionCollaborator,
)
from carebilling.domain.gateways import BillingGateway, get_billing_gateway

logger = get_logger(__name__)

# Vertical price table in paise
PRICING: dict[Vertical, dict[PlanType, int]] = {
    Vertical.HAIR_LOSS: {
        PlanType.MONTHLY: 99900,
        PlanType.QUARTERLY: 249900,
        PlanType.ANNUAL: 899900,
    },
    Vertical.SEXUAL_HEALTH: {
        PlanType.MONTHLY: 129900,
        PlanType.QUARTERLY: 329900,
        PlanType.ANNUAL: 1199900,
    },
    Vertical.WEIGHT_MANAGEMENT: {
        PlanType.MONTHLY: 299900,
        PlanType.QUARTERLY: 799900,
        PlanType.MONTHLY_PREMIUM: 999900,
        PlanType.ANNUAL: 2799900,
    },
    Vertical.PCOS: {
        PlanType.MONTHLY: 149900,
        PlanType.QUARTERLY: 379900,
        PlanType.ANNUAL: 1399900,
    },
}

REASON_SUBSCRIPTION_NOT_ACTIVE = "SUBSCRIPTION_NOT_ACTIVE"
REASON_GATEWAY_NOT_ACTIVE = "RAZORPAY_NOT_ACTIVE"
# Gateway is active but has not charged the next cycle yet
REASON_PERIOD_NOT_ADVANCED = "PERIOD_NOT_ADVANCED"
REASON_NO_ACTIVE_PRESCRIPTION = "NO_ACTIVE_PRESCRIPTION"
REASON_NO_PREVIOUS_ORDER = "NO_PREVIOUS_ORDER"

_OPEN_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED)


@dataclass(frozen=True)
class ReorderOutcome:
    order_id: Optional[int] = None
    needs_coordinator_review: bool = False
    reason: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.order_id is not None


@dataclass(frozen=True)
class RenewalOutcome:
    subscription_id: int
    renewed: bool
    reason: Optional[str] = None
    current_period_end: Optional[datetime] = None
    reorder: Optional[ReorderOutcome] = None

    @property
    def reorder_created(self) -> bool:
        return self.reorder is not None and self.reorder.created


@dataclass(frozen=True)
class FailedPaymentOutcome:
    subscription_id: int
    expired: bool
    failed_payment_count: int
    next_retry_day: Optional[int] = None
    next_retry_at: Optional[datetime] = None
    grace_period_end_at: Optional[datetime] = None


class SubscriptionService:
    """Service for subscription lifecycle and renewal billing"""

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[BillingGateway] = None,
        orders: Optional[OrderCollaborator] = None,
        prescriptions: Optional[PrescriptionCollaborator] = None,
    ):
        self.db = db
        self._gateway = gateway
        self.orders = orders or SqlOrderCollaborator(db)
        self.prescriptions = prescriptions or SqlPrescriptionCollaborator(db)

    @property
    def gateway(self) -> BillingGateway:
        if self._gateway is None:
            self._gateway = get_billing_gateway()
        return self._gateway

    # ==================== Queries ====================

    async def get_subscription(self, subscription_id: int) -> Subscription:
        subscription = await self.db.get(Subscription, subscription_id)
        if not subscription:
            raise NotFoundException("Subscription", subscription_id)
        return subscription

    async def get_subscriptions_by_user(
        self,
        user_id: int,
        status: Optional[SubscriptionStatus | str] = None,
    ) -> list[Subscription]:
        query = select(Subscription).where(Subscription.user_id == user_id)
        if status:
            query = query.where(Subscription.status == SubscriptionStatus(status))
        query = query.order_by(Subscription.created_at.desc(), Subscription.id.desc())
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_active_subscription_for_vertical(
        self,
        user_id: int,
        vertical: Vertical | str,
    ) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                SubscriptionPlan.vertical == Vertical(vertical),
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_available_plans(self, vertical: Vertical | str) -> list[SubscriptionPlan]:
        result = await self.db.execute(
            select(SubscriptionPlan)
            .where(
                SubscriptionPlan.vertical == Vertical(vertical),
                SubscriptionPlan.is_active == True,  # noqa: E712
            )
            .order_by(SubscriptionPlan.duration_months, SubscriptionPlan.id)
        )
        return list(result.scalars().all())

    @staticmethod
    def get_plan_pricing(vertical: Vertical | str, plan_type: PlanType | str) -> int:
        """List price in paise, 0 for a combination the table does not carry"""
        try:
            return PRICING.get(Vertical(vertical), {}).get(PlanType(plan_type), 0)
        except ValueError:
            return 0

    async def find_due_renewals(self, now: Optional[datetime] = None) -> list[int]:
        """ACTIVE subscriptions whose period has ended and no retry is pending"""
        now = now or utcnow()
        result = await self.db.execute(
            select(Subscription.id)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end <= now,
                Subscription.next_retry_at.is_(None),
            )
            .order_by(Subscription.current_period_end, Subscription.id)
        )
        return list(result.scalars().all())

    async def find_due_retries(self, now: Optional[datetime] = None) -> list[int]:
        now = now or utcnow()
        result = await self.db.execute(
            select(Subscription.id)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.next_retry_at.is_not(None),
                Subscription.next_retry_at <= now,
            )
            .order_by(Subscription.next_retry_at, Subscription.id)
        )
        return list(result.scalars().all())

    # ==================== Lifecycle ====================

    async def _lock_subscription(self, subscription_id: int) -> Subscription:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if not subscription:
            raise NotFoundException("Subscription", subscription_id)
        return subscription

    @staticmethod
    def _require_status(
        subscription: Subscription,
        allowed: tuple[SubscriptionStatus, ...],
        message: str,
    ) -> None:
        # Raises without touching the caller's transaction
        if subscription.status not in allowed:
            raise InvalidStateError(
                message,
                current_state=subscription.status.value,
                details={"subscription_id": subscription.id},
            )

    async def _get_owned(self, subscription_id: int, user_id: int) -> Subscription:
        subscription = await self.get_subscription(subscription_id)
        if subscription.user_id != user_id:
            raise ForbiddenError(
                "Subscription does not belong to this user",
                details={"subscription_id": subscription_id, "user_id": user_id},
            )
        return subscription

    async def create_subscription(
        self,
        user_id: int,
        plan_id: int,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Start an ACTIVE subscription after the first charge has succeeded.

        The period end is ``now`` advanced by the plan's duration in calendar
        months, clamping the day to the length of the target month.
        """
        user = await self.db.get(User, user_id)
        if not user:
            raise NotFoundException("User", user_id)

        plan = await self.db.get(SubscriptionPlan, plan_id)
        if not plan:
            raise NotFoundException("SubscriptionPlan", plan_id)
        if not plan.is_active:
            raise InvalidStateError(
                f"Subscription plan {plan_id} is not available",
                details={"plan_id": plan_id},
            )

        external_subscription_id = await self.gateway.subscription_create(
            plan.external_plan_id or f"plan_{plan.id}",
            settings.SUBSCRIPTION_MAX_CYCLES,
            notes={"user_id": str(user_id), "plan_id": str(plan.id)},
        )

        now = now or utcnow()
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            external_subscription_id=external_subscription_id,
            current_period_start=now,
            current_period_end=add_months(now, plan.duration_months),
            failed_payment_count=0,
        )
        self.db.add(subscription)
        await self.db.commit()
        await self.db.refresh(subscription)

        logger.info(
            "Subscription created",
            extra_data={
                "subscription_id": subscription.id,
                "user_id": user_id,
                "plan_id": plan.id,
                "external_subscription_id": external_subscription_id,
                "current_period_end": subscription.current_period_end.isoformat(),
            },
        )
        return subscription

    async def process_auto_renewal(self, subscription_id: int) -> RenewalOutcome:
        """
        Extend the billing period if the gateway reports the subscription active.

        Local state is untouched when the gateway says otherwise; the caller
        decides whether that counts as a failed payment. An active gateway
        that has not charged the next cycle yet (period end not past ours)
        returns PERIOD_NOT_ADVANCED and changes nothing.
        """
        subscription = await self.get_subscription(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            return RenewalOutcome(subscription_id, renewed=False, reason=REASON_SUBSCRIPTION_NOT_ACTIVE)

        if not subscription.external_subscription_id:
            return RenewalOutcome(subscription_id, renewed=False, reason=REASON_GATEWAY_NOT_ACTIVE)

        remote = await self.gateway.subscription_fetch(subscription.external_subscription_id)
        if not remote.is_active:
            logger.info(
                "Gateway subscription not active, renewal skipped",
                extra_data={"subscription_id": subscription_id, "gateway_status": remote.status},
            )
            return RenewalOutcome(subscription_id, renewed=False, reason=REASON_GATEWAY_NOT_ACTIVE)

        plan = await self.db.get(SubscriptionPlan, subscription.plan_id)

        subscription = await self._lock_subscription(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            # Cancelled (or expired) while the gateway was being asked
            status = subscription.status.value
            await self.db.commit()
            logger.info(
                "Renewal lost to a concurrent state change",
                extra_data={"subscription_id": subscription_id, "status": status},
            )
            return RenewalOutcome(subscription_id, renewed=False, reason=REASON_SUBSCRIPTION_NOT_ACTIVE)

        previous_end = subscription.current_period_end
        if remote.current_period_end_epoch is not None:
            new_end = from_epoch(remote.current_period_end_epoch)
        else:
            new_end = add_months(previous_end, plan.duration_months)

        if new_end <= previous_end:
            await self.db.commit()
            logger.info(
                "Gateway period not advanced yet, renewal skipped",
                extra_data={
                    "subscription_id": subscription_id,
                    "current_period_end": previous_end.isoformat(),
                    "gateway_period_end": new_end.isoformat(),
                },
            )
            return RenewalOutcome(subscription_id, renewed=False, reason=REASON_PERIOD_NOT_ADVANCED)

        subscription.current_period_start = previous_end
        subscription.current_period_end = new_end
        subscription.failed_payment_count = 0
        subscription.grace_period_end_at = None
        subscription.next_retry_at = None
        await self.db.commit()

        logger.info(
            "Subscription renewed",
            extra_data={
                "subscription_id": subscription_id,
                "user_id": subscription.user_id,
                "current_period_end": new_end.isoformat(),
            },
        )

        reorder = await self.trigger_auto_reorder(subscription.user_id, plan.vertical)
        return RenewalOutcome(
            subscription_id,
            renewed=True,
            current_period_end=new_end,
            reorder=reorder,
        )

    async def handle_failed_payment(
        self,
        subscription_id: int,
        now: Optional[datetime] = None,
    ) -> FailedPaymentOutcome:
        """
        Record a failed renewal charge.

        With n failures so far, n below the schedule length keeps the
        subscription ACTIVE, opens a grace period and schedules the next retry
        RETRY_DAYS[n] days out; otherwise the subscription EXPIRES.
        """
        now = now or utcnow()
        retry_days = settings.payment_retry_days

        message = f"Subscription {subscription_id} is already closed"
        self._require_status(await self.get_subscription(subscription_id), _OPEN_STATUSES, message)
        subscription = await self._lock_subscription(subscription_id)
        self._require_status(subscription, _OPEN_STATUSES, message)

        failures = subscription.failed_payment_count or 0
        subscription.failed_payment_count = failures + 1

        if failures >= len(retry_days):
            subscription.status = SubscriptionStatus.EXPIRED
            subscription.next_retry_at = None
            await self.db.commit()
            logger.warning(
                "Subscription expired after repeated payment failures",
                extra_data={
                    "subscription_id": subscription_id,
                    "user_id": subscription.user_id,
                    "failed_payment_count": failures + 1,
                },
            )
            return FailedPaymentOutcome(subscription_id, expired=True, failed_payment_count=failures + 1)

        retry_day = retry_days[failures]
        subscription.grace_period_end_at = now + timedelta(days=settings.GRACE_PERIOD_DAYS)
        subscription.next_retry_at = now + timedelta(days=retry_day)
        await self.db.commit()

        logger.info(
            "Subscription payment failed, retry scheduled",
            extra_data={
                "subscription_id": subscription_id,
                "user_id": subscription.user_id,
                "failed_payment_count": failures + 1,
                "next_retry_day": retry_day,
            },
        )
        return FailedPaymentOutcome(
            subscription_id,
            expired=False,
            failed_payment_count=failures + 1,
            next_retry_day=retry_day,
            next_retry_at=subscription.next_retry_at,
            grace_period_end_at=subscription.grace_period_end_at,
        )

    async def cancel_subscription(
        self,
        subscription_id: int,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Cancel at the gateway, then locally. Access continues until the end of
        the current billing period (``active_until``).
        """
        message = f"Subscription {subscription_id} is already closed"
        subscription = await self._get_owned(subscription_id, user_id)
        self._require_status(subscription, _OPEN_STATUSES, message)

        if subscription.external_subscription_id:
            await self.gateway.subscription_cancel(subscription.external_subscription_id)

        subscription = await self._lock_subscription(subscription_id)
        self._require_status(subscription, _OPEN_STATUSES, message)

        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancelled_at = now or utcnow()
        subscription.active_until = subscription.current_period_end
        subscription.next_retry_at = None
        await self.db.commit()

        logger.info(
            "Subscription cancelled",
            extra_data={
                "subscription_id": subscription_id,
                "user_id": user_id,
                "active_until": subscription.active_until.isoformat(),
            },
        )
        return subscription

    async def pause_subscription(
        self,
        subscription_id: int,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> Subscription:
        message = "Only active subscriptions can be paused"
        self._require_status(await self._get_owned(subscription_id, user_id), (SubscriptionStatus.ACTIVE,), message)
        subscription = await self._lock_subscription(subscription_id)
        self._require_status(subscription, (SubscriptionStatus.ACTIVE,), message)

        subscription.status = SubscriptionStatus.PAUSED
        subscription.paused_at = now or utcnow()
        await self.db.commit()

        logger.info("Subscription paused", extra_data={"subscription_id": subscription_id, "user_id": user_id})
        return subscription

    async def resume_subscription(
        self,
        subscription_id: int,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> Subscription:
        message = "Only paused subscriptions can be resumed"
        self._require_status(await self._get_owned(subscription_id, user_id), (SubscriptionStatus.PAUSED,), message)
        subscription = await self._lock_subscription(subscription_id)
        self._require_status(subscription, (SubscriptionStatus.PAUSED,), message)

        subscription.status = SubscriptionStatus.ACTIVE
        subscription.resumed_at = now or utcnow()
        await self.db.commit()

        logger.info("Subscription resumed", extra_data={"subscription_id": subscription_id, "user_id": user_id})
        return subscription

    # ==================== Reorder ====================

    async def trigger_auto_reorder(self, user_id: int, vertical: Vertical | str) -> ReorderOutcome:
        """
        Create a reorder from the latest active prescription.

        Delivery and cost fields come from the user's last order. The reorder
        is flagged for coordinator review when the prescription changed since
        that order.
        """
        prescription = await self.prescriptions.find_latest_active_prescription(user_id, vertical)
        if not prescription:
            return ReorderOutcome(reason=REASON_NO_ACTIVE_PRESCRIPTION)

        last_order = await self.orders.find_latest_order(user_id)
        if not last_order:
            return ReorderOutcome(reason=REASON_NO_PREVIOUS_ORDER)

        prescription_changed = last_order.prescription_id != prescription.id
        order = await self.orders.create_order(
            OrderDraft(
                patient_id=user_id,
                prescription_id=prescription.id,
                consultation_id=prescription.consultation_id,
                delivery_address=last_order.delivery_address,
                delivery_city=last_order.delivery_city,
                delivery_pincode=last_order.delivery_pincode,
                medication_cost=last_order.medication_cost,
                delivery_cost=last_order.delivery_cost,
                total_amount=last_order.total_amount,
                is_reorder=True,
                parent_order_id=last_order.id,
                needs_review=prescription_changed,
            )
        )

        logger.info(
            "Auto-reorder created",
            extra_data={
                "user_id": user_id,
                "order_id": order.id,
                "parent_order_id": last_order.id,
                "needs_coordinator_review": prescription_changed,
            },
        )
        return ReorderOutcome(order_id=order.id, needs_coordinator_review=prescription_changed)
