"""
Celery Tasks for scheduled billing work

Renewal checks, failed-payment retries, promo expiry and wallet
reconciliation. Each task bridges into the async services with run_async()
and its own task-scoped DB session.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from carebilling.workers.celery_app import celery_app
from carebilling.db.database import get_task_session
from carebilling.core.config import settings
from carebilling.core.dates import utcnow
from carebilling.core.logging import get_correlation_id, get_logger
from carebilling.domain.services.promo_expiry_service import PromoExpiryService
from carebilling.domain.services.subscription_service import (
    REASON_GATEWAY_NOT_ACTIVE,
    SubscriptionService,
)
from carebilling.domain.services.wallet_service import WalletService

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Task id bound by the prerun signal, or a fresh id outside a worker
    get_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _retry_or_fail(service: SubscriptionService, subscription_id: int) -> str:
    """Renewal check for one subscription; a gateway that stopped charging counts as a failed payment"""
    outcome = await service.process_auto_renewal(subscription_id)
    if outcome.renewed:
        return "renewed"
    if outcome.reason == REASON_GATEWAY_NOT_ACTIVE:
        failure = await service.handle_failed_payment(subscription_id)
        return "expired" if failure.expired else "retry_scheduled"
    return "skipped"


@celery_app.task(name="carebilling.workers.tasks.process_subscription_renewal")
def process_subscription_renewal(subscription_id: int):
    """Renew one subscription (triggered by the gateway's charged notification)"""

    async def _renew():
        async with get_task_session() as db:
            outcome = await SubscriptionService(db).process_auto_renewal(subscription_id)
            return {
                "subscription_id": subscription_id,
                "renewed": outcome.renewed,
                "reason": outcome.reason,
                "order_id": outcome.reorder.order_id if outcome.reorder else None,
            }

    return run_async(_renew())


@celery_app.task(name="carebilling.workers.tasks.handle_subscription_payment_failure")
def handle_subscription_payment_failure(subscription_id: int):
    """Record a failed renewal charge reported by the gateway"""

    async def _fail():
        async with get_task_session() as db:
            outcome = await SubscriptionService(db).handle_failed_payment(subscription_id)
            return {
                "subscription_id": subscription_id,
                "expired": outcome.expired,
                "failed_payment_count": outcome.failed_payment_count,
                "next_retry_day": outcome.next_retry_day,
            }

    return run_async(_fail())


@celery_app.task(name="carebilling.workers.tasks.process_due_renewals")
def process_due_renewals():
    """
    Hourly sweep over ACTIVE subscriptions whose billing period has ended.

    A subscription the gateway no longer reports as active enters the
    failed-payment schedule.
    """

    async def _process():
        async with get_task_session() as db:
            service = SubscriptionService(db)
            subscription_ids = await service.find_due_renewals(utcnow())

            results = {"renewed": 0, "retry_scheduled": 0, "expired": 0, "skipped": 0, "errors": 0}
            for subscription_id in subscription_ids:
                try:
                    results[await _retry_or_fail(service, subscription_id)] += 1
                except Exception as e:
                    results["errors"] += 1
                    logger.error(
                        "Renewal failed for subscription",
                        extra_data={"subscription_id": subscription_id, "error": str(e)},
                        exc_info=True,
                    )
                    # keep one subscription's failure out of the next one
                    await db.rollback()

            logger.info(
                "Due renewals processed",
                extra_data={"subscriptions": len(subscription_ids), **results},
            )
            return {"subscriptions": len(subscription_ids), **results}

    return run_async(_process())


@celery_app.task(name="carebilling.workers.tasks.process_payment_retries")
def process_payment_retries():
    """Hourly sweep over subscriptions whose scheduled payment retry is due"""

    async def _process():
        async with get_task_session() as db:
            service = SubscriptionService(db)
            subscription_ids = await service.find_due_retries(utcnow())

            results = {"renewed": 0, "retry_scheduled": 0, "expired": 0, "skipped": 0, "errors": 0}
            for subscription_id in subscription_ids:
                try:
                    results[await _retry_or_fail(service, subscription_id)] += 1
                except Exception as e:
                    results["errors"] += 1
                    logger.error(
                        "Payment retry failed for subscription",
                        extra_data={"subscription_id": subscription_id, "error": str(e)},
                        exc_info=True,
                    )
                    await db.rollback()

            logger.info(
                "Payment retries processed",
                extra_data={"subscriptions": len(subscription_ids), **results},
            )
            return {"subscriptions": len(subscription_ids), **results}

    return run_async(_process())


@celery_app.task(name="carebilling.workers.tasks.expire_promo_credits")
def expire_promo_credits():
    """Daily sweep that expires promo credits older than PROMO_EXPIRY_DAYS"""

    async def _expire():
        async with get_task_session() as db:
            service = PromoExpiryService(db)
            now = utcnow()
            user_ids = await service.find_wallets_with_due_promos(now)

            total_expired = 0
            errors = 0
            for user_id in user_ids:
                try:
                    total_expired += await service.expire_promo_credits(user_id, now=now)
                except Exception as e:
                    errors += 1
                    logger.error(
                        "Promo expiry failed for wallet",
                        extra_data={"user_id": user_id, "error": str(e)},
                        exc_info=True,
                    )
                    await db.rollback()

            logger.info(
                "Promo expiry sweep finished",
                extra_data={"wallets": len(user_ids), "amount_expired": total_expired, "errors": errors},
            )
            return {"wallets": len(user_ids), "amount_expired": total_expired, "errors": errors}

    return run_async(_expire())


@celery_app.task(name="carebilling.workers.tasks.reconcile_wallets")
def reconcile_wallets(repair: bool | None = None):
    """
    Daily check of every cached wallet balance against its transaction log.

    Repairs drift only when WALLET_RECONCILE_AUTO_REPAIR is on (or ``repair``
    is passed explicitly).
    """
    if repair is None:
        repair = settings.WALLET_RECONCILE_AUTO_REPAIR

    async def _reconcile():
        async with get_task_session() as db:
            service = WalletService(db)
            user_ids = await service.list_wallet_user_ids()

            drifted: list[int] = []
            repaired = 0
            for user_id in user_ids:
                try:
                    report = await service.reconcile_balance(user_id, repair=repair)
                except Exception as e:
                    logger.error(
                        "Wallet reconciliation failed",
                        extra_data={"user_id": user_id, "error": str(e)},
                        exc_info=True,
                    )
                    await db.rollback()
                    continue
                if not report.is_consistent:
                    drifted.append(user_id)
                if report.repaired:
                    repaired += 1

            logger.info(
                "Wallet reconciliation finished",
                extra_data={"wallets": len(user_ids), "drifted": len(drifted), "repaired": repaired},
            )
            return {"wallets": len(user_ids), "drifted": drifted, "repaired": repaired}

    return run_async(_reconcile())
