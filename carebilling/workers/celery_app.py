"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import task_postrun, task_prerun

from carebilling.core.config import settings
from carebilling.core.logging import bind_task_context, clear_task_context, get_logger, setup_logging

setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
)

logger = get_logger(__name__)


celery_app = Celery(
    "carebilling",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["carebilling.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minutes, sweeps touch many rows
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-due-renewals-hourly": {
        "task": "carebilling.workers.tasks.process_due_renewals",
        "schedule": 3600.0,  # 1 hour
    },
    "process-payment-retries-hourly": {
        "task": "carebilling.workers.tasks.process_payment_retries",
        "schedule": 3600.0,  # 1 hour
    },
    # Promo credits expire on day granularity; once a night is enough
    "expire-promo-credits-daily": {
        "task": "carebilling.workers.tasks.expire_promo_credits",
        "schedule": crontab(hour="2", minute="0"),
    },
    "reconcile-wallets-daily": {
        "task": "carebilling.workers.tasks.reconcile_wallets",
        "schedule": crontab(hour="3", minute="30"),
    },
}


@task_prerun.connect
def bind_task_logging(sender=None, task_id=None, task=None, **kwargs):
    """Every log line of a task run carries its Celery task id and name"""
    bind_task_context(task_id, getattr(task, "name", None))
    logger.debug("Task started", extra_data={"task_id": task_id})


@task_postrun.connect
def clear_task_logging(sender=None, task_id=None, task=None, state=None, **kwargs):
    logger.debug("Task finished", extra_data={"task_id": task_id, "state": state})
    clear_task_context()
