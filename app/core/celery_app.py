"""
Celery application: broker and result backend from settings.
Tasks are in app.workers.tasks.reconcile (expiry sweep, handoff purge).
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from app.core.config import settings
from app.core.logging import configure_logging

celery_app = Celery(
    "app",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.workers.tasks.reconcile",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=300,
    result_expires=86400,
    beat_schedule={
        "expire-stale-orders": {
            "task": "app.workers.tasks.reconcile.expire_stale_orders",
            "schedule": crontab(minute="*/5"),
        },
        "purge-expired-handoffs": {
            "task": "app.workers.tasks.reconcile.purge_expired_handoffs",
            "schedule": crontab(minute=7),
        },
    },
)


@setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    configure_logging()
