"""
Celery application: broker and result backend from settings.
Tasks are in channel_gate.workers.tasks (pending payment sweeper).
"""
from celery import Celery
from celery.schedules import crontab

from channel_gate.core.config import settings

celery_app = Celery(
    "channel_gate",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "channel_gate.workers.tasks.reconcile_pending",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=600,
    result_expires=86400,
    beat_schedule={
        "reconcile-pending-payments": {
            "task": "channel_gate.workers.tasks.reconcile_pending.reconcile_pending_payments",
            "schedule": crontab(minute="*/5"),
        },
    },
)
