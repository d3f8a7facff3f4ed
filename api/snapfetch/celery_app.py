from celery import Celery
from celery.signals import setup_logging

from snapfetch.config import settings
from snapfetch.utils.jobs import Priority
from snapfetch.utils.logging import configure_json_logging


celery_app = Celery(
    "snapfetch",
    broker=settings.redis_url,
    include=["snapfetch.tasks"],
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_ignore_result=True,
    task_default_priority=Priority.NORMAL.weight,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.queue_concurrency,
    broker_transport_options={
        # lower number is served first
        "priority_steps": list(range(11)),
        "sep": ":",
        "queue_order_strategy": "priority",
        "visibility_timeout": max(settings.queue_lease_seconds * 2, 3600),
    },
    beat_schedule={
        "requeue-stalled-jobs": {
            "task": "snapfetch.requeue_stalled",
            "schedule": settings.queue_stalled_interval,
        },
        "cleanup-staging": {
            "task": "snapfetch.cleanup_staging",
            "schedule": settings.staging_cleanup_interval,
        },
    },
)


@setup_logging.connect
def _configure_worker_logging(**_kwargs) -> None:
    configure_json_logging(settings.log_level, service="worker")
