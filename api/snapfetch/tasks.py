from typing import Dict, Optional

from celery import Task

from snapfetch.celery_app import celery_app
from snapfetch.config import settings
from snapfetch.download_queue import PROCESS_TASK_NAME
from snapfetch.services import Services, build_services
from snapfetch.utils.jobs import Priority
from snapfetch.utils.logging import get_logger


logger = get_logger(__name__)


class ServicesTask(Task):
    """Builds the service container lazily, once per worker process."""

    _services: Optional[Services] = None

    @property
    def services(self) -> Services:
        if ServicesTask._services is None:
            ServicesTask._services = build_services(settings)
        return ServicesTask._services


@celery_app.task(bind=True, base=ServicesTask, name=PROCESS_TASK_NAME, max_retries=None)
def process_download(self, job_id: str) -> str:
    services = self.services
    outcome = services.worker.run(job_id)
    if outcome.retry_in is not None:
        job = services.store.get(job_id)
        weight = job.priority.weight if job else Priority.NORMAL.weight
        raise self.retry(countdown=outcome.retry_in, priority=weight)
    return outcome.status


@celery_app.task(bind=True, base=ServicesTask, name="snapfetch.requeue_stalled")
def requeue_stalled(self) -> Dict[str, int]:
    counts = self.services.queue.recover_stalled()
    if counts["requeued"] or counts["failed"]:
        logger.info("Stalled job check", extra={"context": counts})
    return counts


@celery_app.task(bind=True, base=ServicesTask, name="snapfetch.cleanup_staging")
def cleanup_staging(self) -> int:
    services = self.services
    deleted = services.staging.cleanup(services.settings.staging_max_age_hours)
    logger.info("Staging cleanup removed %s file(s)", deleted)
    return deleted
