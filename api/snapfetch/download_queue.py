"""Submission side of the download queue.

Job state lives in :class:`JobStore`; delivery to workers goes through a
dispatcher so the API never talks to the broker directly.
"""

from typing import Any, Dict, Optional, Protocol

from snapfetch.config import Settings
from snapfetch.errors import NotFoundError
from snapfetch.utils.jobs import Job, JobStore, Priority
from snapfetch.utils.logging import get_logger


logger = get_logger(__name__)

PROCESS_TASK_NAME = "snapfetch.process_download"


class Dispatcher(Protocol):
    def enqueue(self, job_id: str, priority: Priority, countdown: float = 0) -> None:
        ...

    def revoke(self, job_id: str) -> None:
        ...


class CeleryDispatcher:
    """Sends jobs to the worker pool through the Celery broker."""

    def __init__(self, app: Any) -> None:
        self._app = app

    def enqueue(self, job_id: str, priority: Priority, countdown: float = 0) -> None:
        options: Dict[str, Any] = {"task_id": job_id, "priority": priority.weight}
        if countdown > 0:
            options["countdown"] = countdown
        self._app.send_task(PROCESS_TASK_NAME, args=[job_id], **options)

    def revoke(self, job_id: str) -> None:
        # best effort; the cancel marker is what the worker actually honors
        self._app.control.revoke(job_id)


def parse_priority(value: Optional[str]) -> Priority:
    if not value:
        return Priority.NORMAL
    try:
        return Priority(str(value).lower())
    except ValueError:
        return Priority.NORMAL


class DownloadQueue:
    def __init__(self, store: JobStore, dispatcher: Dispatcher, settings: Settings) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings

    def submit(
        self,
        url: str,
        format_id: str = "best",
        priority: Priority = Priority.NORMAL,
        filename: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> Job:
        job = self.store.create(
            url,
            format_id=format_id,
            priority=priority,
            max_attempts=self.settings.queue_max_attempts,
            platform=platform,
            filename=filename,
        )
        self.dispatcher.enqueue(job.id, priority)
        logger.info(
            "Job queued",
            extra={"context": {"job_id": job.id, "platform": platform, "priority": priority.value}},
        )
        return job

    def status(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return job

    def cancel(self, job_id: str) -> None:
        if not self.store.cancel(job_id):
            raise NotFoundError("Job not found")
        self.dispatcher.revoke(job_id)
        logger.info("Job cancelled", extra={"context": {"job_id": job_id}})

    def stats(self) -> Dict[str, int]:
        return self.store.stats()

    def recover_stalled(self) -> Dict[str, int]:
        requeued, failed = self.store.requeue_stalled(self.settings.queue_max_stalled_count)
        for job in requeued:
            self.dispatcher.enqueue(job.id, job.priority)
        return {"requeued": len(requeued), "failed": len(failed)}
