"""The multi-stage pipeline executed for one queued job.

metadata (10%) -> size check (30%) -> fetch (50%) -> staged (100%).
Each stage re-reads the cancel marker; any error goes through
``handle_failure`` which decides between a delayed retry and a terminal
failure.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

from snapfetch.config import Settings
from snapfetch.errors import AppError, ExternalToolError, FetchCancelledError, SizeLimitError, is_retryable
from snapfetch.fetchers.base import ExternalFetcher
from snapfetch.metadata import Metadata, MetadataService
from snapfetch.utils.formats import BYTES_PER_MB
from snapfetch.utils.jobs import Job, JobState, JobStore
from snapfetch.utils.logging import get_logger
from snapfetch.utils.retry import run_with_retry
from snapfetch.utils.storage import StagingStore


logger = get_logger(__name__)

PROGRESS_METADATA = 10
PROGRESS_SIZE_CHECK = 30
PROGRESS_FETCH = 50
PROGRESS_DONE = 100

FETCH_ATTEMPTS = 2
FETCH_BASE_DELAY = 2.0
# Minimum spacing between lease extensions.
LEASE_TOUCH_INTERVAL = 15.0


def file_download_url(filename: str) -> str:
    return f"/api/download/file/{quote(filename)}"


@dataclass
class RunOutcome:
    status: str
    retry_in: Optional[float] = None
    result: Optional[Dict[str, Any]] = None


class DownloadWorker:
    def __init__(
        self,
        store: JobStore,
        metadata: MetadataService,
        fetcher: ExternalFetcher,
        staging: StagingStore,
        settings: Settings,
        sleep=time.sleep,
    ) -> None:
        self.store = store
        self.metadata = metadata
        self.fetcher = fetcher
        self.staging = staging
        self.settings = settings
        self._sleep = sleep

    def run(self, job_id: str) -> RunOutcome:
        if self.store.is_cancelled(job_id):
            logger.info("Skipping cancelled job %s", job_id)
            return RunOutcome("cancelled")

        owner = self.store.claim(job_id, self.settings.queue_lease_seconds)
        if owner is None:
            # already taken, finished, or gone
            return RunOutcome("skipped")

        job = self.store.get(job_id)
        if job is None:
            return RunOutcome("cancelled")

        try:
            result = self._execute(job, owner)
        except Exception as exc:  # noqa: BLE001
            delay = self.handle_failure(job_id, exc, owner=owner)
            if delay is not None:
                return RunOutcome("retry", retry_in=delay)
            if isinstance(exc, FetchCancelledError):
                return RunOutcome("cancelled")
            return RunOutcome("failed")

        if not self.store.complete(job_id, owner, result, self.settings.queue_completed_ttl):
            logger.warning("Job %s finished after losing ownership; result dropped", job_id)
            return RunOutcome("skipped")
        logger.info("Job completed", extra={"context": {"job_id": job_id, "file": result["file"]}})
        return RunOutcome("completed", result=result)

    def handle_failure(self, job_id: str, exc: BaseException, owner: Optional[str] = None) -> Optional[float]:
        """Record a failed attempt. Returns the retry delay, or None when no retry follows."""
        if isinstance(exc, FetchCancelledError) or self.store.is_cancelled(job_id):
            logger.info("Job %s cancelled during processing", job_id)
            return None

        message = exc.message if isinstance(exc, AppError) else (str(exc) or exc.__class__.__name__)
        outcome = self.store.record_failure(
            job_id,
            owner,
            message,
            retryable=is_retryable(exc),
            backoff_base=self.settings.queue_backoff_delay,
        )
        if outcome is None:
            return None
        self.store.append_log(job_id, f"Attempt {outcome.attempts} failed: {message}")
        if outcome.state == JobState.DELAYED:
            logger.warning(
                "Job %s attempt %s failed, retrying in %.1fs: %s", job_id, outcome.attempts, outcome.delay, message
            )
            return outcome.delay
        logger.error(
            "Job failed",
            extra={"context": {"job_id": job_id, "attempts": outcome.attempts, "reason": message}},
        )
        return None

    def _ensure_not_cancelled(self, job_id: str) -> None:
        if self.store.is_cancelled(job_id):
            raise FetchCancelledError()

    def _execute(self, job: Job, owner: str) -> Dict[str, Any]:
        self.store.set_progress(job.id, owner, PROGRESS_METADATA)
        self.store.append_log(job.id, f"Attempt {job.attempts + 1}/{job.max_attempts}: extracting metadata...")
        metadata = self.metadata.extract(job.url)
        self._ensure_not_cancelled(job.id)

        self.store.set_progress(job.id, owner, PROGRESS_SIZE_CHECK)
        self.store.append_log(job.id, f"Metadata ready: {metadata.title!r} ({metadata.platform.value})")
        estimate = self.metadata.estimate(metadata, job.format_id)
        if not estimate.can_download:
            raise SizeLimitError(estimate.estimated_mb, estimate.max_allowed_mb)
        self._ensure_not_cancelled(job.id)

        self.store.set_progress(job.id, owner, PROGRESS_FETCH)
        self.store.append_log(job.id, f"Estimated size {estimate.estimated_mb:.2f}MB; downloading...")
        options = self.metadata.options_for(metadata.platform)
        lease = self.settings.queue_lease_seconds
        state = {"touched": time.monotonic(), "lost": False}

        def keep_lease() -> None:
            now = time.monotonic()
            if now - state["touched"] < LEASE_TOUCH_INTERVAL:
                return
            state["touched"] = now
            if not self.store.touch(job.id, owner, lease):
                state["lost"] = True

        def on_line(_line: str) -> None:
            keep_lease()

        def should_stop() -> bool:
            # polled by the process watcher, so a silent tool still keeps its lease
            keep_lease()
            return state["lost"] or self.store.is_cancelled(job.id)

        with self.staging.work_dir(prefix=f"{job.id}-") as work:
            produced = run_with_retry(
                lambda: self.fetcher.fetch(job.url, job.format_id, work, options, on_line, should_stop),
                max_attempts=FETCH_ATTEMPTS,
                base_delay=FETCH_BASE_DELAY,
                retry_on=(ExternalToolError,),
                sleep=self._sleep,
                label=f"fetch {job.id}",
            )
            staged = self.staging.promote(produced, job.filename)

        self.store.set_progress(job.id, owner, PROGRESS_DONE)
        self.store.append_log(job.id, f"Staged as {staged.name}")
        return self._result(job, metadata, staged)

    def _result(self, job: Job, metadata: Metadata, staged: Path) -> Dict[str, Any]:
        size = staged.stat().st_size
        return {
            "downloadId": job.id,
            "url": job.url,
            "platform": metadata.platform.value,
            "format": job.format_id,
            "metadata": metadata.to_dict(),
            "file": staged.name,
            "fileSizeMB": round(size / BYTES_PER_MB, 2),
            "downloadUrl": file_download_url(staged.name),
            "completedAt": datetime.now(timezone.utc).isoformat(),
        }
