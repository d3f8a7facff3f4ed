"""Redis-backed job state.

Each job is a hash; a set per state gives O(1) queue statistics. The store is
the single source of truth: workers re-read it before every transition and a
job can disappear at any moment through cancellation.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import redis

from snapfetch.utils.logging import get_logger
from snapfetch.utils.retry import backoff_delay


logger = get_logger(__name__)

KEY_PREFIX = "snapfetch"
CANCEL_MARKER_TTL = 24 * 3600
MAX_REASON_CHARS = 1000
MAX_LOG_LINES = 500


class JobState(str, Enum):
    """Lifecycle of a queued download.

    QUEUED -> ACTIVE -> COMPLETED | FAILED | DELAYED
    DELAYED -> ACTIVE (automatic retry after backoff)
    Cancellation removes the job from any state.
    """

    QUEUED = "queued"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


TRACKED_STATES = (JobState.QUEUED, JobState.ACTIVE, JobState.DELAYED, JobState.FAILED)
CLAIMABLE_STATES = (JobState.QUEUED.value, JobState.DELAYED.value)


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def weight(self) -> int:
        """Lower is served first."""
        return {"high": 1, "normal": 5, "low": 10}[self.value]


def _iso(ts: Optional[float]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Job:
    id: str
    url: str
    format_id: str = "best"
    priority: Priority = Priority.NORMAL
    state: JobState = JobState.QUEUED
    progress: int = 0
    attempts: int = 0
    max_attempts: int = 3
    failed_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    platform: Optional[str] = None
    filename: Optional[str] = None
    owner: Optional[str] = None
    lease_expires_at: float = 0.0
    next_attempt_at: float = 0.0
    stalled_count: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "format_id": self.format_id,
            "priority": self.priority.value,
            "state": self.state.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "failed_reason": self.failed_reason or "",
            "result": json.dumps(self.result) if self.result is not None else "",
            "platform": self.platform or "",
            "filename": self.filename or "",
            "owner": self.owner or "",
            "lease_expires_at": self.lease_expires_at,
            "next_attempt_at": self.next_attempt_at,
            "stalled_count": self.stalled_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_mapping(cls, data: Dict[str, str]) -> "Job":
        result_raw = data.get("result") or ""
        return cls(
            id=data["id"],
            url=data.get("url", ""),
            format_id=data.get("format_id") or "best",
            priority=Priority(data.get("priority") or Priority.NORMAL.value),
            state=JobState(data.get("state") or JobState.QUEUED.value),
            progress=int(float(data.get("progress") or 0)),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or 1),
            failed_reason=data.get("failed_reason") or None,
            result=json.loads(result_raw) if result_raw else None,
            platform=data.get("platform") or None,
            filename=data.get("filename") or None,
            owner=data.get("owner") or None,
            lease_expires_at=float(data.get("lease_expires_at") or 0),
            next_attempt_at=float(data.get("next_attempt_at") or 0),
            stalled_count=int(data.get("stalled_count") or 0),
            created_at=float(data.get("created_at") or 0),
            updated_at=float(data.get("updated_at") or 0),
        )

    def to_view(self) -> Dict[str, Any]:
        return {
            "jobId": self.id,
            "state": self.state.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "failedReason": self.failed_reason,
            "priority": self.priority.value,
            "platform": self.platform,
            "data": {"url": self.url, "format": self.format_id, "filename": self.filename},
            "result": self.result,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "nextAttemptAt": _iso(self.next_attempt_at) if self.state == JobState.DELAYED else None,
        }


@dataclass
class FailureOutcome:
    state: JobState
    attempts: int
    delay: Optional[float] = None


class JobStore:
    def __init__(self, client: "redis.Redis", prefix: str = KEY_PREFIX) -> None:
        self._redis = client
        self._prefix = prefix

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _logs_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}:logs"

    def _cancel_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}:cancelled"

    def _state_key(self, state: JobState) -> str:
        return f"{self._prefix}:jobs:{state.value}"

    def _completed_counter_key(self) -> str:
        return f"{self._prefix}:jobs:completed:count"

    def _move(self, pipe: Any, job_id: str, state: Optional[JobState]) -> None:
        for tracked in TRACKED_STATES:
            if tracked != state:
                pipe.srem(self._state_key(tracked), job_id)
        if state in TRACKED_STATES:
            pipe.sadd(self._state_key(state), job_id)

    def create(
        self,
        url: str,
        format_id: str = "best",
        priority: Priority = Priority.NORMAL,
        max_attempts: int = 3,
        platform: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Job:
        job = Job(
            id=uuid.uuid4().hex,
            url=url,
            format_id=format_id or "best",
            priority=priority,
            max_attempts=max(int(max_attempts), 1),
            platform=platform,
            filename=filename,
        )
        pipe = self._redis.pipeline()
        pipe.hset(self._job_key(job.id), mapping=job.to_mapping())
        self._move(pipe, job.id, JobState.QUEUED)
        pipe.execute()
        return job

    def get(self, job_id: str) -> Optional[Job]:
        data = self._redis.hgetall(self._job_key(job_id))
        if not data:
            return None
        return Job.from_mapping(data)

    def is_cancelled(self, job_id: str) -> bool:
        return bool(self._redis.exists(self._cancel_key(job_id)))

    def append_log(self, job_id: str, message: str) -> None:
        key = self._job_key(job_id)
        logs_key = self._logs_key(job_id)
        with self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    if not pipe.exists(key):
                        pipe.unwatch()
                        return
                    pipe.multi()
                    pipe.rpush(logs_key, message)
                    pipe.ltrim(logs_key, -MAX_LOG_LINES, -1)
                    pipe.execute()
                    return
                except redis.WatchError:
                    continue

    def get_logs(self, job_id: str) -> List[str]:
        return list(self._redis.lrange(self._logs_key(job_id), 0, -1))

    def claim(self, job_id: str, lease_seconds: float) -> Optional[str]:
        """Atomically move a queued/delayed job to active; returns the owner token."""
        key = self._job_key(job_id)
        with self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key, self._cancel_key(job_id))
                    if pipe.exists(self._cancel_key(job_id)):
                        pipe.unwatch()
                        return None
                    state = pipe.hget(key, "state")
                    if state not in CLAIMABLE_STATES:
                        pipe.unwatch()
                        return None
                    token = uuid.uuid4().hex
                    now = time.time()
                    pipe.multi()
                    pipe.hset(
                        key,
                        mapping={
                            "state": JobState.ACTIVE.value,
                            "owner": token,
                            "lease_expires_at": now + lease_seconds,
                            "next_attempt_at": 0,
                            "updated_at": now,
                        },
                    )
                    self._move(pipe, job_id, JobState.ACTIVE)
                    pipe.execute()
                    return token
                except redis.WatchError:
                    continue

    def touch(self, job_id: str, owner: str, lease_seconds: float) -> bool:
        """Extend the lease of a job this worker still owns."""
        key = self._job_key(job_id)
        with self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key, self._cancel_key(job_id))
                    if pipe.hget(key, "owner") != owner or pipe.exists(self._cancel_key(job_id)):
                        pipe.unwatch()
                        return False
                    now = time.time()
                    pipe.multi()
                    pipe.hset(key, mapping={"lease_expires_at": now + lease_seconds, "updated_at": now})
                    pipe.execute()
                    return True
                except redis.WatchError:
                    continue

    def set_progress(self, job_id: str, owner: str, progress: int) -> int:
        """Raise progress to ``progress`` (clamped 0-100); it never goes down."""
        key = self._job_key(job_id)
        value = max(0, min(int(progress), 100))
        with self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    current_owner, current_raw = pipe.hmget(key, "owner", "progress")
                    if current_owner != owner:
                        pipe.unwatch()
                        return value
                    current = int(float(current_raw or 0))
                    if value <= current:
                        pipe.unwatch()
                        return current
                    pipe.multi()
                    pipe.hset(key, mapping={"progress": value, "updated_at": time.time()})
                    pipe.execute()
                    return value
                except redis.WatchError:
                    continue

    def complete(self, job_id: str, owner: str, result: Dict[str, Any], retention_seconds: int = 0) -> bool:
        """Mark the job completed; it is kept for ``retention_seconds`` then evicted."""
        key = self._job_key(job_id)
        with self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    if pipe.hget(key, "owner") != owner:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    if retention_seconds > 0:
                        pipe.hset(
                            key,
                            mapping={
                                "state": JobState.COMPLETED.value,
                                "progress": 100,
                                "result": json.dumps(result),
                                "owner": "",
                                "lease_expires_at": 0,
                                "updated_at": time.time(),
                            },
                        )
                        pipe.expire(key, int(retention_seconds))
                        pipe.expire(self._logs_key(job_id), int(retention_seconds))
                    else:
                        pipe.delete(key, self._logs_key(job_id))
                    self._move(pipe, job_id, None)
                    pipe.incr(self._completed_counter_key())
                    pipe.execute()
                    return True
                except redis.WatchError:
                    continue

    def record_failure(
        self,
        job_id: str,
        owner: Optional[str],
        reason: str,
        retryable: bool = True,
        backoff_base: float = 5.0,
    ) -> Optional[FailureOutcome]:
        """Count a failed attempt and decide between a delayed retry and terminal failure.

        Returns None when the job is gone (cancelled) or owned by someone else.
        """
        key = self._job_key(job_id)
        with self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key, self._cancel_key(job_id))
                    data = pipe.hgetall(key)
                    if not data:
                        pipe.unwatch()
                        return None
                    job = Job.from_mapping(data)
                    if owner is not None and job.owner != owner:
                        pipe.unwatch()
                        return None
                    cancelled = bool(pipe.exists(self._cancel_key(job_id)))

                    attempts = job.attempts + 1
                    now = time.time()
                    mapping: Dict[str, Any] = {
                        "attempts": attempts,
                        "failed_reason": (reason or "Unknown error")[:MAX_REASON_CHARS],
                        "owner": "",
                        "lease_expires_at": 0,
                        "updated_at": now,
                    }
                    if retryable and attempts < job.max_attempts and not cancelled:
                        delay: Optional[float] = backoff_delay(backoff_base, attempts)
                        state = JobState.DELAYED
                        mapping["next_attempt_at"] = now + delay
                    else:
                        delay = None
                        state = JobState.FAILED
                    mapping["state"] = state.value

                    pipe.multi()
                    pipe.hset(key, mapping=mapping)
                    self._move(pipe, job_id, state)
                    pipe.execute()
                    return FailureOutcome(state=state, attempts=attempts, delay=delay)
                except redis.WatchError:
                    continue

    def cancel(self, job_id: str) -> bool:
        """Remove a job outright and leave a sticky marker for any pending retry."""
        key = self._job_key(job_id)
        if not self._redis.exists(key):
            return False
        pipe = self._redis.pipeline()
        pipe.set(self._cancel_key(job_id), "1", ex=CANCEL_MARKER_TTL)
        pipe.delete(key, self._logs_key(job_id))
        self._move(pipe, job_id, None)
        pipe.execute()
        return True

    def stats(self) -> Dict[str, int]:
        pipe = self._redis.pipeline()
        pipe.scard(self._state_key(JobState.ACTIVE))
        pipe.scard(self._state_key(JobState.QUEUED))
        pipe.get(self._completed_counter_key())
        pipe.scard(self._state_key(JobState.FAILED))
        pipe.scard(self._state_key(JobState.DELAYED))
        active, waiting, completed, failed, delayed = pipe.execute()
        return {
            "active": int(active or 0),
            "waiting": int(waiting or 0),
            "completed": int(completed or 0),
            "failed": int(failed or 0),
            "delayed": int(delayed or 0),
            # no pause control; the field mirrors the usual queue counters
            "paused": 0,
        }

    def requeue_stalled(self, max_stalled: int = 1, now: Optional[float] = None) -> Tuple[List[Job], List[str]]:
        """Requeue active jobs whose lease expired; fail those that stalled too often.

        Returns the requeued jobs (to be dispatched again) and the ids failed.
        """
        now = time.time() if now is None else now
        requeued: List[Job] = []
        failed: List[str] = []
        for job_id in self._redis.smembers(self._state_key(JobState.ACTIVE)):
            key = self._job_key(job_id)
            with self._redis.pipeline() as pipe:
                try:
                    pipe.watch(key)
                    data = pipe.hgetall(key)
                    if not data:
                        pipe.unwatch()
                        self._redis.srem(self._state_key(JobState.ACTIVE), job_id)
                        continue
                    job = Job.from_mapping(data)
                    if job.state != JobState.ACTIVE or job.lease_expires_at >= now:
                        pipe.unwatch()
                        continue
                    stalled_count = job.stalled_count + 1
                    pipe.multi()
                    if stalled_count > max_stalled:
                        pipe.hset(
                            key,
                            mapping={
                                "state": JobState.FAILED.value,
                                "failed_reason": "job stalled more than allowable limit",
                                "stalled_count": stalled_count,
                                "owner": "",
                                "lease_expires_at": 0,
                                "updated_at": now,
                            },
                        )
                        self._move(pipe, job_id, JobState.FAILED)
                    else:
                        pipe.hset(
                            key,
                            mapping={
                                "state": JobState.QUEUED.value,
                                "stalled_count": stalled_count,
                                "owner": "",
                                "lease_expires_at": 0,
                                "updated_at": now,
                            },
                        )
                        self._move(pipe, job_id, JobState.QUEUED)
                    pipe.execute()
                except redis.WatchError:
                    # touched concurrently, so it is not stalled
                    continue
            if stalled_count > max_stalled:
                logger.warning("Job %s stalled %s times; marked failed", job_id, stalled_count)
                failed.append(job_id)
            else:
                logger.warning("Job %s stalled; requeued", job_id)
                job.state = JobState.QUEUED
                job.stalled_count = stalled_count
                requeued.append(job)
        return requeued, failed
