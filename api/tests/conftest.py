import copy
from pathlib import Path
from typing import Any, Dict, List, Optional

import fakeredis
import pytest

from snapfetch.config import Settings
from snapfetch.fetchers.base import ExternalFetcher
from snapfetch.services import build_services
from snapfetch.utils.jobs import JobStore
from snapfetch.utils.storage import StagingStore


# 120s at 720p with no reported size: estimated at the 2500 kbps tier.
SAMPLE_INFO: Dict[str, Any] = {
    "title": "Sample clip",
    "duration": 120,
    "uploader": "someone",
    "upload_date": "20240101",
    "view_count": 42,
    "like_count": 7,
    "thumbnails": [
        {"url": "https://img/small.jpg", "width": 120, "height": 90},
        {"url": "https://img/large.jpg", "width": 1280, "height": 720},
    ],
    "formats": [
        {"format_id": "140", "ext": "m4a", "vcodec": "none", "acodec": "mp4a.40.2"},
        {"format_id": "22", "ext": "mp4", "height": 720, "vcodec": "avc1", "acodec": "mp4a", "fps": 30},
    ],
}


class FakeFetcher(ExternalFetcher):
    """Scripted stand-in for the external tool."""

    def __init__(
        self,
        info: Optional[Dict[str, Any]] = None,
        lines: Optional[List[str]] = None,
        filename: str = "Sample_clip.mp4",
        content: bytes = b"video-bytes",
        fetch_errors: Optional[List[Optional[BaseException]]] = None,
        probe_error: Optional[BaseException] = None,
    ) -> None:
        self.info = info if info is not None else SAMPLE_INFO
        self.lines = lines or []
        self.filename = filename
        self.content = content
        self.fetch_errors = list(fetch_errors or [])
        self.probe_error = probe_error
        self.probe_calls = 0
        self.fetch_calls = 0
        self.before_finish = None

    def probe(self, url, options):
        self.probe_calls += 1
        if self.probe_error is not None:
            raise self.probe_error
        return copy.deepcopy(self.info)

    def fetch(self, url, format_id, output_dir, options, on_line=None, should_stop=None):
        self.fetch_calls += 1
        for line in self.lines:
            if on_line is not None:
                on_line(line)
        if self.fetch_errors:
            error = self.fetch_errors.pop(0)
            if error is not None:
                raise error
        if self.before_finish is not None:
            self.before_finish(should_stop)
        produced = Path(output_dir) / self.filename
        produced.write_bytes(self.content)
        return produced


class FakeDispatcher:
    def __init__(self) -> None:
        self.enqueued: List[tuple] = []
        self.revoked: List[str] = []

    def enqueue(self, job_id, priority, countdown=0):
        self.enqueued.append((job_id, priority, countdown))

    def revoke(self, job_id):
        self.revoked.append(job_id)


def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def settings(tmp_path) -> Settings:
    s = Settings()
    s.app_env = "test"
    s.staging_dir = str(tmp_path / "downloads")
    s.max_file_size_mb = 500.0
    s.queue_max_attempts = 3
    s.queue_backoff_delay = 5.0
    s.queue_lease_seconds = 600
    s.queue_max_stalled_count = 1
    s.queue_completed_ttl = 3600
    s.delete_after_download = False
    return s


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def store(redis_client) -> JobStore:
    return JobStore(redis_client)


@pytest.fixture
def staging(settings) -> StagingStore:
    s = StagingStore(Path(settings.staging_dir))
    s.ensure()
    return s


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def services(settings, redis_client, fetcher, dispatcher):
    svc = build_services(settings, redis_client=redis_client, fetcher=fetcher, dispatcher=dispatcher)
    svc.metadata._sleep = _no_sleep
    svc.worker._sleep = _no_sleep
    return svc
