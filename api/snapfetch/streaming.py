"""Connection-scoped downloads with live progress.

The fetch runs in a worker thread; tool output crosses into the event loop
through an ``asyncio.Queue`` and is reduced to strictly increasing progress
events. Closing the connection stops the external process.
"""

import asyncio
import re
import threading
import time
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from snapfetch.config import Settings
from snapfetch.errors import AppError, SizeLimitError
from snapfetch.fetchers.base import ExternalFetcher
from snapfetch.metadata import Metadata, MetadataService
from snapfetch.utils.formats import BYTES_PER_MB
from snapfetch.utils.logging import get_logger
from snapfetch.utils.storage import StagingStore
from snapfetch.worker import file_download_url


logger = get_logger(__name__)

PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)%")
_DESTINATION_PATTERNS = (
    re.compile(r"\[download\]\s+Destination:\s+(.+?)\s*$"),
    re.compile(r'\[Merger\]\s+Merging formats into\s+"(.+?)"'),
    re.compile(r"\[download\]\s+(.+?)\s+has already been downloaded"),
    re.compile(r'\[download\][^"]*"([^"]+)"'),
)

LINE_WAIT_SECONDS = 0.5
DISCONNECT_CHECK_SECONDS = 1.0

DisconnectCheck = Callable[[], Awaitable[bool]]


def parse_percent(line: str) -> Optional[int]:
    match = PERCENT_RE.search(line)
    if not match:
        return None
    return min(int(float(match.group(1)) + 0.5), 100)


def parse_destination(line: str) -> Optional[str]:
    for pattern in _DESTINATION_PATTERNS:
        match = pattern.search(line)
        if match:
            return Path(match.group(1).strip()).name
    return None


class ProgressTracker:
    """Reduces tool output to strictly increasing percentages."""

    def __init__(self) -> None:
        self.last: Optional[int] = None
        self.filename: Optional[str] = None

    def feed(self, line: str) -> Optional[int]:
        name = parse_destination(line)
        if name:
            self.filename = name
        value = parse_percent(line)
        if value is None:
            return None
        if self.last is not None and value <= self.last:
            return None
        self.last = value
        return value


def error_event(exc: AppError) -> Dict[str, Any]:
    return {"status": "error", "message": exc.message, "code": exc.code}


class StreamDownloadEngine:
    def __init__(
        self,
        metadata: MetadataService,
        fetcher: ExternalFetcher,
        staging: StagingStore,
        settings: Settings,
    ) -> None:
        self.metadata = metadata
        self.fetcher = fetcher
        self.staging = staging
        self.settings = settings

    async def stream(
        self,
        url: str,
        format_id: str = "best",
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        format_id = format_id or "best"
        cancel = threading.Event()
        yield {"status": "starting", "progress": 0, "message": "Initializing download..."}
        try:
            platform = self.metadata.resolve_platform(url)
            yield {
                "status": "checking",
                "progress": 0,
                "message": "Checking downloadability...",
                "platform": platform.value,
            }
            metadata = await asyncio.to_thread(self.metadata.extract, url)
            if is_disconnected is not None and await is_disconnected():
                logger.info("Client left before download started: %s", url)
                return

            estimate = self.metadata.estimate(metadata, format_id)
            if not estimate.can_download:
                yield error_event(SizeLimitError(estimate.estimated_mb, estimate.max_allowed_mb))
                return

            yield {
                "status": "downloading",
                "progress": 0,
                "message": "Starting download...",
                "title": metadata.title,
                "estimatedSizeMB": round(estimate.estimated_mb, 2),
            }
            async for event in self._fetch(url, format_id, metadata, cancel, is_disconnected):
                yield event
        except AppError as exc:
            logger.warning("Stream download failed: %s", exc.message, extra={"context": {"url": url, "code": exc.code}})
            yield error_event(exc)
        except Exception:  # noqa: BLE001
            logger.exception("Stream download crashed", extra={"context": {"url": url}})
            yield {"status": "error", "message": "Download failed", "code": "INTERNAL_ERROR"}
        finally:
            cancel.set()

    async def _fetch(
        self,
        url: str,
        format_id: str,
        metadata: Metadata,
        cancel: threading.Event,
        is_disconnected: Optional[DisconnectCheck],
    ) -> AsyncIterator[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        lines: "asyncio.Queue[str]" = asyncio.Queue()
        tracker = ProgressTracker()
        options = self.metadata.options_for(metadata.platform)

        def on_line(line: str) -> None:
            loop.call_soon_threadsafe(lines.put_nowait, line)

        with self.staging.work_dir(prefix="stream-") as work:
            task = asyncio.ensure_future(
                asyncio.to_thread(self.fetcher.fetch, url, format_id, work, options, on_line, cancel.is_set)
            )
            next_check = time.monotonic() + DISCONNECT_CHECK_SECONDS
            try:
                while not (task.done() and lines.empty()):
                    if is_disconnected is not None and time.monotonic() >= next_check:
                        next_check = time.monotonic() + DISCONNECT_CHECK_SECONDS
                        if await is_disconnected():
                            logger.info("Client disconnected; stopping download of %s", url)
                            cancel.set()
                            await asyncio.gather(task, return_exceptions=True)
                            return
                    try:
                        line = await asyncio.wait_for(lines.get(), timeout=LINE_WAIT_SECONDS)
                    except asyncio.TimeoutError:
                        continue
                    progress = tracker.feed(line)
                    if progress is None:
                        continue
                    event: Dict[str, Any] = {
                        "status": "downloading",
                        "progress": progress,
                        "message": f"Downloading... {progress}%",
                    }
                    if tracker.filename:
                        event["filename"] = tracker.filename
                    yield event

                produced = await task
                staged = self.staging.promote(produced)
            finally:
                # generator closed early: the watcher thread kills the process
                cancel.set()

        size = staged.stat().st_size
        logger.info("Stream download completed", extra={"context": {"url": url, "file": staged.name}})
        yield {
            "status": "completed",
            "progress": 100,
            "message": "Download completed!",
            "file": staged.name,
            "downloadUrl": file_download_url(staged.name),
            "fileSizeMB": round(size / BYTES_PER_MB, 2),
        }
