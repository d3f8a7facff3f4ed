from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import redis

from snapfetch.config import Settings, settings as default_settings
from snapfetch.download_queue import CeleryDispatcher, Dispatcher, DownloadQueue
from snapfetch.fetchers.base import ExternalFetcher
from snapfetch.fetchers.ytdlp import YtDlpFetcher
from snapfetch.metadata import MetadataService
from snapfetch.streaming import StreamDownloadEngine
from snapfetch.utils.jobs import JobStore
from snapfetch.utils.storage import StagingStore
from snapfetch.worker import DownloadWorker


@dataclass
class Services:
    """Everything that holds a connection or a directory, built once per process."""

    settings: Settings
    redis: "redis.Redis"
    store: JobStore
    queue: DownloadQueue
    staging: StagingStore
    fetcher: ExternalFetcher
    metadata: MetadataService
    worker: DownloadWorker
    streams: StreamDownloadEngine

    def close(self) -> None:
        self.redis.close()


def build_services(
    settings: Optional[Settings] = None,
    redis_client: Optional["redis.Redis"] = None,
    fetcher: Optional[ExternalFetcher] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> Services:
    settings = settings or default_settings
    client = redis_client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
    fetcher = fetcher or YtDlpFetcher(settings.ytdlp_bin)
    if dispatcher is None:
        from snapfetch.celery_app import celery_app

        dispatcher = CeleryDispatcher(celery_app)

    staging = StagingStore(Path(settings.staging_dir))
    staging.ensure()
    store = JobStore(client)
    metadata = MetadataService(fetcher, settings)
    return Services(
        settings=settings,
        redis=client,
        store=store,
        queue=DownloadQueue(store, dispatcher, settings),
        staging=staging,
        fetcher=fetcher,
        metadata=metadata,
        worker=DownloadWorker(store, metadata, fetcher, staging, settings),
        streams=StreamDownloadEngine(metadata, fetcher, staging, settings),
    )
