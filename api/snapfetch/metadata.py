"""Metadata extraction and downloadability checks.

Ordinary platforms are probed through the external tool with operation-level
retry. Instagram, the platform with the most aggressive anti-automation
defenses, gets a reachability check first and then an ordered list of probe
strategies.
"""

import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

import requests

from snapfetch.config import Settings
from snapfetch.errors import (
    AppError,
    DownloadabilityError,
    PlatformBlockedError,
    UnsupportedPlatformError,
)
from snapfetch.fetchers.base import ExternalFetcher
from snapfetch.platforms import BROWSER_UA, Platform, PlatformOptions, detect_platform, platform_options
from snapfetch.utils.formats import (
    FormatDescriptor,
    SizeEstimate,
    estimate_size,
    normalize_formats,
    select_thumbnail,
)
from snapfetch.utils.logging import get_logger
from snapfetch.utils.retry import run_with_retry


logger = get_logger(__name__)

PROBE_ATTEMPTS = 3
PROBE_BASE_DELAY = 3.0
REACHABILITY_TIMEOUT = 10
STRATEGY_DELAY = 2.0
DEFENDED_PROBE_TIMEOUT = 90.0


@dataclass
class Metadata:
    title: str
    duration: float
    uploader: str
    upload_date: Optional[str]
    thumbnail: Optional[str]
    formats: List[FormatDescriptor]
    platform: Platform
    views: Optional[int] = None
    likes: Optional[int] = None
    webpage_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "duration": self.duration,
            "uploader": self.uploader,
            "uploadDate": self.upload_date,
            "thumbnail": self.thumbnail,
            "formats": [f.to_dict() for f in self.formats],
            "platform": self.platform.value,
            "views": self.views,
            "likes": self.likes,
            "webpageUrl": self.webpage_url,
        }


def metadata_from_info(info: Dict[str, Any], platform: Platform) -> Metadata:
    return Metadata(
        title=str(info.get("title") or "Unknown"),
        duration=float(info.get("duration") or 0),
        uploader=str(info.get("uploader") or info.get("channel") or "Unknown"),
        upload_date=info.get("upload_date"),
        thumbnail=select_thumbnail(info),
        formats=normalize_formats(info),
        platform=platform,
        views=info.get("view_count"),
        likes=info.get("like_count"),
        webpage_url=info.get("webpage_url"),
    )


def defended_strategies(base: PlatformOptions) -> List[PlatformOptions]:
    """Baseline, then fragment-retry tolerance, then a higher plain retry count."""
    baseline = replace(
        base,
        retries=0,
        fragment_retries=0,
        skip_unavailable_fragments=False,
        probe_timeout=max(base.probe_timeout, DEFENDED_PROBE_TIMEOUT),
    )
    return [
        baseline,
        replace(baseline, fragment_retries=10, skip_unavailable_fragments=True),
        replace(baseline, retries=5),
    ]


class MetadataService:
    def __init__(
        self,
        fetcher: ExternalFetcher,
        settings: Settings,
        http_get: Callable[..., Any] = requests.get,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._fetcher = fetcher
        self._settings = settings
        self._http_get = http_get
        self._sleep = sleep

    def resolve_platform(self, url: str) -> Platform:
        detection = detect_platform(url)
        if not detection.is_valid or detection.platform is None:
            raise UnsupportedPlatformError()
        return detection.platform

    def options_for(self, platform: Platform) -> PlatformOptions:
        return platform_options(platform, self._settings)

    def extract(self, url: str) -> Metadata:
        platform = self.resolve_platform(url)
        options = self.options_for(platform)
        if options.defended:
            info = self._extract_defended(url, platform, options)
        else:
            try:
                info = run_with_retry(
                    lambda: self._fetcher.probe(url, options),
                    max_attempts=PROBE_ATTEMPTS,
                    base_delay=PROBE_BASE_DELAY,
                    sleep=self._sleep,
                    label=f"metadata probe ({platform.value})",
                )
            except AppError as exc:
                raise DownloadabilityError(f"Failed to extract metadata: {exc.message}") from exc
        return metadata_from_info(info, platform)

    def is_reachable(self, url: str) -> bool:
        headers = {
            "User-Agent": BROWSER_UA,
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": "https://www.instagram.com/",
        }
        try:
            response = self._http_get(url, headers=headers, timeout=REACHABILITY_TIMEOUT)
        except requests.RequestException as exc:
            logger.warning("Reachability check failed for %s: %s", url, exc)
            return False
        return response.status_code == 200

    def _extract_defended(self, url: str, platform: Platform, options: PlatformOptions) -> Dict[str, Any]:
        if not self.is_reachable(url):
            raise PlatformBlockedError(
                f"{platform.value.title()} is not accessible from this server. "
                "The IP may be rate-limited or blocked."
            )

        strategies = defended_strategies(options)
        last_error: Optional[AppError] = None
        for index, strategy in enumerate(strategies, start=1):
            try:
                logger.info("%s extraction strategy %s/%s", platform.value, index, len(strategies))
                return self._fetcher.probe(url, strategy)
            except AppError as exc:
                last_error = exc
                logger.warning("Strategy %s failed: %s", index, exc.message)
                if index < len(strategies):
                    self._sleep(STRATEGY_DELAY * index)

        detail = f" Last error: {last_error.message}" if last_error else ""
        raise DownloadabilityError(
            f"All {platform.value} extraction strategies failed. The platform may have "
            f"rate-limited this IP or requires authentication.{detail}"
        )

    def check(self, url: str) -> Dict[str, Any]:
        detection = detect_platform(url)
        if not detection.is_valid or detection.platform is None:
            return {"canDownload": False, "platform": None, "reason": "Invalid URL format for platform"}
        try:
            self.extract(url)
        except AppError as exc:
            return {"canDownload": False, "platform": detection.platform.value, "reason": exc.message}
        return {"canDownload": True, "platform": detection.platform.value, "reason": "URL is valid and downloadable"}

    def estimate(self, metadata: Metadata, format_id: str) -> SizeEstimate:
        return estimate_size(
            metadata.formats, metadata.duration, format_id or "best", self._settings.max_file_size_mb
        )
