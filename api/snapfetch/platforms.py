"""Source platform identification and per-platform invocation options."""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional

from snapfetch.config import Settings


BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class Platform(str, Enum):
    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"
    YOUTUBE = "youtube"
    TWITTER = "twitter"
    FACEBOOK = "facebook"
    PINTEREST = "pinterest"


@dataclass(frozen=True)
class Detection:
    platform: Optional[Platform]
    is_valid: bool
    media_type: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PlatformOptions:
    """Invocation parameters handed to the external tool for one platform."""

    socket_timeout: int = 30
    retries: int = 3
    fragment_retries: int = 0
    skip_unavailable_fragments: bool = False
    user_agent: str = BROWSER_UA
    headers: Dict[str, str] = field(default_factory=dict)
    fetch_timeout: float = 300.0
    probe_timeout: float = 60.0
    # Platforms with aggressive anti-automation need the multi-strategy probe
    # and a forced video+audio merge on fetch.
    defended: bool = False


_TIKTOK_VALID_RE = re.compile(r"tiktok\.com/@|vm\.tiktok\.com|vt\.tiktok\.com", re.IGNORECASE)


def _instagram_media_type(url: str) -> str:
    if re.search(r"/tv/", url, re.IGNORECASE):
        return "video"
    return "mixed"


def _facebook_media_type(url: str) -> str:
    if re.search(r"watch|video", url, re.IGNORECASE):
        return "video"
    if re.search(r"photo", url, re.IGNORECASE):
        return "image"
    return "mixed"


def detect_platform(url: Optional[str]) -> Detection:
    if not url or not isinstance(url, str):
        return Detection(platform=None, is_valid=False, error="Invalid URL")

    lowered = url.strip().lower()

    if "instagram.com" in lowered or "instagr.am" in lowered:
        return Detection(Platform.INSTAGRAM, True, _instagram_media_type(url))
    if "tiktok.com" in lowered:
        return Detection(Platform.TIKTOK, bool(_TIKTOK_VALID_RE.search(url)), "video")
    if "youtube.com" in lowered or "youtu.be" in lowered:
        return Detection(Platform.YOUTUBE, True, "video")
    if "twitter.com" in lowered or re.search(r"(^|[/.])x\.com", lowered):
        return Detection(Platform.TWITTER, True, "mixed")
    if "facebook.com" in lowered or "fb.watch" in lowered:
        return Detection(Platform.FACEBOOK, True, _facebook_media_type(url))
    if "pinterest.com" in lowered or "pin.it" in lowered:
        return Detection(Platform.PINTEREST, True, "image")

    return Detection(platform=None, is_valid=False, error="Unsupported platform")


_DEFAULT_OPTIONS = PlatformOptions()

_PLATFORM_OPTIONS: Dict[Platform, PlatformOptions] = {
    Platform.INSTAGRAM: PlatformOptions(
        socket_timeout=45,
        retries=5,
        fragment_retries=10,
        skip_unavailable_fragments=True,
        headers={
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": "https://www.instagram.com/",
        },
        defended=True,
    ),
    Platform.TIKTOK: PlatformOptions(socket_timeout=40, retries=5, fragment_retries=10),
    Platform.YOUTUBE: PlatformOptions(socket_timeout=30, retries=3),
    Platform.TWITTER: PlatformOptions(socket_timeout=35, retries=4),
    Platform.FACEBOOK: PlatformOptions(socket_timeout=35, retries=4),
    Platform.PINTEREST: _DEFAULT_OPTIONS,
}


def platform_options(platform: Optional[Platform], settings: Settings) -> PlatformOptions:
    """Look up the option table; anything unrecognized gets the safe defaults."""
    if platform is None or platform not in _PLATFORM_OPTIONS:
        base = _DEFAULT_OPTIONS
        timeout = settings.download_timeout
    else:
        base = _PLATFORM_OPTIONS[platform]
        timeout = settings.platform_timeout(platform.value)
    return replace(base, fetch_timeout=timeout, probe_timeout=settings.probe_timeout)
