"""Normalization of the external tool's probe output.

Turns the raw ``--dump-json`` document into format descriptors with a usable
byte size, picks a thumbnail and estimates how large a requested download is
going to be before anything is fetched.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

BYTES_PER_MB = 1_000_000

# Fallbacks used when no format carries a size.
DEFAULT_BITRATE_KBPS = 2500
DEFAULT_ESTIMATE_MB = 25.0

# (minimum height, kbps), checked top to bottom.
BITRATE_TIERS_KBPS = (
    (2160, 20000),
    (1440, 10000),
    (1080, 5000),
    (720, 2500),
    (480, 1000),
    (360, 750),
    (1, 400),
)
AUDIO_ONLY_KBPS = 128


@dataclass
class FormatDescriptor:
    format_id: str
    extension: str
    resolution: str
    height: Optional[int] = None
    fps: Optional[float] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    filesize: int = 0
    estimated: bool = False

    @property
    def has_video(self) -> bool:
        return self.vcodec != "none" and (self.vcodec is not None or bool(self.height))

    @property
    def filesize_mb(self) -> float:
        return round(self.filesize / BYTES_PER_MB, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formatId": self.format_id,
            "extension": self.extension,
            "resolution": self.resolution,
            "fps": self.fps,
            "vcodec": self.vcodec,
            "acodec": self.acodec,
            "filesize": self.filesize,
            "filesizeMB": self.filesize_mb,
            "estimated": self.estimated,
        }


@dataclass
class SizeEstimate:
    estimated_bytes: int
    estimated_mb: float
    can_download: bool
    max_allowed_mb: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estimatedSizeBytes": self.estimated_bytes,
            "estimatedSizeMB": round(self.estimated_mb, 2),
            "canDownload": self.can_download,
            "maxAllowedMB": self.max_allowed_mb,
        }


def bitrate_for_height(height: Optional[int], has_video: bool = True) -> int:
    if not has_video:
        return AUDIO_ONLY_KBPS
    if not height:
        return DEFAULT_BITRATE_KBPS
    for min_height, kbps in BITRATE_TIERS_KBPS:
        if height >= min_height:
            return kbps
    return DEFAULT_BITRATE_KBPS


def estimate_bytes(duration: float, kbps: int) -> int:
    """Duration in seconds times a kilobit rate, as bytes."""
    return int(duration * kbps * 1000 / 8)


def _as_int(value: Any) -> Optional[int]:
    try:
        if value is None:
            return None
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _height_from(fmt: Dict[str, Any]) -> Optional[int]:
    height = _as_int(fmt.get("height"))
    if height:
        return height
    resolution = str(fmt.get("resolution") or "")
    if "x" in resolution:
        return _as_int(resolution.split("x", 1)[1])
    return None


def _resolution_label(fmt: Dict[str, Any], height: Optional[int], has_video: bool) -> str:
    if height:
        return f"{height}p"
    if not has_video and fmt.get("acodec") not in (None, "none"):
        return "audio only"
    return str(fmt.get("format_note") or fmt.get("format") or "unknown")


def normalize_formats(info: Dict[str, Any]) -> List[FormatDescriptor]:
    """Canonical format list, best first (descending height, then size)."""
    raw_formats = info.get("formats")
    if not isinstance(raw_formats, list):
        return []

    duration = _as_float(info.get("duration")) or 0.0
    formats: List[FormatDescriptor] = []
    for fmt in raw_formats:
        if not isinstance(fmt, dict):
            continue
        if not (fmt.get("ext") or fmt.get("format_id")):
            continue

        height = _height_from(fmt)
        descriptor = FormatDescriptor(
            format_id=str(fmt.get("format_id") or fmt.get("ext") or "unknown"),
            extension=str(fmt.get("ext") or "mp4"),
            resolution="",
            height=height,
            fps=_as_float(fmt.get("fps")),
            vcodec=fmt.get("vcodec"),
            acodec=fmt.get("acodec"),
        )
        descriptor.resolution = _resolution_label(fmt, height, descriptor.has_video)

        size = _as_int(fmt.get("filesize")) or _as_int(fmt.get("filesize_approx")) or 0
        if size <= 0 and duration > 0:
            size = estimate_bytes(duration, bitrate_for_height(height, descriptor.has_video))
            descriptor.estimated = True
        descriptor.filesize = max(size, 0)
        formats.append(descriptor)

    formats.sort(key=lambda f: (f.height or 0, f.filesize), reverse=True)
    return formats


def select_thumbnail(info: Dict[str, Any]) -> Optional[str]:
    """Prefer the largest entry of ``thumbnails``, else the single ``thumbnail``."""
    thumbs = info.get("thumbnails")
    if isinstance(thumbs, list) and thumbs:
        best = None
        best_area = -1
        for thumb in thumbs:
            if not isinstance(thumb, dict) or not thumb.get("url"):
                continue
            area = (_as_int(thumb.get("width")) or 0) * (_as_int(thumb.get("height")) or 0)
            if area >= best_area:
                best_area = area
                best = thumb["url"]
        if best:
            return str(best)

    if info.get("thumbnail"):
        return str(info["thumbnail"])
    return None


def _pick_format(formats: List[FormatDescriptor], format_id: str) -> Optional[FormatDescriptor]:
    if format_id and format_id != "best":
        for fmt in formats:
            if fmt.format_id == format_id:
                return fmt
    video = [f for f in formats if f.has_video]
    if video:
        return video[0]
    return formats[0] if formats else None


def estimate_size(
    formats: List[FormatDescriptor], duration: float, format_id: str, max_mb: float
) -> SizeEstimate:
    selected = _pick_format(formats, format_id)
    size = selected.filesize if selected else 0
    if size <= 0 and duration and duration > 0:
        size = estimate_bytes(duration, DEFAULT_BITRATE_KBPS)
    size_mb = size / BYTES_PER_MB if size > 0 else DEFAULT_ESTIMATE_MB
    if size <= 0:
        size = int(DEFAULT_ESTIMATE_MB * BYTES_PER_MB)
    return SizeEstimate(
        estimated_bytes=size,
        estimated_mb=size_mb,
        can_download=size_mb <= max_mb,
        max_allowed_mb=max_mb,
    )
