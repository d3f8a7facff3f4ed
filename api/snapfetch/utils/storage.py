import os
import re
import shutil
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from snapfetch.errors import NotFoundError, RequestValidationFailed
from snapfetch.utils.formats import BYTES_PER_MB
from snapfetch.utils.logging import get_logger


logger = get_logger(__name__)

WORK_DIR_NAME = ".work"
# Sibling marker held while a work dir is in use.
ACTIVE_SUFFIX = ".active"
# Held work dirs older than this belong to a process that died mid-fetch.
ABANDONED_WORK_DIR_HOURS = 24.0
_UNSAFE_CHARS_RE = re.compile(r"[^\w.\- ()\[\]]+", re.UNICODE)


def validate_filename(filename: Optional[str]) -> str:
    """Reject names that could leave the staging directory. Never touches the filesystem."""
    if not filename or not filename.strip():
        raise RequestValidationFailed("Invalid filename")
    if ".." in filename or "/" in filename or "\\" in filename or "\x00" in filename:
        raise RequestValidationFailed("Invalid filename")
    if filename.startswith("."):
        raise RequestValidationFailed("Invalid filename")
    return filename


def safe_filename(name: str, fallback: str = "download") -> str:
    """Reduce a title-derived name to something safe to serve."""
    base = name.replace("/", "_").replace("\\", "_").replace("\x00", "")
    cleaned = _UNSAFE_CHARS_RE.sub("_", base).strip(" .")
    cleaned = re.sub(r"\.{2,}", ".", cleaned)
    return cleaned[:180] or fallback


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class StagingStore:
    """Completed files waiting for a client to pick them up."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, filename: str) -> Path:
        return self.root / validate_filename(filename)

    def get(self, filename: str) -> Path:
        path = self.path_for(filename)
        if not path.is_file():
            raise NotFoundError("File not found")
        return path

    def describe(self, path: Path) -> Dict[str, Any]:
        stats = path.stat()
        return {
            "filename": path.name,
            "fileSize": stats.st_size,
            "fileSizeMB": round(stats.st_size / BYTES_PER_MB, 2),
            "createdAt": _iso(getattr(stats, "st_birthtime", stats.st_ctime)),
            "modifiedAt": _iso(stats.st_mtime),
        }

    def list(self) -> List[Dict[str, Any]]:
        if not self.root.exists():
            return []
        entries = []
        for entry in self.root.iterdir():
            if entry.name.startswith(".") or not entry.is_file():
                continue
            try:
                entries.append((entry.stat().st_mtime, self.describe(entry)))
            except FileNotFoundError:
                # removed between listing and stat
                continue
        entries.sort(key=lambda item: item[0], reverse=True)
        return [described for _mtime, described in entries]

    def delete(self, filename: str) -> None:
        path = self.get(filename)
        path.unlink()

    def cleanup(self, max_age_hours: float = 24.0) -> int:
        """Delete files whose mtime is older than ``max_age_hours``; best effort."""
        if not self.root.exists():
            return 0
        cutoff = time.time() - max(max_age_hours, 0) * 3600
        deleted = 0
        for entry in self.root.iterdir():
            if entry.name.startswith(".") or not entry.is_file():
                continue
            try:
                if entry.stat().st_mtime <= cutoff:
                    entry.unlink()
                    deleted += 1
            except OSError as exc:
                logger.warning("Cleanup could not remove %s: %s", entry.name, exc)
        self._sweep_work_dirs(cutoff)
        return deleted

    def _sweep_work_dirs(self, cutoff: float) -> None:
        work_root = self.root / WORK_DIR_NAME
        if not work_root.exists():
            return
        abandoned = time.time() - ABANDONED_WORK_DIR_HOURS * 3600
        for entry in work_root.iterdir():
            if entry.name.endswith(ACTIVE_SUFFIX):
                continue
            marker = work_root / f"{entry.name}{ACTIVE_SUFFIX}"
            try:
                limit = min(cutoff, abandoned) if marker.exists() else cutoff
                if entry.stat().st_mtime <= limit:
                    shutil.rmtree(entry, ignore_errors=True)
                    marker.unlink(missing_ok=True)
            except OSError:
                continue

    @contextmanager
    def work_dir(self, prefix: str = "") -> Iterator[Path]:
        """A private output directory for one tool invocation, removed afterwards.

        While the directory is in use a sibling ``<token>.active`` marker keeps
        age-based cleanup away from it.
        """
        token = f"{prefix}{uuid.uuid4().hex}"
        path = self.root / WORK_DIR_NAME / token
        marker = path.with_name(f"{token}{ACTIVE_SUFFIX}")
        path.mkdir(parents=True, exist_ok=True)
        marker.touch()
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)
            marker.unlink(missing_ok=True)

    def promote(self, produced: Path, preferred_name: Optional[str] = None) -> Path:
        """Move a finished file into the staging root under a unique safe name."""
        self.ensure()
        suffix = produced.suffix
        if preferred_name:
            stem = safe_filename(Path(preferred_name).stem if Path(preferred_name).suffix == suffix else preferred_name)
        else:
            stem = safe_filename(produced.stem)
        target = self._reserve(stem, suffix)
        try:
            # replaces the empty placeholder
            shutil.move(str(produced), str(target))
        except BaseException:
            target.unlink(missing_ok=True)
            raise
        return target

    def _reserve(self, stem: str, suffix: str) -> Path:
        """Claim a free name with O_EXCL so concurrent promotions never share one."""
        counter = 0
        while True:
            name = f"{stem}{suffix}" if counter == 0 else f"{stem} ({counter}){suffix}"
            target = self.root / name
            try:
                fd = os.open(target, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                counter += 1
                continue
            os.close(fd)
            return target
