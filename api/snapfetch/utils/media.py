import json
import os
import re
import signal
import subprocess
import tempfile
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional

from snapfetch.errors import ExternalToolError, FetchCancelledError, ToolTimeoutError
from snapfetch.platforms import PlatformOptions
from snapfetch.utils.logging import get_logger


logger = get_logger(__name__)

# Caps on captured process output.
MAX_PROBE_OUTPUT_BYTES = 20 * 1024 * 1024
MAX_ERROR_CHARS = 2000
STDERR_TAIL_LINES = 50

# Keeps separate DASH video/audio from collapsing to an audio-only "best".
MERGED_VIDEO_FORMAT = "bestvideo+bestaudio/best[vcodec!=none]"
MERGE_CONTAINER = "mp4"
OUTPUT_TEMPLATE = "%(title)s.%(ext)s"

TERMINATE_GRACE_SECONDS = 5.0
WATCH_INTERVAL_SECONDS = 0.5


def _common_args(options: PlatformOptions) -> List[str]:
    args = [
        "--no-warnings",
        "--no-playlist",
        "--socket-timeout",
        str(options.socket_timeout),
        "--user-agent",
        options.user_agent,
        "--no-check-certificate",
    ]
    if options.retries > 1:
        args += ["--retries", str(options.retries)]
    if options.fragment_retries > 1:
        args += ["--fragment-retries", str(options.fragment_retries)]
    if options.skip_unavailable_fragments:
        args.append("--skip-unavailable-fragments")
    for name, value in options.headers.items():
        args += ["--add-header", f"{name}:{value}"]
    return args


def build_probe_command(binary: str, url: str, options: PlatformOptions) -> List[str]:
    return [binary, "--dump-json", *_common_args(options), url]


def build_fetch_command(
    binary: str, url: str, format_id: str, output_dir: Path, options: PlatformOptions
) -> List[str]:
    if options.defended:
        selector = MERGED_VIDEO_FORMAT
    else:
        selector = format_id or "best"
    cmd: List[str] = [binary, "-f", selector]
    if options.defended:
        cmd += ["--merge-output-format", MERGE_CONTAINER]
    cmd += _common_args(options)
    cmd += [
        "--restrict-filenames",
        "--no-mtime",
        "--trim-filenames",
        "150",
        "-o",
        str(output_dir / OUTPUT_TEMPLATE),
        "--progress",
        "--newline",
        url,
    ]
    return cmd


def _truncate(text: str, limit: int = MAX_ERROR_CHARS) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[-limit:]


def terminate_process(proc: subprocess.Popen) -> None:
    """SIGTERM the process group, escalating to SIGKILL after a grace period."""
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError, OSError):
        proc.terminate()
    try:
        proc.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError, OSError):
            proc.kill()
        proc.wait()


def run_json_command(cmd: List[str], timeout: float, max_bytes: int = MAX_PROBE_OUTPUT_BYTES) -> dict:
    """Run a command that prints one JSON document and parse it.

    Output is spooled to temporary files so a runaway process cannot grow the
    worker's memory; anything beyond ``max_bytes`` is rejected.
    """
    logger.info("run_cmd %s", " ".join(cmd))
    with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
        try:
            proc = subprocess.Popen(cmd, stdout=out, stderr=err, start_new_session=True)
        except OSError as exc:
            raise ExternalToolError(f"Failed to spawn {cmd[0]}: {exc}") from exc
        try:
            returncode = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            terminate_process(proc)
            raise ToolTimeoutError(f"Metadata extraction timed out after {timeout:g}s")

        err.seek(0)
        stderr = err.read(MAX_ERROR_CHARS * 4).decode("utf-8", errors="replace")
        if returncode != 0:
            raise ExternalToolError(f"{Path(cmd[0]).name} exited with code {returncode}: {_truncate(stderr)}")

        size = out.seek(0, os.SEEK_END)
        if size > max_bytes:
            raise ExternalToolError(f"Tool output exceeded {max_bytes} bytes")
        out.seek(0)
        raw = out.read().decode("utf-8", errors="replace").strip()

    if not raw:
        raise ExternalToolError(f"No metadata returned: {_truncate(stderr) or 'empty output'}")
    # --dump-json prints one document per line; the first one describes the URL.
    first = raw.splitlines()[0]
    try:
        data = json.loads(first)
    except json.JSONDecodeError as exc:
        raise ExternalToolError(f"Could not parse tool output: {exc}") from exc
    if not isinstance(data, dict):
        raise ExternalToolError("Unexpected tool output shape")
    return data


def run_streaming_command(
    cmd: List[str],
    timeout: float,
    on_line: Optional[Callable[[str], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> None:
    """Run a long command, forwarding stdout lines as they arrive.

    The process is killed when the wall clock expires (``ToolTimeoutError``)
    or when ``should_stop`` returns true (``FetchCancelledError``).
    """
    logger.info("run_cmd %s", " ".join(cmd))
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
            errors="replace",
            start_new_session=True,
        )
    except OSError as exc:
        raise ExternalToolError(f"Failed to spawn {cmd[0]}: {exc}") from exc

    stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
    timed_out = threading.Event()
    stopped = threading.Event()
    finished = threading.Event()

    def drain_stderr() -> None:
        assert proc.stderr is not None
        for raw in iter(proc.stderr.readline, ""):
            stderr_tail.append(raw.rstrip("\n"))

    def watch() -> None:
        deadline = time.monotonic() + timeout
        while not finished.wait(WATCH_INTERVAL_SECONDS):
            if proc.poll() is not None:
                return
            if time.monotonic() >= deadline:
                timed_out.set()
                terminate_process(proc)
                return
            if should_stop is not None and should_stop():
                stopped.set()
                terminate_process(proc)
                return

    t_err = threading.Thread(target=drain_stderr, daemon=True)
    t_watch = threading.Thread(target=watch, daemon=True)
    t_err.start()
    t_watch.start()

    try:
        assert proc.stdout is not None
        for raw in iter(proc.stdout.readline, ""):
            if on_line is not None:
                on_line(raw.rstrip("\n"))
        returncode = proc.wait()
    except BaseException:
        terminate_process(proc)
        raise
    finally:
        finished.set()
        t_watch.join(timeout=TERMINATE_GRACE_SECONDS + 1)
        t_err.join(timeout=1)

    if timed_out.is_set():
        raise ToolTimeoutError(f"Download timeout exceeded ({timeout:g}s)")
    if stopped.is_set():
        raise FetchCancelledError()
    if returncode != 0:
        detail = _truncate("\n".join(stderr_tail))
        message = f"{Path(cmd[0]).name} exited with code {returncode}"
        raise ExternalToolError(f"{message}: {detail}" if detail else message)


_IGNORED_SUFFIXES = (".part", ".ytdl", ".temp", ".tmp")
_FRAGMENT_RE = re.compile(r"\.f\d+\.[^.]+$|\.part-Frag\d+")


def find_output_file(output_dir: Path) -> Optional[Path]:
    """The finished file in a per-invocation output directory."""
    candidates = []
    for entry in output_dir.iterdir():
        if not entry.is_file():
            continue
        name = entry.name
        if name.endswith(_IGNORED_SUFFIXES) or _FRAGMENT_RE.search(name):
            continue
        candidates.append(entry)
    if not candidates:
        return None
    # Only one invocation writes here, so the newest entry is unambiguous.
    return max(candidates, key=lambda p: p.stat().st_mtime)
