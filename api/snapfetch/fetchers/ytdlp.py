from pathlib import Path
from typing import Any, Dict, Optional

from snapfetch.errors import ExternalToolError
from snapfetch.fetchers.base import ExternalFetcher, LineCallback, StopCheck
from snapfetch.platforms import PlatformOptions
from snapfetch.utils.media import (
    build_fetch_command,
    build_probe_command,
    find_output_file,
    run_json_command,
    run_streaming_command,
)


class YtDlpFetcher(ExternalFetcher):
    def __init__(self, binary: str = "yt-dlp") -> None:
        self.binary = binary

    def probe(self, url: str, options: PlatformOptions) -> Dict[str, Any]:
        cmd = build_probe_command(self.binary, url, options)
        return run_json_command(cmd, timeout=options.probe_timeout)

    def fetch(
        self,
        url: str,
        format_id: str,
        output_dir: Path,
        options: PlatformOptions,
        on_line: Optional[LineCallback] = None,
        should_stop: Optional[StopCheck] = None,
    ) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        cmd = build_fetch_command(self.binary, url, format_id, output_dir, options)
        run_streaming_command(cmd, timeout=options.fetch_timeout, on_line=on_line, should_stop=should_stop)
        produced = find_output_file(output_dir)
        if produced is None:
            raise ExternalToolError("File not found after download")
        return produced
