from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from snapfetch.platforms import PlatformOptions


LineCallback = Callable[[str], None]
StopCheck = Callable[[], bool]


class ExternalFetcher(ABC):
    """Seam around the external extraction/download program."""

    @abstractmethod
    def probe(self, url: str, options: PlatformOptions) -> Dict[str, Any]:
        """Return the raw structured metadata for ``url``."""

    @abstractmethod
    def fetch(
        self,
        url: str,
        format_id: str,
        output_dir: Path,
        options: PlatformOptions,
        on_line: Optional[LineCallback] = None,
        should_stop: Optional[StopCheck] = None,
    ) -> Path:
        """Download into ``output_dir`` and return the produced file."""
