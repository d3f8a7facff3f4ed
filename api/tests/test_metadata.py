import pytest
import requests

from conftest import FakeFetcher
from snapfetch.errors import DownloadabilityError, ExternalToolError, PlatformBlockedError, UnsupportedPlatformError
from snapfetch.metadata import MetadataService


INSTAGRAM_URL = "https://www.instagram.com/reel/abc/"


class _Response:
    def __init__(self, status_code):
        self.status_code = status_code


class StrategyFetcher(FakeFetcher):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.seen = []

    def probe(self, url, options):
        self.seen.append(options)
        if len(self.seen) <= self.failures:
            raise ExternalToolError("login required")
        return super().probe(url, options)


def _service(fetcher, settings, status=200, sleeps=None):
    return MetadataService(
        fetcher,
        settings,
        http_get=lambda url, headers, timeout: _Response(status),
        sleep=(sleeps.append if sleeps is not None else (lambda _s: None)),
    )


def test_unreachable_defended_platform_fails_fast(settings):
    fetcher = StrategyFetcher(failures=0)
    with pytest.raises(PlatformBlockedError):
        _service(fetcher, settings, status=429).extract(INSTAGRAM_URL)
    assert fetcher.seen == []


def test_network_error_counts_as_unreachable(settings):
    def broken_get(url, headers, timeout):
        raise requests.ConnectionError("reset")

    service = MetadataService(StrategyFetcher(failures=0), settings, http_get=broken_get)
    assert service.is_reachable(INSTAGRAM_URL) is False


def test_strategies_tried_in_order_until_one_works(settings):
    fetcher = StrategyFetcher(failures=2)
    sleeps = []
    metadata = _service(fetcher, settings, sleeps=sleeps).extract(INSTAGRAM_URL)

    assert metadata.platform.value == "instagram"
    assert sleeps == [2.0, 4.0]
    baseline, fragments, retries = fetcher.seen
    assert baseline.retries == 0 and baseline.fragment_retries == 0
    assert fragments.fragment_retries == 10 and fragments.skip_unavailable_fragments
    assert retries.retries == 5
    assert baseline.probe_timeout >= 90


def test_all_strategies_failing_mentions_blocking(settings):
    fetcher = StrategyFetcher(failures=3)
    with pytest.raises(DownloadabilityError, match="rate-limited this IP or requires authentication"):
        _service(fetcher, settings).extract(INSTAGRAM_URL)
    assert len(fetcher.seen) == 3


def test_ordinary_platform_retries_probe_then_reports(settings):
    fetcher = FakeFetcher(probe_error=ExternalToolError("HTTP Error 404"))
    sleeps = []
    with pytest.raises(DownloadabilityError, match="Failed to extract metadata: HTTP Error 404"):
        _service(fetcher, settings, sleeps=sleeps).extract("https://youtu.be/x")
    assert fetcher.probe_calls == 3
    assert sleeps == [3.0, 6.0]


def test_metadata_fields(settings):
    metadata = _service(FakeFetcher(), settings).extract("https://youtu.be/x")
    data = metadata.to_dict()
    assert data["title"] == "Sample clip"
    assert data["thumbnail"] == "https://img/large.jpg"
    assert data["views"] == 42
    assert data["formats"][0]["formatId"] == "22"


def test_check_reports_instead_of_raising(settings):
    service = _service(FakeFetcher(probe_error=ExternalToolError("private video")), settings)
    assert service.check("https://example.com/x") == {
        "canDownload": False,
        "platform": None,
        "reason": "Invalid URL format for platform",
    }
    result = service.check("https://youtu.be/x")
    assert result["canDownload"] is False
    assert "private video" in result["reason"]


def test_unsupported_url(settings):
    with pytest.raises(UnsupportedPlatformError):
        _service(FakeFetcher(), settings).extract("https://example.com/x")
