import pytest

from snapfetch.utils.formats import estimate_size, normalize_formats, select_thumbnail


def test_missing_size_is_estimated_from_duration_and_height():
    info = {"duration": 120, "formats": [{"format_id": "22", "ext": "mp4", "height": 720, "vcodec": "avc1"}]}
    formats = normalize_formats(info)
    assert formats[0].filesize == 37_500_000
    assert formats[0].estimated is True

    estimate = estimate_size(formats, 120, "best", 500)
    assert estimate.estimated_mb == pytest.approx(37.5)
    assert estimate.can_download is True
    assert estimate.to_dict()["maxAllowedMB"] == 500


def test_formats_sorted_best_first():
    info = {
        "duration": 10,
        "formats": [
            {"format_id": "a", "ext": "mp4", "height": 360, "filesize": 100},
            {"format_id": "b", "ext": "mp4", "height": 1080, "filesize": 900},
            {"format_id": "c", "ext": "webm", "height": 1080, "filesize": 1200},
            {"format_id": "d", "ext": "m4a", "vcodec": "none", "acodec": "mp4a", "filesize": 50},
        ],
    }
    assert [f.format_id for f in normalize_formats(info)] == ["c", "b", "a", "d"]


def test_resolution_labels():
    info = {
        "formats": [
            {"format_id": "v", "ext": "mp4", "resolution": "1280x720"},
            {"format_id": "a", "ext": "m4a", "vcodec": "none", "acodec": "opus"},
        ]
    }
    labels = {f.format_id: f.resolution for f in normalize_formats(info)}
    assert labels == {"v": "720p", "a": "audio only"}


def test_explicit_format_over_limit():
    info = {"duration": 600, "formats": [{"format_id": "4k", "ext": "mp4", "height": 2160, "vcodec": "vp9"}]}
    estimate = estimate_size(normalize_formats(info), 600, "4k", 500)
    assert estimate.estimated_mb == pytest.approx(1500.0)
    assert estimate.can_download is False


def test_unknown_everything_falls_back_to_default_estimate():
    estimate = estimate_size([], 0, "best", 500)
    assert estimate.estimated_mb == 25.0
    assert estimate.estimated_bytes == 25_000_000


def test_thumbnail_prefers_largest_entry():
    info = {
        "thumbnail": "https://img/single.jpg",
        "thumbnails": [
            {"url": "https://img/s.jpg", "width": 100, "height": 100},
            {"url": "https://img/l.jpg", "width": 1920, "height": 1080},
            {"url": "https://img/m.jpg", "width": 640, "height": 360},
        ],
    }
    assert select_thumbnail(info) == "https://img/l.jpg"
    assert select_thumbnail({"thumbnail": "https://img/single.jpg"}) == "https://img/single.jpg"
    assert select_thumbnail({}) is None
