import os
import threading
import time

import pytest

from snapfetch.errors import NotFoundError, RequestValidationFailed
from snapfetch.utils.storage import StagingStore, safe_filename


def _age(path, seconds):
    past = time.time() - seconds
    os.utime(path, (past, past))


@pytest.mark.parametrize("name", ["../../etc/passwd", "a/b", "a\\b", "..", "", ".env"])
def test_unsafe_names_rejected_without_touching_disk(tmp_path, name):
    # the root does not exist; a filesystem lookup would raise NotFound instead
    store = StagingStore(tmp_path / "missing")
    with pytest.raises(RequestValidationFailed):
        store.get(name)
    with pytest.raises(RequestValidationFailed):
        store.delete(name)
    assert not (tmp_path / "missing").exists()


def test_get_unknown_file(staging):
    with pytest.raises(NotFoundError):
        staging.get("nope.mp4")


def test_list_skips_hidden_entries_and_sorts_newest_first(staging):
    old = staging.root / "old.mp4"
    new = staging.root / "new.mp4"
    old.write_bytes(b"1" * 10)
    new.write_bytes(b"2" * 20)
    _age(old, 3600)
    (staging.root / ".work").mkdir()
    (staging.root / ".hidden").write_bytes(b"x")

    files = staging.list()
    assert [f["filename"] for f in files] == ["new.mp4", "old.mp4"]
    assert files[0]["fileSize"] == 20
    assert set(files[0]) == {"filename", "fileSize", "fileSizeMB", "createdAt", "modifiedAt"}


def test_cleanup_with_zero_hours_deletes_everything(staging):
    for i in range(3):
        path = staging.root / f"f{i}.mp4"
        path.write_bytes(b"x")
        _age(path, 5)
    assert staging.cleanup(0) == 3
    assert staging.list() == []


def test_cleanup_keeps_recent_files(staging):
    stale = staging.root / "stale.mp4"
    fresh = staging.root / "fresh.mp4"
    stale.write_bytes(b"x")
    fresh.write_bytes(b"x")
    _age(stale, 25 * 3600)

    assert staging.cleanup(24) == 1
    assert [f["filename"] for f in staging.list()] == ["fresh.mp4"]


def test_cleanup_sweeps_abandoned_work_dirs(staging):
    abandoned = staging.root / ".work" / "dead"
    abandoned.mkdir(parents=True)
    (abandoned / "clip.mp4.part").write_bytes(b"x")
    _age(abandoned, 48 * 3600)

    staging.cleanup(24)
    assert not abandoned.exists()


def test_work_dir_is_removed_afterwards(staging):
    with staging.work_dir(prefix="job-") as work:
        assert work.parent.name == ".work"
        (work / "partial.mp4.part").write_bytes(b"x")
    assert not work.exists()


def test_promote_deduplicates_names(staging, tmp_path):
    first = tmp_path / "My Clip.mp4"
    first.write_bytes(b"a")
    second = tmp_path / "again.mp4"
    second.write_bytes(b"b")

    staged = staging.promote(first)
    again = staging.promote(second, preferred_name="My Clip")
    assert staged.name == "My Clip.mp4"
    assert again.name == "My Clip (1).mp4"
    assert again.read_bytes() == b"b"


def test_safe_filename_strips_separators():
    assert "/" not in safe_filename("a/../b")
    assert safe_filename("...") == "download"


def test_cleanup_leaves_work_dirs_in_use(staging):
    with staging.work_dir(prefix="job-") as work:
        (work / "clip.mp4.part").write_bytes(b"x")
        _age(work, 5)
        staging.cleanup(0)
        assert work.exists()
        assert (work / "clip.mp4.part").exists()
    assert not work.exists()
    assert list((staging.root / ".work").iterdir()) == []


def test_cleanup_reclaims_work_dirs_of_dead_processes(staging):
    held = staging.root / ".work" / "crashed"
    held.mkdir(parents=True)
    marker = staging.root / ".work" / "crashed.active"
    marker.touch()
    _age(held, 48 * 3600)

    staging.cleanup(0)
    assert not held.exists()
    assert not marker.exists()


def test_concurrent_promotions_never_share_a_name(staging, tmp_path):
    workers = 8
    barrier = threading.Barrier(workers)
    staged = []
    errors = []

    def promote(index):
        produced = tmp_path / f"in{index}" / "Sample clip.mp4"
        produced.parent.mkdir()
        produced.write_bytes(str(index).encode())
        barrier.wait()
        try:
            staged.append((index, staging.promote(produced)))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=promote, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    names = [path.name for _index, path in staged]
    assert len(set(names)) == workers
    assert "Sample clip.mp4" in names
    for index, path in staged:
        assert path.read_bytes() == str(index).encode()


def test_promote_skips_a_name_reserved_by_another_promotion(staging, tmp_path):
    # an empty placeholder is what a promotion in progress leaves behind
    (staging.root / "clip.mp4").touch()
    produced = tmp_path / "clip.mp4"
    produced.write_bytes(b"data")

    staged = staging.promote(produced)
    assert staged.name == "clip (1).mp4"
    assert (staging.root / "clip.mp4").read_bytes() == b""
