import time

from snapfetch.utils.jobs import JobState, Priority


URL = "https://www.tiktok.com/@u/video/123"


def test_create_counts_as_waiting(store):
    assert store.stats()["waiting"] == 0
    job = store.create(URL, priority=Priority.HIGH)
    stats = store.stats()
    assert stats["waiting"] == 1
    assert stats["paused"] == 0
    assert store.get(job.id).priority == Priority.HIGH


def test_priority_weights():
    assert [p.weight for p in (Priority.HIGH, Priority.NORMAL, Priority.LOW)] == [1, 5, 10]


def test_claim_is_exclusive(store):
    job = store.create(URL)
    owner = store.claim(job.id, 600)
    assert owner
    assert store.claim(job.id, 600) is None
    assert store.get(job.id).state == JobState.ACTIVE
    assert store.stats()["active"] == 1
    assert store.stats()["waiting"] == 0


def test_progress_is_clamped_and_never_decreases(store):
    job = store.create(URL)
    owner = store.claim(job.id, 600)
    seen = []
    for value in (10, 30, 20, 150, -5):
        store.set_progress(job.id, owner, value)
        seen.append(store.get(job.id).progress)
    assert seen == [10, 30, 30, 100, 100]


def test_progress_ignored_for_other_owners(store):
    job = store.create(URL)
    store.claim(job.id, 600)
    store.set_progress(job.id, "someone-else", 50)
    assert store.get(job.id).progress == 0


def test_retryable_failures_back_off_then_fail_terminally(store):
    job = store.create(URL, max_attempts=3)

    delays = []
    for _ in range(2):
        owner = store.claim(job.id, 600)
        store.set_progress(job.id, owner, 50)
        outcome = store.record_failure(job.id, owner, "tool exited", retryable=True, backoff_base=5.0)
        assert outcome.state == JobState.DELAYED
        delays.append(outcome.delay)
        current = store.get(job.id)
        assert current.progress == 50
        assert store.stats()["delayed"] == 1

    owner = store.claim(job.id, 600)
    outcome = store.record_failure(job.id, owner, "tool exited again", retryable=True, backoff_base=5.0)

    assert delays == [5.0, 10.0]
    assert outcome.state == JobState.FAILED
    failed = store.get(job.id)
    assert failed.attempts == failed.max_attempts == 3
    assert failed.failed_reason == "tool exited again"
    assert store.claim(job.id, 600) is None
    assert store.stats()["failed"] == 1


def test_non_retryable_failure_is_terminal_at_once(store):
    job = store.create(URL, max_attempts=3)
    owner = store.claim(job.id, 600)
    outcome = store.record_failure(job.id, owner, "File too large", retryable=False)
    assert outcome.state == JobState.FAILED
    assert outcome.attempts == 1


def test_failure_reason_is_truncated(store):
    job = store.create(URL, max_attempts=1)
    owner = store.claim(job.id, 600)
    store.record_failure(job.id, owner, "x" * 5000)
    assert len(store.get(job.id).failed_reason) == 1000


def test_cancel_removes_job_and_blocks_pending_retry(store):
    job = store.create(URL)
    owner = store.claim(job.id, 600)
    assert store.cancel(job.id) is True

    assert store.get(job.id) is None
    assert store.is_cancelled(job.id)
    assert store.record_failure(job.id, owner, "late failure") is None
    assert store.claim(job.id, 600) is None
    assert store.stats()["active"] == 0
    assert store.cancel(job.id) is False


def test_complete_keeps_result_for_retention_period(store, redis_client):
    job = store.create(URL)
    owner = store.claim(job.id, 600)
    assert store.complete(job.id, owner, {"file": "a.mp4"}, retention_seconds=60)

    done = store.get(job.id)
    assert done.state == JobState.COMPLETED
    assert done.progress == 100
    assert done.result == {"file": "a.mp4"}
    assert 0 < redis_client.ttl(f"snapfetch:job:{job.id}") <= 60
    assert store.stats()["completed"] == 1
    assert store.stats()["active"] == 0


def test_complete_without_retention_evicts(store):
    job = store.create(URL)
    owner = store.claim(job.id, 600)
    assert store.complete(job.id, owner, {"file": "a.mp4"})
    assert store.get(job.id) is None
    assert store.stats()["completed"] == 1


def test_complete_requires_ownership(store):
    job = store.create(URL)
    store.claim(job.id, 600)
    assert store.complete(job.id, "stale-owner", {}) is False
    assert store.get(job.id).state == JobState.ACTIVE


def test_expired_lease_is_requeued_then_failed(store):
    job = store.create(URL)
    store.claim(job.id, 0)
    later = time.time() + 5

    requeued, failed = store.requeue_stalled(max_stalled=1, now=later)
    assert [j.id for j in requeued] == [job.id]
    assert failed == []
    assert store.get(job.id).state == JobState.QUEUED

    store.claim(job.id, 0)
    requeued, failed = store.requeue_stalled(max_stalled=1, now=later + 5)
    assert requeued == []
    assert failed == [job.id]
    assert store.get(job.id).state == JobState.FAILED


def test_live_lease_is_left_alone(store):
    job = store.create(URL)
    owner = store.claim(job.id, 600)
    assert store.touch(job.id, owner, 600)
    assert store.requeue_stalled(max_stalled=1) == ([], [])
    assert store.get(job.id).state == JobState.ACTIVE


def test_status_reads_do_not_mutate(store):
    job = store.create(URL)
    first = store.get(job.id).to_view()
    second = store.get(job.id).to_view()
    assert first == second
    assert first["maxAttempts"] == 3
    assert first["state"] == "queued"


def test_logs_are_capped(store):
    job = store.create(URL)
    for i in range(510):
        store.append_log(job.id, f"line {i}")
    logs = store.get_logs(job.id)
    assert len(logs) == 500
    assert logs[-1] == "line 509"


def _cancel_after_read(store, monkeypatch, job_id, command):
    """Cancel ``job_id`` right after the first ``command`` read issued under WATCH."""
    make_pipeline = store._redis.pipeline

    def pipeline(*args, **kwargs):
        pipe = make_pipeline(*args, **kwargs)
        read = getattr(pipe, command)
        fired = []

        def read_then_cancel(*read_args, **read_kwargs):
            value = read(*read_args, **read_kwargs)
            if pipe.watching and not fired:
                fired.append(True)
                store.cancel(job_id)
            return value

        setattr(pipe, command, read_then_cancel)
        return pipe

    monkeypatch.setattr(store._redis, "pipeline", pipeline)


def _assert_fully_gone(store, redis_client, job_id):
    assert store.get(job_id) is None
    assert not redis_client.exists(f"snapfetch:job:{job_id}")
    assert not redis_client.exists(f"snapfetch:job:{job_id}:logs")
    stats = store.stats()
    assert stats["failed"] == stats["delayed"] == stats["active"] == 0


def test_failure_racing_a_cancel_leaves_no_trace(store, redis_client, monkeypatch):
    job = store.create(URL)
    owner = store.claim(job.id, 600)
    _cancel_after_read(store, monkeypatch, job.id, "hgetall")

    assert store.record_failure(job.id, owner, "tool exited") is None
    _assert_fully_gone(store, redis_client, job.id)


def test_lease_extension_racing_a_cancel_reports_lost_ownership(store, redis_client, monkeypatch):
    job = store.create(URL)
    owner = store.claim(job.id, 600)
    _cancel_after_read(store, monkeypatch, job.id, "hget")

    assert store.touch(job.id, owner, 600) is False
    _assert_fully_gone(store, redis_client, job.id)


def test_progress_racing_a_cancel_does_not_recreate_the_job(store, redis_client, monkeypatch):
    job = store.create(URL)
    owner = store.claim(job.id, 600)
    _cancel_after_read(store, monkeypatch, job.id, "hmget")

    store.set_progress(job.id, owner, 50)
    _assert_fully_gone(store, redis_client, job.id)


def test_log_line_racing_a_cancel_is_dropped(store, redis_client, monkeypatch):
    job = store.create(URL)
    _cancel_after_read(store, monkeypatch, job.id, "exists")

    store.append_log(job.id, "late line")
    _assert_fully_gone(store, redis_client, job.id)


def test_touch_after_cancel_is_refused(store):
    job = store.create(URL)
    owner = store.claim(job.id, 600)
    store.cancel(job.id)
    assert store.touch(job.id, owner, 600) is False
