import threading
import uuid
from datetime import timedelta

import pytest

from jobqueue import BackoffPolicy, Job, JobStatus
from jobqueue.utils import utcnow


def make_job(**overrides):
    now = utcnow()
    data = dict(
        id=uuid.uuid4().hex,
        type="EmailNotificationHandler",
        status=JobStatus.PENDING,
        priority=0,
        target_id="t",
        parameters={},
        user_id="u",
        retry_count=0,
        max_retries=3,
        queued_at=now,
        updated_at=now,
        timeout_ms=1000,
        backoff=BackoffPolicy(),
    )
    data.update(overrides)
    return Job(**data)


def test_insert_and_get(store):
    job = store.insert(make_job(parameters={"a": [1, 2]}, priority=3))
    loaded = store.get(job.id)
    assert loaded.parameters == {"a": [1, 2]}
    assert loaded.priority == 3
    assert loaded.backoff == BackoffPolicy()
    assert loaded.queued_at == job.queued_at
    assert store.get("missing") is None


def test_eligible_order(store):
    base = utcnow() - timedelta(minutes=1)
    low = store.insert(make_job(priority=1, queued_at=base))
    first = store.insert(make_job(priority=50, queued_at=base + timedelta(seconds=1)))
    second = store.insert(make_job(priority=50, queued_at=base + timedelta(seconds=2)))
    assert [j.id for j in store.fetch_eligible(10)] == [first.id, second.id, low.id]
    assert [j.id for j in store.fetch_eligible(1)] == [first.id]
    assert store.fetch_eligible(0) == []


def test_same_timestamp_keeps_insert_order(store):
    ts = utcnow() - timedelta(seconds=5)
    ids = [store.insert(make_job(queued_at=ts)).id for _ in range(5)]
    assert [j.id for j in store.fetch_eligible(10)] == ids


def test_future_retry_is_not_eligible(store):
    job = store.insert(make_job(next_retry_at=utcnow() + timedelta(minutes=5)))
    assert store.fetch_eligible(10) == []
    assert [j.id for j in store.fetch_eligible(10, now=utcnow() + timedelta(minutes=6))] == [job.id]


def test_claim_is_exclusive(store):
    job = store.insert(make_job())
    results = []
    barrier = threading.Barrier(8)

    def contender():
        barrier.wait()
        results.append(store.claim(job.id, uuid.uuid4().hex))

    threads = [threading.Thread(target=contender) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].status is JobStatus.RUNNING
    assert winners[0].started_at is not None
    assert store.get(job.id).claim_token == winners[0].claim_token


def test_completion_requires_matching_claim(store):
    job = store.insert(make_job())
    store.claim(job.id, "token-a")
    assert not store.mark_completed(job.id, "token-b", "x")
    assert store.mark_completed(job.id, "token-a", {"ok": 1})
    assert store.get(job.id).result == {"ok": 1}


def test_terminal_rows_are_never_changed(store):
    job = store.insert(make_job())
    store.claim(job.id, "tok")
    assert store.mark_failed(job.id, "tok", 4, "HandlerError: boom")

    assert store.claim(job.id, "tok2") is None
    assert not store.mark_completed(job.id, "tok", None)
    assert not store.mark_retry(job.id, "tok", 1, utcnow(), "again")
    assert not store.fail_pending(job.id, "Cancelled")
    final = store.get(job.id)
    assert final.status is JobStatus.FAILED
    assert final.retry_count == 4


def test_retry_returns_row_to_pending(store):
    job = store.insert(make_job())
    store.claim(job.id, "tok")
    at = utcnow() + timedelta(seconds=30)
    assert store.mark_retry(job.id, "tok", 1, at, "HandlerError: nope")
    row = store.get(job.id)
    assert row.status is JobStatus.PENDING
    assert row.retry_count == 1
    assert row.claim_token is None
    assert row.error == "HandlerError: nope"


def test_long_errors_are_truncated(store):
    job = store.insert(make_job())
    store.claim(job.id, "tok")
    store.mark_failed(job.id, "tok", 1, "x" * 5000)
    assert len(store.get(job.id).error) == 2000


def test_counts_by_status(store):
    store.insert(make_job(user_id="alice"))
    store.insert(make_job(user_id="alice"))
    running = store.insert(make_job(user_id="bob"))
    store.claim(running.id, "tok")

    stats = store.counts_by_status()
    assert (stats.pending, stats.running, stats.completed, stats.failed) == (2, 1, 0, 0)
    assert store.counts_by_status(user_id="alice").total == 2
    assert store.counts_by_status(user_id="nobody").total == 0
    assert [j.id for j in store.running_jobs()] == [running.id]


def test_list_jobs_filters(store):
    a = store.insert(make_job(user_id="alice"))
    store.insert(make_job(user_id="bob"))
    store.claim(a.id, "tok")
    assert [j.id for j in store.list_jobs(status=JobStatus.RUNNING)] == [a.id]
    assert [j.id for j in store.list_jobs(user_id="alice")] == [a.id]
    assert len(store.list_jobs(limit=1)) == 1


def test_config_table(store):
    store.config_set("max_concurrent_jobs", "8")
    store.config_set("max_concurrent_jobs", "9")
    assert store.config_get("max_concurrent_jobs") == "9"
    assert store.config_get("poll_interval_ms", "100") == "100"
    assert store.config_all() == {"max_concurrent_jobs": "9"}
    with pytest.raises(ValueError):
        store.config_set("not_a_key", "1")


def test_connections_of_finished_threads_are_closed(store):
    def enqueue_once():
        store.insert(make_job())

    for _ in range(200):
        t = threading.Thread(target=enqueue_once)
        t.start()
        t.join()

    assert store.counts_by_status().pending == 200
    # the main thread's connection plus at most the last worker's
    assert store.open_connections() <= 2


def test_dedupe_key_blocks_second_in_flight_row(store):
    first = store.insert_unless_in_flight(make_job(dedupe_key="chat-title:c1"))
    again = store.insert_unless_in_flight(make_job(dedupe_key="chat-title:c1"))
    other = store.insert_unless_in_flight(make_job(dedupe_key="chat-title:c2"))
    assert again.id == first.id
    assert other.id != first.id
    assert store.counts_by_status().total == 2

    store.claim(first.id, "tok")
    assert store.insert_unless_in_flight(make_job(dedupe_key="chat-title:c1")).id == first.id
    store.mark_completed(first.id, "tok", None)
    fresh = store.insert_unless_in_flight(make_job(dedupe_key="chat-title:c1"))
    assert fresh.id != first.id
    assert store.get(fresh.id).dedupe_key == "chat-title:c1"
