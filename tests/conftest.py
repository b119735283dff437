import time

import pytest

from jobqueue import BackoffPolicy, JobQueue, JobRegistry, JobStore, Settings
from jobqueue import lifecycle


@pytest.fixture
def store(tmp_path):
    s = JobStore(tmp_path / "jobs.db")
    yield s
    s.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=tmp_path / "jobs.db",
        max_concurrent_jobs=4,
        poll_interval_ms=10,
        shutdown_grace_ms=200,
        default_timeout_ms=5000,
        default_max_retries=3,
        backoff=BackoffPolicy(base_delay_ms=0, max_delay_ms=0),
    )


@pytest.fixture
def registry():
    return JobRegistry()


@pytest.fixture
def queue(store, registry, settings):
    q = JobQueue(store, registry=registry, settings=settings)
    yield q
    q.stop(grace_ms=0)
    q.pool.abandon_all()
    q.pool.shutdown()


@pytest.fixture(autouse=True)
def _reset_process_queue():
    yield
    lifecycle.reset_instance()


def _wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def settle():
    """Drive tick()/drain() until the job reaches a terminal status."""
    def _settle(q, job_id, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            q.tick()
            q.pool.drain(timeout=1.0)
            job = q.get_job(job_id)
            if job.status.is_terminal:
                return job
            time.sleep(0.005)
        raise AssertionError(f"job {job_id} did not settle: {q.get_job(job_id)}")
    return _settle


@pytest.fixture
def enqueue(queue):
    """perform_later with the required fields filled in."""
    def _enqueue(job_type, **kwargs):
        kwargs.setdefault("target_id", "target-1")
        kwargs.setdefault("user_id", "user-1")
        kwargs.setdefault("parameters", {})
        return queue.perform_later(job_type, **kwargs)
    return _enqueue
