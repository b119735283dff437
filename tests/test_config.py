from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from jobqueue import Settings
from jobqueue.config import ALLOWED_CONFIG_KEYS, effective_value, set_override


def test_defaults():
    s = Settings(db_path="jobs.db")
    assert s.max_concurrent_jobs == 20
    assert s.poll_interval_ms == 100
    assert s.default_timeout_ms == 300_000
    assert s.default_max_retries == 3
    assert s.backoff.strategy == "exponential"


def test_from_env():
    env = {
        "JOBQUEUE_DB": "/tmp/elsewhere.db",
        "JOBQUEUE_MAX_CONCURRENT_JOBS": "4",
        "JOBQUEUE_BACKOFF_STRATEGY": "linear",
        "JOBQUEUE_BACKOFF_BASE_MS": "10",
        "UNRELATED": "x",
    }
    s = Settings.from_env(env)
    assert s.db_path == Path("/tmp/elsewhere.db")
    assert s.max_concurrent_jobs == 4
    assert s.backoff.strategy == "linear"
    assert s.backoff.base_delay_ms == 10


def test_from_env_rejects_bad_values():
    with pytest.raises(PydanticValidationError):
        Settings.from_env({"JOBQUEUE_POLL_INTERVAL_MS": "0"})


def test_with_overrides_ignores_unknown_keys():
    s = Settings(db_path="jobs.db").with_overrides({"default_priority": "9", "bogus": "1"})
    assert s.default_priority == 9
    assert not hasattr(s, "bogus")


def test_store_overrides_beat_environment(store):
    store.config_set("max_concurrent_jobs", "2")
    s = Settings.load(store, environ={"JOBQUEUE_MAX_CONCURRENT_JOBS": "8", "JOBQUEUE_DEFAULT_PRIORITY": "3"})
    assert s.max_concurrent_jobs == 2
    assert s.default_priority == 3
    assert s.db_path == store.db_path


def test_set_override_validates(store):
    set_override(store, "backoff_max_ms", "5000")
    assert store.config_get("backoff_max_ms") == "5000"
    with pytest.raises(ValueError):
        set_override(store, "unknown", "1")
    with pytest.raises(ValueError):
        set_override(store, "default_max_retries", "-1")
    assert "default_max_retries" not in store.config_all()


def test_effective_value():
    s = Settings(db_path="jobs.db").with_overrides({"backoff_factor": "3"})
    assert effective_value(s, "backoff_factor") == 3.0
    assert effective_value(s, "shutdown_grace_ms") == 5000
    for key in ALLOWED_CONFIG_KEYS:
        effective_value(s, key)
    with pytest.raises(ValueError):
        effective_value(s, "db_path")
