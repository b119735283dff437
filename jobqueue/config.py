import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .backoff import BackoffPolicy

ENV_PREFIX = "JOBQUEUE_"

# Keys that may be overridden through the config table / `jobqueue config set`.
_BACKOFF_KEYS = {
    "backoff_strategy": "strategy",
    "backoff_base_ms": "base_delay_ms",
    "backoff_max_ms": "max_delay_ms",
    "backoff_factor": "factor",
}
_SCALAR_KEYS = {
    "max_concurrent_jobs",
    "poll_interval_ms",
    "shutdown_grace_ms",
    "default_timeout_ms",
    "default_max_retries",
    "default_priority",
}
ALLOWED_CONFIG_KEYS = _SCALAR_KEYS | set(_BACKOFF_KEYS)


def default_home() -> Path:
    return Path(os.environ.get(f"{ENV_PREFIX}HOME", Path.home() / ".jobqueue"))


class Settings(BaseModel):
    db_path: Path = Field(default_factory=lambda: default_home() / "jobs.db")
    max_concurrent_jobs: int = Field(default=20, ge=1)
    poll_interval_ms: int = Field(default=100, ge=1)
    shutdown_grace_ms: int = Field(default=5000, ge=0)
    default_timeout_ms: int = Field(default=300_000, gt=0)
    default_max_retries: int = Field(default=3, ge=0)
    default_priority: int = 0
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "Settings":
        """Build settings from JOBQUEUE_* variables, e.g. JOBQUEUE_MAX_CONCURRENT_JOBS=4."""
        environ = os.environ if environ is None else environ
        data: Dict[str, Any] = {}
        if environ.get(f"{ENV_PREFIX}DB"):
            data["db_path"] = environ[f"{ENV_PREFIX}DB"]
        for key in ALLOWED_CONFIG_KEYS:
            value = environ.get(f"{ENV_PREFIX}{key.upper()}")
            if value is not None:
                _apply(data, key, value)
        data.update(overrides)
        return cls.model_validate(data)

    @classmethod
    def load(cls, store, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """Env settings with the overrides persisted in the store's config table on top."""
        base = cls.from_env(environ, db_path=store.db_path)
        return base.with_overrides(store.config_all())

    def with_overrides(self, overrides: Dict[str, str]) -> "Settings":
        data = self.model_dump()
        for key, value in overrides.items():
            if key in ALLOWED_CONFIG_KEYS:
                _apply(data, key, value)
        return type(self).model_validate(data)


def _apply(data: Dict[str, Any], key: str, value: Any) -> None:
    if key in _BACKOFF_KEYS:
        backoff = dict(data.get("backoff") or {})
        backoff[_BACKOFF_KEYS[key]] = value
        data["backoff"] = backoff
    else:
        data[key] = value


def set_override(store, key: str, value: str) -> None:
    """Validate ``key=value`` against Settings, then persist it."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    try:
        Settings().with_overrides({key: value})
    except PydanticValidationError as e:
        raise ValueError(f"Invalid value for {key}: {value!r} ({e.error_count()} error(s))") from e
    store.config_set(key, value)


def effective_value(settings: Settings, key: str) -> Any:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if key in _BACKOFF_KEYS:
        return getattr(settings.backoff, _BACKOFF_KEYS[key])
    return getattr(settings, key)
