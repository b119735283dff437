import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .backoff import BackoffPolicy
from .config import Settings
from .errors import JobQueueError, ValidationError
from .models import Job, JobStatus
from .registry import JobRegistry, JobType
from .storage import JobStore
from .utils import utcnow

logger = logging.getLogger(__name__)


def _require_id(name: str, value: Any) -> str:
    if value is None or isinstance(value, bool) or not str(value).strip():
        raise ValidationError(f"{name} is required")
    return str(value)


def _optional_int(name: str, value: Any, minimum: Optional[int] = None) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    return value


def _resolve_backoff(
    value: Union[BackoffPolicy, Dict[str, Any], None],
    descriptor: JobType,
    settings: Settings,
) -> BackoffPolicy:
    if value is None:
        return descriptor.backoff or settings.backoff
    if isinstance(value, BackoffPolicy):
        return value
    try:
        return BackoffPolicy.model_validate(value)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid backoff: {e.error_count()} error(s)") from e


def build_job(
    registry: JobRegistry,
    settings: Settings,
    job_type: str,
    *,
    target_id: Any,
    parameters: Optional[Mapping[str, Any]],
    user_id: Any,
    priority: Optional[int] = None,
    timeout_ms: Optional[int] = None,
    max_retries: Optional[int] = None,
    backoff: Union[BackoffPolicy, Dict[str, Any], None] = None,
    run_at: Optional[datetime] = None,
) -> Job:
    """
    Validate enqueue input and resolve defaults into a PENDING Job.

    Defaults resolve explicit argument -> job type -> settings.
    Raises ValidationError or UnknownJobType; nothing is written.
    """
    if not isinstance(job_type, str) or not job_type.strip():
        raise ValidationError("type is required")
    target_id = _require_id("target_id", target_id)
    user_id = _require_id("user_id", user_id)
    if parameters is None or not isinstance(parameters, Mapping):
        raise ValidationError("parameters must be a mapping")
    priority = _optional_int("priority", priority)
    timeout_ms = _optional_int("timeout_ms", timeout_ms, minimum=1)
    max_retries = _optional_int("max_retries", max_retries, minimum=0)

    descriptor = registry.get(job_type)
    descriptor.validate_parameters(parameters)

    params = dict(parameters)
    try:
        json.dumps(params)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"parameters must be JSON serializable: {e}") from e

    now = utcnow()
    job = Job(
        id=uuid.uuid4().hex,
        type=job_type,
        status=JobStatus.PENDING,
        priority=_first(priority, descriptor.priority, settings.default_priority),
        target_id=target_id,
        parameters=params,
        user_id=user_id,
        retry_count=0,
        max_retries=_first(max_retries, descriptor.max_retries, settings.default_max_retries),
        scheduled_at=run_at,
        queued_at=now,
        updated_at=now,
        timeout_ms=_first(timeout_ms, descriptor.timeout_ms, settings.default_timeout_ms),
        backoff=_resolve_backoff(backoff, descriptor, settings),
    )
    job.dedupe_key = descriptor.dedupe_key_for(job)
    return job


def perform_later(store: JobStore, registry: JobRegistry, settings: Settings, job_type: str, **kwargs: Any) -> str:
    """
    Validate, write the PENDING row and return its id once committed.

    For job types with a dedupe_key, returns the id of the in-flight job
    holding the same key instead of writing a second row.
    """
    job = build_job(registry, settings, job_type, **kwargs)
    try:
        stored = store.insert_unless_in_flight(job)
    except sqlite3.Error as e:
        raise JobQueueError(f"DB error while inserting job: {e}") from e
    if stored.id != job.id:
        logger.info(
            "Job with dedupe_key %r already %s as %s; skipping",
            job.dedupe_key, stored.status.value, stored.id,
        )
        return stored.id
    logger.debug("Enqueued job %s (%s) priority=%s user=%s", job.id, job.type, job.priority, job.user_id)
    return job.id


def _first(*values):
    for v in values:
        if v is not None:
            return v
    return None
