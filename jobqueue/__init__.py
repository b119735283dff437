from .backoff import BackoffPolicy
from .config import Settings
from .context import JobContext
from .errors import (
    Cancelled,
    DuplicateJobType,
    HandlerError,
    JobPostponed,
    JobQueueError,
    PermanentJobError,
    RetryableJobError,
    ShutdownAbandoned,
    TimeoutExceeded,
    UnknownJobType,
    ValidationError,
)
from .lifecycle import get_instance, init_job_queue, reset_instance
from .models import Job, JobStatus, QueueStats, QueueStatus
from .registry import JobRegistry, JobType, discover_handlers
from .scheduler import JobQueue, State
from .storage import JobStore

__all__ = [
    "BackoffPolicy",
    "Settings",
    "JobContext",
    "Cancelled",
    "DuplicateJobType",
    "HandlerError",
    "JobPostponed",
    "JobQueueError",
    "PermanentJobError",
    "RetryableJobError",
    "ShutdownAbandoned",
    "TimeoutExceeded",
    "UnknownJobType",
    "ValidationError",
    "get_instance",
    "init_job_queue",
    "reset_instance",
    "Job",
    "JobStatus",
    "QueueStats",
    "QueueStatus",
    "JobRegistry",
    "JobType",
    "discover_handlers",
    "JobQueue",
    "State",
    "JobStore",
]
