from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime

from pydantic import BaseModel, Field

from .backoff import BackoffPolicy


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Job(BaseModel):
    id: str
    type: str
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    target_id: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    user_id: str
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    queued_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime
    timeout_ms: int = 300_000
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    error: Optional[str] = None
    result: Any = None
    claim_token: Optional[str] = None
    dedupe_key: Optional[str] = None


class RunningJob(BaseModel):
    id: str
    type: str
    user_id: str
    started_at: datetime
    duration_ms: int


class Concurrency(BaseModel):
    max: int
    current: int
    available: int


class QueueStatus(BaseModel):
    is_running: bool
    state: str
    interval_ms: int
    running_jobs: List[RunningJob] = Field(default_factory=list)
    concurrency: Concurrency
    job_types: List[str] = Field(default_factory=list)


class QueueStats(BaseModel):
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.failed
