import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .errors import JobPostponed


@dataclass
class JobContext:
    """Handed to a handler alongside its job for one execution."""

    job_id: str
    job_type: str
    attempt: int
    max_retries: int
    timeout_ms: int
    worker_id: str
    started_at: Optional[datetime] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        """True once the job timed out, was cancelled, or was abandoned at shutdown."""
        return self.cancel_event.is_set()

    def wait_cancelled(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds, returning early (True) on cancellation."""
        return self.cancel_event.wait(timeout)

    def postpone(self, seconds: float, reason: Optional[str] = None):
        """Stop this execution and run the job again after ``seconds``."""
        if seconds <= 0:
            raise ValueError("postpone() requires positive number of seconds")
        raise JobPostponed(seconds, reason)
