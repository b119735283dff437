from typing import Optional


class JobQueueError(Exception):
    """Base class for every error raised by jobqueue."""

    kind = "JobQueueError"

    def describe(self) -> str:
        """Text stored in the job row's ``error`` column."""
        return f"{self.kind}: {self}"


# ---------- Enqueue / registry ----------
class ValidationError(JobQueueError):
    """Bad enqueue input. Raised before any row is written."""

    kind = "ValidationError"


class DuplicateJobType(JobQueueError):
    kind = "DuplicateJobType"


class UnknownJobType(JobQueueError):
    """No handler registered under the job's type. Never retried."""

    kind = "UnknownJobType"


# ---------- Execution outcomes ----------
class HandlerError(JobQueueError):
    """Wraps an exception raised by a handler."""

    kind = "HandlerError"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    @classmethod
    def wrap(cls, exc: BaseException) -> "HandlerError":
        return cls(f"{type(exc).__name__}: {exc}", cause=exc)


class TimeoutExceeded(JobQueueError):
    kind = "TimeoutExceeded"


class ShutdownAbandoned(JobQueueError):
    """Job was still running when the shutdown grace period elapsed."""

    kind = "ShutdownAbandoned"


class Cancelled(JobQueueError):
    kind = "Cancelled"


# ---------- Raised by handlers ----------
class RetryableJobError(Exception):
    """Raised when a job fails but should be retried."""
    pass


class PermanentJobError(Exception):
    """Raised when a job fails and should not be retried."""
    pass


class JobPostponed(Exception):
    """Raised (usually through ``JobContext.postpone``) to run the job again later."""

    def __init__(self, seconds: float, reason: Optional[str] = None):
        super().__init__(reason or f"Postponed for {seconds} seconds")
        self.seconds = seconds
        self.reason = reason
