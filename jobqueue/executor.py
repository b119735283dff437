import asyncio
import inspect
import logging
import os
import platform
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .context import JobContext
from .errors import HandlerError, JobPostponed, TimeoutExceeded
from .models import Job
from .registry import JobType
from .utils import utcnow

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
TIMED_OUT = "timed_out"
POSTPONED = "postponed"


@dataclass
class Outcome:
    kind: str
    result: Any = None
    error: Optional[BaseException] = None


@dataclass
class Dispatch:
    """One job occupying one slot."""

    job: Job
    ctx: JobContext
    started_at: datetime = field(default_factory=utcnow)
    cancelled: bool = False
    abandoned: bool = False


OnDone = Callable[[Dispatch, JobType, Outcome], None]


def run_handler(handler: Callable[..., Any], job: Job, ctx: JobContext) -> Any:
    """Call a handler, running coroutine handlers to completion on this thread."""
    if inspect.iscoroutinefunction(handler):
        return asyncio.run(handler(job, ctx))
    result = handler(job, ctx)
    if inspect.iscoroutine(result):
        return asyncio.run(result)
    return result


class WorkerPool:
    """
    Fixed number of slots. Each dispatched job gets a supervisor on the
    executor; the supervisor starts the handler on a daemon thread and waits
    at most the job's timeout. A timed-out handler is signalled through
    ctx.cancel_event but never killed.
    """

    def __init__(self, max_workers: int, name: str = "jobqueue"):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self.name = name
        self.worker_id = f"{platform.node()}-{os.getpid()}"
        self._slots = threading.BoundedSemaphore(max_workers)
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._running: Dict[str, Dispatch] = {}
        self._executor: Optional[ThreadPoolExecutor] = None

    # ---------- Slots ----------
    def free_slots(self) -> int:
        with self._lock:
            return self.max_workers - len(self._running)

    def running(self) -> List[Dispatch]:
        with self._lock:
            return list(self._running.values())

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._running

    def _release(self, dispatch: Dispatch) -> bool:
        job_id = dispatch.job.id
        with self._lock:
            # A job requeued after abandonment may be running again under a new dispatch.
            if self._running.get(job_id) is not dispatch:
                return False
            del self._running[job_id]
            self._slots.release()
            self._idle.notify_all()
        return True

    # ---------- Dispatch ----------
    def submit(self, job: Job, descriptor: JobType, on_done: OnDone) -> bool:
        """Start ``job`` in a free slot. Returns False when every slot is taken."""
        if not self._slots.acquire(blocking=False):
            return False
        ctx = JobContext(
            job_id=job.id,
            job_type=job.type,
            attempt=job.retry_count + 1,
            max_retries=job.max_retries,
            timeout_ms=job.timeout_ms,
            worker_id=self.worker_id,
            started_at=job.started_at,
        )
        dispatch = Dispatch(job=job, ctx=ctx)
        with self._lock:
            self._running[job.id] = dispatch
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix=f"{self.name}-worker"
                )
            executor = self._executor
        try:
            executor.submit(self._supervise, dispatch, descriptor, on_done)
        except RuntimeError:
            self._release(dispatch)
            raise
        return True

    def _supervise(self, dispatch: Dispatch, descriptor: JobType, on_done: OnDone):
        job = dispatch.job
        try:
            outcome = self._execute(descriptor, job, dispatch.ctx)
            if dispatch.abandoned or dispatch.cancelled:
                # Row was already settled by stop()/cancel().
                logger.debug("Dropping outcome %s for job %s", outcome.kind, job.id)
                return
            on_done(dispatch, descriptor, outcome)
        except Exception:
            logger.exception("Failed to record outcome for job %s (%s)", job.id, job.type)
        finally:
            self._release(dispatch)

    def _execute(self, descriptor: JobType, job: Job, ctx: JobContext) -> Outcome:
        box: Dict[str, Any] = {}
        done = threading.Event()

        def target():
            try:
                box["result"] = run_handler(descriptor.handler, job, ctx)
            except Exception as e:
                box["error"] = e
            finally:
                done.set()

        thread = threading.Thread(target=target, name=f"job-{job.id[:8]}", daemon=True)
        thread.start()

        if not done.wait(job.timeout_ms / 1000.0):
            ctx.cancel_event.set()
            return Outcome(TIMED_OUT, error=TimeoutExceeded(f"Job did not finish within {job.timeout_ms}ms"))

        if "error" in box:
            error = box["error"]
            if isinstance(error, JobPostponed):
                return Outcome(POSTPONED, error=error)
            return Outcome(FAILED, error=error)
        if "result" not in box:
            return Outcome(FAILED, error=HandlerError("Handler exited abnormally"))
        return Outcome(SUCCEEDED, result=box["result"])

    # ---------- Cancellation / shutdown ----------
    def cancel(self, job_id: str) -> Optional[Dispatch]:
        """Signal a running job. Its slot stays taken until the handler settles or times out."""
        with self._lock:
            dispatch = self._running.get(job_id)
            if dispatch is None:
                return None
            dispatch.cancelled = True
        dispatch.ctx.cancel_event.set()
        return dispatch

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until no job is running. Returns False if the timeout elapsed first."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._running, timeout=timeout)

    def abandon_all(self) -> List[Dispatch]:
        """Give up on every running job and free its slot."""
        with self._lock:
            abandoned = list(self._running.values())
            for dispatch in abandoned:
                dispatch.abandoned = True
                dispatch.ctx.cancel_event.set()
        for dispatch in abandoned:
            self._release(dispatch)
        return abandoned

    def shutdown(self, wait: bool = False):
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=True)
