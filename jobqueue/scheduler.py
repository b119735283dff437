import logging
import threading
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

from .backoff import decide
from .config import Settings
from .context import JobContext
from .enqueue import build_job, perform_later
from .errors import (
    Cancelled,
    HandlerError,
    JobQueueError,
    PermanentJobError,
    RetryableJobError,
    ShutdownAbandoned,
    UnknownJobType,
)
from .executor import POSTPONED, SUCCEEDED, TIMED_OUT, Dispatch, Outcome, WorkerPool, run_handler
from .models import Concurrency, Job, JobStatus, QueueStats, QueueStatus, RunningJob
from .registry import Handler, JobRegistry, JobType
from .storage import JobStore
from .utils import after_ms, elapsed_ms, utcnow

logger = logging.getLogger(__name__)


class State(str, Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class JobQueue:
    """
    Single dispatcher, N parallel workers.

    A ticker thread calls tick() every poll_interval_ms while RUNNING. Each
    tick claims up to the number of free worker slots, best priority first
    and oldest first within a priority, and hands the claimed rows to the
    WorkerPool. Outcomes are written back by the pool's supervisors.

    Construct once per process, register job types, start(), and stop() on
    shutdown.
    """

    def __init__(
        self,
        store: JobStore,
        registry: Optional[JobRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.registry = registry if registry is not None else JobRegistry()
        self.settings = settings if settings is not None else Settings.load(store)
        self.pool = WorkerPool(self.settings.max_concurrent_jobs)
        self._state = State.STOPPED
        self._state_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._ticker: Optional[threading.Thread] = None

    @property
    def state(self) -> State:
        return self._state

    # ---------- Registry ----------
    def register_job(self, descriptor: JobType) -> JobType:
        return self.registry.register(descriptor)

    def job(self, name: Optional[str] = None, **options: Any) -> Callable[[Handler], Handler]:
        return self.registry.job(name, **options)

    def get_available_job_types(self) -> List[str]:
        return self.registry.names()

    # ---------- Enqueue ----------
    def perform_later(self, job_type: str, **kwargs: Any) -> str:
        """
        Enqueue ``job_type`` and return the new job id once the row is committed.

        Keyword arguments: target_id, parameters, user_id (required) and
        priority, timeout_ms, max_retries, backoff, run_at (optional).
        """
        return perform_later(self.store, self.registry, self.settings, job_type, **kwargs)

    def perform_at(self, run_at: datetime, job_type: str, **kwargs: Any) -> str:
        return self.perform_later(job_type, run_at=run_at, **kwargs)

    def perform_now(self, job_type: str, **kwargs: Any) -> Any:
        """Validate like perform_later, then run the handler on this thread without a row."""
        job = build_job(self.registry, self.settings, job_type, **kwargs)
        descriptor = self.registry.get(job_type)
        ctx = JobContext(
            job_id=job.id,
            job_type=job.type,
            attempt=1,
            max_retries=job.max_retries,
            timeout_ms=job.timeout_ms,
            worker_id="inline",
            started_at=utcnow(),
        )
        timer = threading.Timer(job.timeout_ms / 1000.0, ctx.cancel_event.set)
        timer.daemon = True
        timer.start()
        try:
            return run_handler(descriptor.handler, job, ctx)
        finally:
            timer.cancel()

    # ---------- Lifecycle ----------
    def start(self):
        with self._state_lock:
            if self._state is not State.STOPPED:
                logger.info("Job queue already running")
                return
            self._state = State.RUNNING
            self._stop_event.clear()

        self.recover_orphans()
        self._ticker = threading.Thread(target=self._loop, name="jobqueue-scheduler", daemon=True)
        self._ticker.start()
        logger.info(
            "Job queue started with %d job types (max concurrent: %d, polling: %dms)",
            len(self.registry), self.pool.max_workers, self.settings.poll_interval_ms,
        )

    def stop(self, grace_ms: Optional[int] = None):
        """
        Stop claiming, wait up to the grace period for running jobs, then
        requeue whatever is still running. Safe to call repeatedly or before
        start().
        """
        with self._state_lock:
            if self._state is not State.RUNNING:
                return
            self._state = State.STOPPING

        self._stop_event.set()
        ticker, self._ticker = self._ticker, None
        if ticker is not None and ticker is not threading.current_thread():
            ticker.join()

        grace = self.settings.shutdown_grace_ms if grace_ms is None else grace_ms
        if not self.pool.drain(grace / 1000.0):
            for dispatch in self.pool.abandon_all():
                self._abandon(dispatch.job, ShutdownAbandoned(f"Still running after {grace}ms shutdown grace period"))
        self.pool.shutdown(wait=False)

        with self._state_lock:
            self._state = State.STOPPED
        logger.info("Job queue stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def recover_orphans(self) -> int:
        """Requeue rows left RUNNING by a process that died mid-job."""
        recovered = 0
        for job in self.store.running_jobs():
            if self.pool.is_running(job.id):
                continue
            if self._abandon(job, ShutdownAbandoned("Found RUNNING at startup; previous worker is gone")):
                recovered += 1
        if recovered:
            logger.warning("Recovered %d orphaned running job(s)", recovered)
        return recovered

    # ---------- Scheduling ----------
    def _loop(self):
        interval = self.settings.poll_interval_ms / 1000.0
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(interval)

    def tick(self) -> int:
        """
        One scheduling pass. Returns the number of jobs dispatched.

        The ticker calls this while RUNNING; it may also be called directly
        while the ticker is not running. Never raises.
        """
        with self._tick_lock:
            if self._state is State.STOPPING:
                return 0
            try:
                free = self.pool.free_slots()
                if free <= 0:
                    return 0
                dispatched = 0
                for job in self.store.fetch_eligible(free):
                    if self._state is State.STOPPING:
                        break
                    if self._dispatch(job):
                        dispatched += 1
                if dispatched:
                    logger.debug("Dispatched %d job(s)", dispatched)
                return dispatched
            except Exception:
                logger.exception("Error during tick")
                return 0

    def _dispatch(self, job: Job) -> bool:
        token = uuid.uuid4().hex
        claimed = self.store.claim(job.id, token)
        if claimed is None:
            logger.debug("Lost claim on job %s", job.id)
            return False

        try:
            descriptor = self.registry.get(claimed.type)
        except UnknownJobType as e:
            logger.error("No handler for job %s (type %s); failing it", claimed.id, claimed.type)
            self.store.mark_failed(claimed.id, token, claimed.retry_count, e.describe())
            return False

        try:
            submitted = self.pool.submit(claimed, descriptor, self._on_done)
        except RuntimeError:
            submitted = False
        if not submitted:
            # put the row back exactly as it was
            self.store.mark_retry(claimed.id, token, claimed.retry_count, claimed.next_retry_at, claimed.error)
            return False

        logger.info("Starting job %s (%s) attempt %d", claimed.id, claimed.type, claimed.retry_count + 1)
        return True

    # ---------- Outcomes ----------
    def _on_done(self, dispatch: Dispatch, descriptor: JobType, outcome: Outcome):
        """Write the outcome back. The row never stays RUNNING after this returns unless the DB is gone."""
        job = dispatch.job
        try:
            self._record_outcome(dispatch, descriptor, outcome)
        except Exception as e:
            logger.exception("Could not record %s outcome for job %s (%s)", outcome.kind, job.id, job.type)
            try:
                self._record_failure(job, job.claim_token, descriptor, HandlerError.wrap(e))
            except Exception:
                logger.exception("Job %s left RUNNING; it will be requeued on the next start()", job.id)

    def _record_outcome(self, dispatch: Dispatch, descriptor: JobType, outcome: Outcome):
        job = dispatch.job
        token = job.claim_token
        duration = elapsed_ms(dispatch.started_at)

        if outcome.kind == SUCCEEDED:
            try:
                completed = self.store.mark_completed(job.id, token, outcome.result)
            except (TypeError, ValueError) as e:
                # result could not be stored as JSON
                self._record_failure(
                    job, token, descriptor, HandlerError(f"Result is not JSON serializable: {e}", cause=e)
                )
                return
            if completed:
                logger.info("Job %s (%s) completed in %dms", job.id, job.type, duration)
            return

        if outcome.kind == POSTPONED:
            error = outcome.error
            next_at = after_ms(error.seconds * 1000)
            self.store.mark_retry(job.id, token, job.retry_count, next_at, f"Postponed: {error}")
            logger.info("Job %s postponed until %s", job.id, next_at.isoformat())
            return

        if outcome.kind == TIMED_OUT:
            logger.warning("Job %s (%s) timed out after %dms", job.id, job.type, job.timeout_ms)
        self._record_failure(job, token, descriptor, outcome.error)

    def _record_failure(self, job: Job, token: str, descriptor: JobType, error: BaseException):
        if isinstance(error, JobQueueError):
            reported = error
        else:
            reported = HandlerError.wrap(error)
            logger.error("Job %s (%s) failed", job.id, job.type, exc_info=error)

        if isinstance(error, PermanentJobError) or not descriptor.retryable:
            retryable = False
        elif isinstance(error, RetryableJobError):
            retryable = True
        else:
            retryable = descriptor.should_retry(error)

        decision = decide(job.backoff, job.retry_count, job.max_retries, retryable=retryable)
        if decision.give_up:
            self.store.mark_failed(job.id, token, decision.retry_count, reported.describe())
            logger.error(
                "Job %s (%s) failed permanently after %d failure(s): %s",
                job.id, job.type, decision.retry_count, reported,
            )
        else:
            self.store.mark_retry(job.id, token, decision.retry_count, decision.next_retry_at, reported.describe())
            logger.warning(
                "Retrying job %s (%s) at %s (failure %d/%d)",
                job.id, job.type, decision.next_retry_at.isoformat(), decision.retry_count, job.max_retries,
            )

    def _abandon(self, job: Job, error: ShutdownAbandoned) -> bool:
        decision = decide(job.backoff, job.retry_count, job.max_retries)
        if decision.give_up:
            settled = self.store.mark_failed(job.id, job.claim_token, decision.retry_count, error.describe())
        else:
            # eligible again as soon as a scheduler runs
            settled = self.store.mark_retry(job.id, job.claim_token, decision.retry_count, utcnow(), error.describe())

        if not settled:
            logger.debug("Abandoned job %s (%s) was already settled", job.id, job.type)
        elif decision.give_up:
            logger.error("Abandoned job %s (%s) has no retries left", job.id, job.type)
        else:
            logger.warning("Requeued abandoned job %s (%s)", job.id, job.type)
        return settled

    # ---------- Control ----------
    def cancel_job(self, job_id: str) -> bool:
        """Fail a pending or running job. A running handler sees ctx.cancelled."""
        reason = Cancelled("Job was cancelled").describe()
        dispatch = self.pool.cancel(job_id)
        if dispatch is not None:
            job = dispatch.job
            ok = self.store.mark_failed(job.id, job.claim_token, job.retry_count, reason)
        else:
            ok = self.store.fail_pending(job_id, reason)
        if ok:
            logger.info("Cancelled job %s", job_id)
        return ok

    def run_now(self, job_id: str) -> bool:
        """Dispatch one PENDING job immediately, ignoring its retry/schedule time."""
        with self._tick_lock:
            if self._state is State.STOPPING:
                return False
            job = self.store.get(job_id)
            if job is None:
                logger.error("Job not found: %s", job_id)
                return False
            if job.status is not JobStatus.PENDING:
                logger.error("Job %s not in PENDING status (current: %s)", job_id, job.status.value)
                return False
            if self.pool.free_slots() <= 0:
                return False
            return self._dispatch(job)

    # ---------- Introspection ----------
    def get_status(self) -> QueueStatus:
        now = utcnow()
        running = [
            RunningJob(
                id=d.job.id,
                type=d.job.type,
                user_id=d.job.user_id,
                started_at=d.started_at,
                duration_ms=elapsed_ms(d.started_at, now),
            )
            for d in self.pool.running()
        ]
        max_workers = self.pool.max_workers
        return QueueStatus(
            is_running=self._state is State.RUNNING,
            state=self._state.value,
            interval_ms=self.settings.poll_interval_ms,
            running_jobs=running,
            concurrency=Concurrency(max=max_workers, current=len(running), available=max_workers - len(running)),
            job_types=self.get_available_job_types(),
        )

    def get_stats(self, user_id: Optional[str] = None) -> QueueStats:
        return self.store.counts_by_status(user_id=user_id)

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.store.get(job_id)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        return self.store.list_jobs(status=status, user_id=user_id, limit=limit)
