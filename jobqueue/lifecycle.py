"""
Process-wide JobQueue handle.

The host application constructs the queue once at startup with
init_job_queue(), registers job types, calls start(), and calls stop() during
shutdown. Everything else should receive the JobQueue explicitly; the global
handle exists for the startup/shutdown sequence and for code that cannot be
handed one. Tests call reset_instance() between runs.
"""

import logging
import threading
from typing import Optional

from .config import Settings
from .registry import JobRegistry
from .scheduler import JobQueue
from .storage import JobStore

logger = logging.getLogger(__name__)

_instance: Optional[JobQueue] = None
_lock = threading.Lock()


def init_job_queue(
    store: JobStore,
    registry: Optional[JobRegistry] = None,
    settings: Optional[Settings] = None,
) -> JobQueue:
    global _instance
    with _lock:
        if _instance is not None:
            raise RuntimeError("JobQueue already initialized for this process")
        _instance = JobQueue(store, registry=registry, settings=settings)
        return _instance


def get_instance() -> Optional[JobQueue]:
    return _instance


def reset_instance():
    """Stop and forget the process-wide queue."""
    global _instance
    with _lock:
        queue, _instance = _instance, None
    if queue is not None:
        queue.stop()
