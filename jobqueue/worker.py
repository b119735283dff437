# jobqueue/worker.py
import logging
import signal
import threading
from typing import Optional

from .scheduler import JobQueue

logger = logging.getLogger(__name__)


def setup_signal_handlers(stop_event: threading.Event):
    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping job queue", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)


def run_worker(queue: JobQueue, stop_event: Optional[threading.Event] = None, grace_ms: Optional[int] = None):
    """
    Host-process entry point: start the queue and block until SIGINT/SIGTERM
    (or ``stop_event``), then stop it gracefully.
    """
    stop_event = stop_event or threading.Event()
    if threading.current_thread() is threading.main_thread():
        setup_signal_handlers(stop_event)

    queue.start()
    try:
        while not stop_event.wait(0.5):
            pass
    except KeyboardInterrupt:
        # quiet exit on Ctrl+C
        pass
    finally:
        queue.stop(grace_ms=grace_ms)
