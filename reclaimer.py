# reclaimer.py
import sqlite3
import threading

from errors import StallTimeout
from logs import get_logger
from models import FAILED, WorkerEvent

logger = get_logger("reclaimer")


class StalledJobReclaimer:
    """Periodically returns jobs with expired locks to the queue."""

    def __init__(self, storage, projector, interval=30.0):
        self.storage = storage
        self.projector = projector
        self.interval = interval
        self.stop_event = threading.Event()
        self._thread = None

    def run_once(self):
        jobs = self.storage.reclaim_expired_locks()
        for job in jobs:
            stall = StallTimeout(job.id)
            if job.state == FAILED:
                logger.error(f"Job {job.id} stalled on its last attempt ({job.attempts_made}/{job.max_attempts})")
            else:
                logger.info(f"Job {job.id} stalled, requeued (attempts={job.attempts_made}/{job.max_attempts})")
            # the projector only touches the user-facing status on terminal failure
            self.projector.publish(WorkerEvent("failed", job, error=stall.reason))
        return jobs

    def _run(self):
        while not self.stop_event.wait(self.interval):
            try:
                self.run_once()
            except sqlite3.Error:
                logger.exception("Reclaim pass failed")

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self.stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="stalled-job-reclaimer", daemon=True)
        self._thread.start()

    def stop(self, timeout=None):
        self.stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
