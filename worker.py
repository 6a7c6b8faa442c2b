# worker.py
import sqlite3
import threading
import uuid

from errors import ExecutionFailure, LockNotOwned
from logs import get_logger
from models import WorkerEvent

logger = get_logger("worker")


class Worker:
    """One worker slot: lease a job, run the conversion, report the outcome."""

    def __init__(self, storage, routines, projector, worker_id=None, poll_interval=1.0,
                 renew_interval=100.0, stop_event=None):
        self.storage = storage
        self.routines = routines
        self.projector = projector
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.poll_interval = poll_interval
        self.renew_interval = renew_interval
        self.stop_event = stop_event or threading.Event()
        self.current_job_id = None

    def run(self):
        while not self.stop_event.is_set():
            try:
                job = self.storage.dequeue_next(self.worker_id)
            except sqlite3.Error:
                logger.exception(f"{self.worker_id}: dequeue failed")
                job = None
            if not job:
                self.stop_event.wait(self.poll_interval)
                continue
            self.process_job(job)

    def _progress(self, job, progress, stage):
        self.storage.report_progress(job.id, progress, stage)
        self.projector.publish(WorkerEvent("progress", job, progress=progress, stage=stage))

    def process_job(self, job):
        self.current_job_id = job.id
        done = threading.Event()
        renewer = threading.Thread(target=self._renew_lock, args=(job.id, done),
                                   name=f"{self.worker_id}-renew", daemon=True)
        renewer.start()
        try:
            self._execute(job)
        finally:
            done.set()
            renewer.join()
            self.current_job_id = None

    def _execute(self, job):
        result = None
        error = None
        try:
            self._progress(job, 0, "initializing")
            routine = self.routines.get(job.conversion_type)
            if routine is None:
                raise ExecutionFailure(f"Unsupported conversion type: {job.conversion_type}")

            self._progress(job, 10, "converting")
            outcome = routine.execute(job.source_file_path, job.output_file_path,
                                      job.quality, job.preserve_formatting)
            if not outcome.success:
                raise ExecutionFailure(outcome.error or "Conversion failed")
            result = outcome.to_dict()
        except ExecutionFailure as e:
            error = str(e)
        except Exception as e:
            logger.exception(f"{self.worker_id}: job {job.id} raised")
            error = str(e) or type(e).__name__

        try:
            if error is None:
                finished = self.storage.complete(job.id, self.worker_id, result)
                self.projector.publish(WorkerEvent("completed", finished, progress=100, result=result))
            else:
                finished = self.storage.fail(job.id, self.worker_id, error)
                self.projector.publish(WorkerEvent("failed", finished, error=error))
        except LockNotOwned:
            # reclaimed while running; whoever holds it now owns the outcome
            logger.warning(f"{self.worker_id}: lost lock on job {job.id}, abandoning result")
        except sqlite3.Error:
            logger.exception(f"{self.worker_id}: could not record outcome of job {job.id}, leaving it to the reclaimer")

    def _renew_lock(self, job_id, done):
        while not done.wait(self.renew_interval):
            try:
                self.storage.renew_lock(job_id, self.worker_id)
            except LockNotOwned:
                logger.warning(f"{self.worker_id}: lock on job {job_id} lost, stop renewing")
                return
            except sqlite3.Error:
                logger.exception(f"{self.worker_id}: lock renewal for job {job_id} failed")


class WorkerPool:
    def __init__(self, storage, routines, projector, concurrency=2, poll_interval=1.0,
                 renew_interval=100.0):
        self.storage = storage
        self.routines = routines
        self.projector = projector
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.renew_interval = renew_interval
        self.stop_event = threading.Event()
        self.workers = []

    def start(self):
        if self.workers:
            return
        self.stop_event.clear()
        prefix = uuid.uuid4().hex[:8]
        for i in range(self.concurrency):
            w = Worker(self.storage, self.routines, self.projector,
                       worker_id=f"worker-{prefix}-{i+1}",
                       poll_interval=self.poll_interval,
                       renew_interval=self.renew_interval,
                       stop_event=self.stop_event)
            t = threading.Thread(target=w.run, name=f"worker-thread-{i+1}", daemon=True)
            self.workers.append((w, t))
            logger.info(f"Starting {w.worker_id} (poll={self.poll_interval}s, renew={self.renew_interval}s)")
            t.start()

    def stop(self, wait=True, timeout=None):
        """Stop taking new jobs; optionally wait for in-flight ones."""
        self.stop_event.set()
        if wait:
            for _, t in self.workers:
                t.join(timeout=timeout)
        still_running = [f"{w.worker_id} ({w.current_job_id})" for w, t in self.workers if t.is_alive()]
        if still_running:
            logger.warning(f"Abandoning in-flight jobs on {', '.join(still_running)}")
        self.workers = []
