# scheduler.py
from logs import get_logger
from projector import StatusProjector
from reclaimer import StalledJobReclaimer
from settings import SchedulerSettings
from storage import Storage
from submitter import JobSubmitter
from worker import WorkerPool

logger = get_logger("scheduler")


def open_store(settings, clock=None):
    return Storage(
        settings.db_path,
        clock=clock,
        lock_duration_seconds=settings.lock_duration_seconds,
        retention_count=settings.retention_count,
        retention_age_seconds=settings.retention_age_seconds,
    )


class ConversionScheduler:
    """Owns the queue store, worker pool, projector and reclaimer for one process.

    ``routines`` maps a conversion type (``pdf-to-docx``, ``docx-to-pdf``) to an
    object with ``execute(source, output, quality, preserve_formatting)``.
    """

    def __init__(self, routines, records, notifier, settings=None, storage=None, clock=None):
        self.settings = settings or SchedulerSettings()
        self.storage = storage or open_store(self.settings, clock=clock)
        self.submitter = JobSubmitter(self.storage)
        self.projector = StatusProjector(records, notifier, buffer_size=self.settings.event_buffer,
                                         clock=self.storage.clock)
        self.pool = WorkerPool(
            self.storage, routines, self.projector,
            concurrency=self.settings.concurrency,
            poll_interval=self.settings.poll_interval,
            renew_interval=self.settings.lock_renew_seconds,
        )
        self.reclaimer = StalledJobReclaimer(self.storage, self.projector,
                                             interval=self.settings.reclaim_interval_seconds)
        self._running = False

    def start(self):
        self.projector.start()
        self.pool.start()
        self.reclaimer.start()
        self._running = True
        logger.info(f"Scheduler started (concurrency={self.settings.concurrency}, "
                    f"lock={self.settings.lock_duration_seconds}s)")

    def submit(self, payload, user_tier):
        return self.submitter.submit(payload, user_tier)

    def get_job(self, job_id):
        job = self.storage.get_job(job_id)
        return job.status() if job else None

    def get_queue_stats(self):
        return self.storage.get_queue_stats()

    def remove_job(self, job_id):
        return self.storage.remove_job(job_id)

    def shutdown(self, wait=True, timeout=None):
        """Stop dequeuing, settle in-flight work, flush events, close the store.

        With ``wait=False`` in-flight jobs are abandoned; their locks expire and
        the next reclaim pass requeues them.
        """
        if self._running:
            self.reclaimer.stop(timeout=timeout)
            self.pool.stop(wait=wait, timeout=timeout)
            self.projector.stop(timeout=timeout)
            self._running = False
        self.storage.close()
        logger.info("Scheduler shut down")
