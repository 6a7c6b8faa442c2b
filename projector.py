# projector.py
import queue
import threading

import collaborators
from logs import get_logger
from storage import iso, utcnow

logger = get_logger("projector")

_STOP = object()


class StatusProjector:
    """Mirrors job lifecycle events onto the conversion record and notifies users.

    Workers hand events over through a bounded buffer; nothing that goes wrong
    in here (record store, notification channel) reaches a worker.
    """

    def __init__(self, records, notifier, buffer_size=1000, put_timeout=1.0, clock=None):
        self.records = records
        self.notifier = notifier
        self.put_timeout = put_timeout
        self.clock = clock or utcnow
        self._events = queue.Queue(maxsize=buffer_size)
        self._thread = None

    # ---------------- Channel ----------------
    def publish(self, event):
        try:
            self._events.put(event, timeout=self.put_timeout)
            return True
        except queue.Full:
            logger.error(f"Event buffer full, dropping {event.kind} event for job {event.job.id}")
            return False

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="status-projector", daemon=True)
        self._thread.start()

    def stop(self, timeout=None):
        """Drain what is already buffered, then stop."""
        if not self._thread:
            return
        self._events.put(_STOP)
        self._thread.join(timeout=timeout)
        self._thread = None

    def _run(self):
        while True:
            event = self._events.get()
            if event is _STOP:
                break
            self.handle(event)

    # ---------------- Projection ----------------
    def handle(self, event):
        try:
            if event.kind == "progress":
                self._on_progress(event)
            elif event.kind == "completed":
                self._on_completed(event)
            elif event.kind == "failed":
                self._on_failed(event)
            else:
                logger.warning(f"Unknown event kind {event.kind!r} for job {event.job.id}")
        except Exception:
            logger.exception(f"Projection of {event.kind} event for job {event.job.id} failed")

    def _on_progress(self, event):
        job = event.job
        if event.stage == "initializing":
            fields = {"status": "processing", "jobId": job.id}
            if job.attempts_made == 0:
                fields["processingStartedAt"] = iso(self.clock())
            self._update(job.conversion_id, fields)
            if job.attempts_made == 0:
                self._notify(collaborators.STARTED, job, status="processing", message="Conversion processing")

        self._notify(collaborators.PROGRESS, job, status="processing",
                     progress=event.progress, stage=event.stage)

    def _on_completed(self, event):
        job = event.job
        result = event.result or {}
        now = iso(self.clock())
        fields = {
            "status": "completed",
            "completedAt": now,
            "processingEndedAt": now,
            "pageCount": result.get("page_count"),
            "conversionTime": result.get("conversion_time"),
        }
        if result.get("result_file_id"):
            fields["resultFileId"] = result["result_file_id"]
        self._update(job.conversion_id, fields)
        self._notify(collaborators.COMPLETED, job, status="completed", message="Conversion completed",
                     details=result)

    def _on_failed(self, event):
        job = event.job
        failure = event.failure
        if failure is None:
            # retries stay invisible to the user; keep the attempt's error for debugging
            self._update(job.conversion_id, {
                "lastAttemptError": event.error,
                "attemptsMade": job.attempts_made,
            })
            return

        logger.error(f"Job {failure.job_id} failed for good: {failure.error} "
                     f"(attempts={failure.attempts_made}/{job.max_attempts})")
        self._update(job.conversion_id, {
            "status": "failed",
            "error": failure.error,
            "attemptsMade": failure.attempts_made,
            "processingEndedAt": iso(self.clock()),
        })
        self._notify(collaborators.FAILED, job, status="failed", message=failure.error,
                     details={"attemptsMade": failure.attempts_made, "maxAttempts": job.max_attempts})

    def _update(self, conversion_id, fields):
        try:
            self.records.update_status(conversion_id, fields)
        except Exception:
            logger.exception(f"Failed to update conversion record {conversion_id}")

    def _notify(self, event_type, job, **extra):
        payload = {"userId": job.user_id, "conversionId": job.conversion_id}
        payload.update({k: v for k, v in extra.items() if v is not None})
        try:
            self.notifier.notify(event_type, payload)
        except Exception:
            logger.exception(f"Notification {event_type} for conversion {job.conversion_id} failed")
