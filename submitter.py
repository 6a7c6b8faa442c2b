# submitter.py
import math
import sqlite3
from dataclasses import dataclass

from errors import InvalidSubmission
from logs import get_logger
from models import Job
from policy import policy_for_tier

logger = get_logger("submitter")

# ms per MB, by source file type and quality
PROCESSING_RATES = {
    "pdf": {"high": 2500, "standard": 1200},
    "docx": {"high": 2000, "standard": 1000},
}

# share of the waiting queue a tier effectively sees ahead of it
QUEUE_POSITION_FACTOR = {
    "enterprise": 0.2,
    "premium": 0.5,
    "basic": 0.8,
    "free": 1.0,
}

MINIMUM_ESTIMATE_MS = 3000


@dataclass
class JobHandle:
    job_id: str
    created: bool
    priority: int
    max_attempts: int
    queue_position: int = 0
    estimated_time_ms: int = 0


def job_id_for(conversion_id):
    return f"conversion:{conversion_id}"


def estimate_conversion_time(file_type, file_size, quality, queue_position):
    """Rough time to result in ms, including the wait in the queue."""
    size_mb = max(0.1, file_size / (1024 * 1024))
    rates = PROCESSING_RATES.get(file_type, PROCESSING_RATES["pdf"])
    rate = rates.get(quality, rates["standard"])

    processing = size_mb * rate
    # large files don't scale linearly
    processing *= 1 + 0.1 * math.log10(max(1, size_mb))

    if queue_position == 0:
        queue_delay = 0
    else:
        queue_delay = 15000 * min(queue_position, 5) + 5000 * max(0, queue_position - 5)

    return round(max(MINIMUM_ESTIMATE_MS, processing + queue_delay))


class JobSubmitter:
    def __init__(self, storage):
        self.storage = storage

    def submit(self, payload, user_tier):
        """Enqueue a conversion. Re-submitting the same conversion is a no-op.

        Raises QueueUnavailable when the store cannot be reached; nothing is
        retried here.
        """
        if not payload.conversion_id:
            raise InvalidSubmission("conversion_id is required")

        policy = policy_for_tier(user_tier)
        job = Job(
            id=job_id_for(payload.conversion_id),
            conversion_id=payload.conversion_id,
            user_id=payload.user_id,
            user_tier=user_tier,
            source_file_path=payload.source_file_path,
            output_file_path=payload.output_file_path,
            original_filename=payload.original_filename,
            conversion_type=payload.conversion_type,
            quality=payload.quality,
            preserve_formatting=payload.preserve_formatting,
            priority=policy.priority,
            max_attempts=policy.max_attempts,
            backoff_type=policy.backoff_type,
            backoff_delay_ms=policy.backoff_delay_ms,
        )
        stored, created = self.storage.enqueue(job)

        try:
            waiting = self.storage.get_queue_stats()["waiting"]
        except sqlite3.Error as e:
            # the job is already stored; only the estimate suffers
            logger.warning(f"Queue stats unavailable for estimate: {e}")
            waiting = 0
        queue_position = round(waiting * QUEUE_POSITION_FACTOR.get(user_tier, 1.0))
        file_type = "pdf" if payload.conversion_type == "pdf-to-docx" else "docx"
        estimated = estimate_conversion_time(file_type, payload.file_size, payload.quality, queue_position)

        if created:
            logger.info(f"Conversion {payload.conversion_id} queued as {stored.id} "
                        f"(tier={user_tier}, priority={stored.priority}, queue_position={waiting})")
        else:
            logger.info(f"Conversion {payload.conversion_id} already queued as {stored.id} (state={stored.state})")

        return JobHandle(
            job_id=stored.id,
            created=created,
            priority=stored.priority,
            max_attempts=stored.max_attempts,
            queue_position=queue_position,
            estimated_time_ms=estimated,
        )
