# models.py
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional

from errors import TerminalFailure

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATES = {COMPLETED, FAILED}

CONVERSION_TYPES = ("pdf-to-docx", "docx-to-pdf")


@dataclass
class ConversionPayload:
    """Task payload carried by a job; opaque to the scheduler."""
    conversion_id: str
    user_id: str
    source_file_path: str
    output_file_path: str
    original_filename: str
    conversion_type: str = "pdf-to-docx"
    quality: str = "high"
    preserve_formatting: bool = True
    file_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Job:
    id: str
    conversion_id: str
    user_id: str
    user_tier: str
    source_file_path: str
    output_file_path: str
    original_filename: str
    conversion_type: str
    quality: str
    preserve_formatting: bool
    priority: int
    max_attempts: int
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 5000
    state: str = WAITING   # waiting | active | completed | failed
    attempts_made: int = 0
    lock_owner: Optional[str] = None
    lock_expires_at: Optional[str] = None
    next_run_at: Optional[str] = None
    enqueued_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    progress: int = 0
    progress_stage: Optional[str] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def payload(self) -> ConversionPayload:
        return ConversionPayload(
            conversion_id=self.conversion_id,
            user_id=self.user_id,
            source_file_path=self.source_file_path,
            output_file_path=self.output_file_path,
            original_filename=self.original_filename,
            conversion_type=self.conversion_type,
            quality=self.quality,
            preserve_formatting=self.preserve_formatting,
        )

    def status(self) -> Dict[str, Any]:
        """Shape returned to status-polling collaborators."""
        return {
            "id": self.id,
            "conversion_id": self.conversion_id,
            "state": self.state,
            "priority": self.priority,
            "progress": self.progress,
            "stage": self.progress_stage,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "error": self.error,
            "enqueued_at": self.enqueued_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "next_run_at": self.next_run_at,
        }


@dataclass
class WorkerEvent:
    """Lifecycle event passed from workers (and the reclaimer) to the projector."""
    kind: str   # progress | completed | failed
    job: Job
    progress: int = 0
    stage: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.kind == "failed" and self.job.state == FAILED

    @property
    def failure(self) -> Optional[TerminalFailure]:
        if not self.terminal:
            return None
        return TerminalFailure(self.job.id, self.job.attempts_made, self.error)
