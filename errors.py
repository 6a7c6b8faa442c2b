# errors.py


class SchedulerError(Exception):
    pass


class QueueUnavailable(SchedulerError):
    """The queue store could not be reached while submitting."""


class InvalidSubmission(SchedulerError, ValueError):
    pass


class LockNotOwned(SchedulerError):
    def __init__(self, job_id, worker_id):
        super().__init__(f"Job {job_id} is not locked by {worker_id}")
        self.job_id = job_id
        self.worker_id = worker_id


class ExecutionFailure(SchedulerError):
    pass


class StallTimeout(ExecutionFailure):
    reason = "stalled"

    def __init__(self, job_id):
        super().__init__("stalled")
        self.job_id = job_id


class TerminalFailure(SchedulerError):
    def __init__(self, job_id, attempts_made, error):
        super().__init__(f"Job {job_id} failed after {attempts_made} attempt(s): {error}")
        self.job_id = job_id
        self.attempts_made = attempts_made
        self.error = error
