# settings.py
from dataclasses import dataclass, fields
from typing import Optional

# config table key -> (field name, type)
CONFIG_KEYS = {
    "concurrency": int,
    "lock_duration_seconds": int,
    "lock_renew_seconds": float,
    "poll_interval": float,
    "reclaim_interval_seconds": float,
    "retention_count": int,
    "retention_age_seconds": int,
    "event_buffer": int,
}


@dataclass
class SchedulerSettings:
    db_path: str = "queue.db"
    concurrency: int = 2
    lock_duration_seconds: int = 300
    lock_renew_seconds: Optional[float] = None
    poll_interval: float = 1.0
    reclaim_interval_seconds: float = 30
    retention_count: int = 100
    retention_age_seconds: int = 86400
    event_buffer: int = 1000

    def __post_init__(self):
        if self.lock_renew_seconds is None:
            self.lock_renew_seconds = self.lock_duration_seconds / 3
        self.validate()

    def validate(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.lock_duration_seconds <= 0:
            raise ValueError("lock_duration_seconds must be positive")
        # the lock has to be renewed before half of it has elapsed
        if not 0 < self.lock_renew_seconds < self.lock_duration_seconds / 2:
            raise ValueError("lock_renew_seconds must be below half of lock_duration_seconds")
        if self.retention_count < 0 or self.retention_age_seconds < 0:
            raise ValueError("retention limits cannot be negative")


def load_settings(storage=None, **overrides):
    """Build settings from the config table, then apply explicit overrides.

    Overrides set to None are ignored so CLI options can be passed straight
    through.
    """
    values = {}
    if storage is not None:
        values["db_path"] = storage.db_path
        for key, cast in CONFIG_KEYS.items():
            raw = storage.get_config(key)
            if raw is None:
                continue
            try:
                values[key] = cast(raw)
            except ValueError as e:
                raise ValueError(f"Invalid config value {key}={raw!r}") from e

    known = {f.name for f in fields(SchedulerSettings)}
    for key, value in overrides.items():
        if key not in known:
            raise TypeError(f"Unknown setting: {key}")
        if value is not None:
            values[key] = value
    return SchedulerSettings(**values)
