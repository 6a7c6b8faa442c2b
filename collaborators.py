# collaborators.py
"""Services the scheduler talks to but does not own: conversion routines,
the conversion record store and the notification channel."""
import json
import os
import shlex
import subprocess
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Protocol

from logs import get_logger
from storage import iso

logger = get_logger("collaborators")

STARTED = "conversion:started"
PROGRESS = "conversion:progress"
COMPLETED = "conversion:completed"
FAILED = "conversion:failed"


@dataclass
class ConversionResult:
    success: bool
    page_count: Optional[int] = None
    conversion_time: Optional[float] = None
    error: Optional[str] = None
    result_file_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class ConversionRoutine(Protocol):
    def execute(self, source_file_path: str, output_file_path: str, quality: str,
                preserve_formatting: bool) -> ConversionResult:
        ...


class ConversionRecordStore(Protocol):
    def update_status(self, conversion_id: str, fields: Dict[str, Any]) -> None:
        ...


class NotificationChannel(Protocol):
    def notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        ...


# ---------------- Conversion routines ----------------
class CommandConversionRoutine:
    """Runs an external converter, e.g. LibreOffice in headless mode.

    The template is formatted with shell-quoted ``source``, ``output``,
    ``output_dir`` and ``quality``.
    """

    def __init__(self, command_template, timeout_seconds=None):
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def execute(self, source_file_path, output_file_path, quality, preserve_formatting):
        output_dir = os.path.dirname(output_file_path) or "."
        os.makedirs(output_dir, exist_ok=True)
        command = self.command_template.format(
            source=shlex.quote(source_file_path),
            output=shlex.quote(output_file_path),
            output_dir=shlex.quote(output_dir),
            quality=shlex.quote(quality),
        )

        start = time.monotonic()
        try:
            proc = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return ConversionResult(success=False, error="timeout",
                                    conversion_time=time.monotonic() - start)

        elapsed = time.monotonic() - start
        if proc.returncode != 0:
            error = (proc.stderr or proc.stdout or "").strip() or f"exit code {proc.returncode}"
            return ConversionResult(success=False, error=error, conversion_time=elapsed)
        if not os.path.exists(output_file_path):
            return ConversionResult(success=False, error="converter produced no output file",
                                    conversion_time=elapsed)
        return ConversionResult(success=True, conversion_time=elapsed)


# ---------------- Conversion records ----------------
class MemoryConversionRecords:
    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def update_status(self, conversion_id, fields):
        with self._lock:
            self._records.setdefault(conversion_id, {}).update(fields)

    def get(self, conversion_id):
        with self._lock:
            record = self._records.get(conversion_id)
            return dict(record) if record is not None else None


class SqliteConversionRecords:
    """Conversion records kept in a ``conversions`` table next to the queue."""

    def __init__(self, storage):
        self.storage = storage
        with storage.transaction() as cur:
            cur.execute("""
            CREATE TABLE IF NOT EXISTS conversions (
                conversion_id TEXT PRIMARY KEY,
                status TEXT,
                fields TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)

    def update_status(self, conversion_id, fields):
        with self.storage.transaction() as cur:
            cur.execute("SELECT fields FROM conversions WHERE conversion_id=?", (conversion_id,))
            row = cur.fetchone()
            merged = json.loads(row["fields"]) if row else {}
            merged.update(fields)
            cur.execute("""
                INSERT INTO conversions (conversion_id, status, fields, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(conversion_id) DO UPDATE
                SET status=excluded.status, fields=excluded.fields, updated_at=excluded.updated_at
            """, (conversion_id, merged.get("status"), json.dumps(merged, default=str),
                  iso(self.storage.now())))

    def get(self, conversion_id):
        with self.storage.transaction() as cur:
            cur.execute("SELECT fields FROM conversions WHERE conversion_id=?", (conversion_id,))
            row = cur.fetchone()
        return json.loads(row["fields"]) if row else None


# ---------------- Notifications ----------------
class LogNotifier:
    def notify(self, event_type, payload):
        logger.info(f"Notification {event_type}: {json.dumps(payload, sort_keys=True, default=str)}")


class EventNotifier:
    """In-process listeners, global and per user."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def listen(self, event_type, callback):
        with self._lock:
            self._listeners[event_type].append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners[event_type]:
                    self._listeners[event_type].remove(callback)

        return unsubscribe

    def listen_user(self, user_id, event_type, callback):
        return self.listen(f"user:{user_id}:{event_type}", callback)

    def notify(self, event_type, payload):
        channels = [event_type]
        if payload.get("userId"):
            channels.append(f"user:{payload['userId']}:{event_type}")
        for channel in channels:
            with self._lock:
                callbacks = list(self._listeners.get(channel, ()))
            for callback in callbacks:
                try:
                    callback(payload)
                except Exception:
                    logger.exception(f"Listener for {channel} failed")
