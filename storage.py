# storage.py
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from errors import LockNotOwned, QueueUnavailable
from logs import get_logger, log_transition
from models import ACTIVE, COMPLETED, FAILED, WAITING, Job
from policy import retry_delay_ms

logger = get_logger("storage")

JOB_COLUMNS = (
    "id", "conversion_id", "user_id", "user_tier", "source_file_path", "output_file_path",
    "original_filename", "conversion_type", "quality", "preserve_formatting", "priority",
    "max_attempts", "backoff_type", "backoff_delay_ms", "state", "attempts_made",
    "lock_owner", "lock_expires_at", "next_run_at", "enqueued_at", "started_at",
    "finished_at", "progress", "progress_stage", "error", "result",
)


def utcnow():
    return datetime.now(timezone.utc)


def iso(dt):
    # fixed-width so that string comparison in SQL matches time order
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


class Storage:
    """SQLite-backed queue store.

    Every mutation runs inside ``BEGIN IMMEDIATE`` so that dequeue-and-lock,
    the fail-or-retry decision and stall reclamation are atomic per job, also
    across processes sharing the same database file.
    """

    def __init__(self, db_path="queue.db", clock=None, lock_duration_seconds=300,
                 retention_count=100, retention_age_seconds=86400):
        self.db_path = db_path
        self.clock = clock or utcnow
        self.lock_duration_seconds = lock_duration_seconds
        self.retention_count = retention_count
        self.retention_age_seconds = retention_age_seconds
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
            self.conn.row_factory = sqlite3.Row

            # Better concurrency for multiple workers
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")

            self._init_schema()
        except sqlite3.Error as e:
            raise QueueUnavailable(f"Cannot open queue database {db_path}: {e}") from e

    def _init_schema(self):
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            conversion_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            user_tier TEXT NOT NULL,
            source_file_path TEXT NOT NULL,
            output_file_path TEXT NOT NULL,
            original_filename TEXT NOT NULL,
            conversion_type TEXT NOT NULL,
            quality TEXT NOT NULL,
            preserve_formatting INTEGER NOT NULL DEFAULT 1,
            priority INTEGER NOT NULL,
            max_attempts INTEGER NOT NULL,
            backoff_type TEXT NOT NULL DEFAULT 'exponential',
            backoff_delay_ms INTEGER NOT NULL DEFAULT 5000,
            state TEXT NOT NULL,
            attempts_made INTEGER NOT NULL DEFAULT 0,
            lock_owner TEXT,
            lock_expires_at TEXT,
            next_run_at TEXT NOT NULL,
            enqueued_at TEXT NOT NULL,
            started_at TEXT,
            finished_at TEXT,
            progress INTEGER NOT NULL DEFAULT 0,
            progress_stage TEXT,
            error TEXT,
            result TEXT,
            updated_at TEXT NOT NULL
        )
        """)
        self.conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_jobs_ready
        ON jobs (state, priority, next_run_at)
        """)

        # terminal failures outlive a re-submission of the same conversion
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS failed_history (
            job_id TEXT NOT NULL,
            conversion_id TEXT NOT NULL,
            attempts_made INTEGER NOT NULL,
            max_attempts INTEGER NOT NULL,
            error TEXT,
            enqueued_at TEXT NOT NULL,
            finished_at TEXT,
            archived_at TEXT NOT NULL
        )
        """)

        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

    @contextmanager
    def transaction(self):
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn.cursor()
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def now(self):
        return self.clock()

    def close(self):
        with self._lock:
            self.conn.close()

    # ---------------- Rows ----------------
    @staticmethod
    def _row_to_job(row):
        data = {col: row[col] for col in JOB_COLUMNS}
        data["preserve_formatting"] = bool(data["preserve_formatting"])
        data["result"] = json.loads(data["result"]) if data["result"] else None
        return Job(**data)

    def _fetch(self, cur, job_id):
        cur.execute("SELECT * FROM jobs WHERE id=?", (job_id,))
        row = cur.fetchone()
        return self._row_to_job(row) if row else None

    # ---------------- Enqueue ----------------
    def enqueue(self, job):
        """Insert ``job`` as waiting. Returns ``(job, created)``.

        A non-terminal job with the same id is returned unchanged; a terminal
        one is replaced by the new attempt group. A replaced failure is copied
        to ``failed_history`` first.
        """
        try:
            with self.transaction() as cur:
                existing = self._fetch(cur, job.id)
                if existing and not existing.is_terminal:
                    return existing, False

                now_iso = iso(self.now())
                if existing and existing.state == FAILED:
                    cur.execute("""
                        INSERT INTO failed_history (job_id, conversion_id, attempts_made, max_attempts,
                            error, enqueued_at, finished_at, archived_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, (existing.id, existing.conversion_id, existing.attempts_made, existing.max_attempts,
                          existing.error, existing.enqueued_at, existing.finished_at, now_iso))
                if existing:
                    cur.execute("DELETE FROM jobs WHERE id=?", (job.id,))

                cur.execute("""
                    INSERT INTO jobs (id, conversion_id, user_id, user_tier, source_file_path,
                        output_file_path, original_filename, conversion_type, quality,
                        preserve_formatting, priority, max_attempts, backoff_type, backoff_delay_ms,
                        state, attempts_made, next_run_at, enqueued_at, progress, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'waiting', 0, ?, ?, 0, ?)
                """, (job.id, job.conversion_id, job.user_id, job.user_tier, job.source_file_path,
                      job.output_file_path, job.original_filename, job.conversion_type, job.quality,
                      int(job.preserve_formatting), job.priority, job.max_attempts, job.backoff_type,
                      job.backoff_delay_ms, now_iso, now_iso, now_iso))
                created = self._fetch(cur, job.id)
        except sqlite3.Error as e:
            raise QueueUnavailable(f"Failed to enqueue job {job.id}: {e}") from e

        log_transition(logger, job.id, "new", WAITING, f"(priority={job.priority}, max_attempts={job.max_attempts})")
        return created, True

    # ---------------- Dequeue ----------------
    def dequeue_next(self, worker_id):
        """Claim the best ready job for ``worker_id``, or return None.

        Lowest priority value first, then the earliest time the job became
        eligible, then insertion order.
        """
        now = self.now()
        now_iso = iso(now)
        lock_until = iso(now + timedelta(seconds=self.lock_duration_seconds))

        with self.transaction() as cur:
            cur.execute("""
                SELECT id FROM jobs
                WHERE state='waiting' AND next_run_at <= ?
                ORDER BY priority ASC, next_run_at ASC, rowid ASC
                LIMIT 1
            """, (now_iso,))
            row = cur.fetchone()
            if not row:
                return None

            job_id = row["id"]
            cur.execute("""
                UPDATE jobs
                SET state='active', lock_owner=?, lock_expires_at=?, started_at=COALESCE(started_at, ?),
                    progress=0, progress_stage=NULL, updated_at=?
                WHERE id=? AND state='waiting'
            """, (worker_id, lock_until, now_iso, now_iso, job_id))
            job = self._fetch(cur, job_id)

        log_transition(logger, job_id, WAITING, ACTIVE, f"(claimed by {worker_id}, attempt {job.attempts_made + 1}/{job.max_attempts})")
        return job

    def renew_lock(self, job_id, worker_id):
        now = self.now()
        lock_until = iso(now + timedelta(seconds=self.lock_duration_seconds))
        with self.transaction() as cur:
            updated = cur.execute("""
                UPDATE jobs SET lock_expires_at=?, updated_at=?
                WHERE id=? AND state='active' AND lock_owner=?
            """, (lock_until, iso(now), job_id, worker_id)).rowcount
        if updated != 1:
            raise LockNotOwned(job_id, worker_id)
        return lock_until

    def report_progress(self, job_id, progress, stage=None):
        progress = max(0, min(100, int(progress)))
        with self.transaction() as cur:
            updated = cur.execute("""
                UPDATE jobs SET progress=?, progress_stage=?, updated_at=?
                WHERE id=?
            """, (progress, stage, iso(self.now()), job_id)).rowcount
        return updated == 1

    # ---------------- Outcomes ----------------
    def complete(self, job_id, worker_id, result=None):
        now_iso = iso(self.now())
        with self.transaction() as cur:
            updated = cur.execute("""
                UPDATE jobs
                SET state='completed', lock_owner=NULL, lock_expires_at=NULL, finished_at=?,
                    progress=100, error=NULL, result=?, updated_at=?
                WHERE id=? AND state='active' AND lock_owner=?
            """, (now_iso, json.dumps(result) if result is not None else None, now_iso,
                  job_id, worker_id)).rowcount
            if updated != 1:
                raise LockNotOwned(job_id, worker_id)
            job = self._fetch(cur, job_id)
            self._purge_completed(cur)

        log_transition(logger, job_id, ACTIVE, COMPLETED, f"(attempts={job.attempts_made + 1})")
        return job

    def fail(self, job_id, worker_id, error):
        """Record a failed attempt; the job is retried or becomes terminal."""
        with self.transaction() as cur:
            cur.execute("SELECT * FROM jobs WHERE id=? AND state='active' AND lock_owner=?",
                        (job_id, worker_id))
            row = cur.fetchone()
            if not row:
                raise LockNotOwned(job_id, worker_id)
            self._apply_failure(cur, self._row_to_job(row), error)
            return self._fetch(cur, job_id)

    def _apply_failure(self, cur, job, error):
        now = self.now()
        now_iso = iso(now)
        attempts = job.attempts_made + 1
        if attempts >= job.max_attempts:
            cur.execute("""
                UPDATE jobs
                SET state='failed', attempts_made=?, error=?, lock_owner=NULL, lock_expires_at=NULL,
                    finished_at=?, updated_at=?
                WHERE id=?
            """, (attempts, error, now_iso, now_iso, job.id))
            log_transition(logger, job.id, ACTIVE, FAILED, f"(attempts={attempts}/{job.max_attempts}, error={error})")
        else:
            delay = retry_delay_ms(job.backoff_delay_ms, attempts, job.backoff_type)
            next_run_at = iso(now + timedelta(milliseconds=delay))
            cur.execute("""
                UPDATE jobs
                SET state='waiting', attempts_made=?, error=?, lock_owner=NULL, lock_expires_at=NULL,
                    next_run_at=?, updated_at=?
                WHERE id=?
            """, (attempts, error, next_run_at, now_iso, job.id))
            log_transition(logger, job.id, ACTIVE, WAITING,
                           f"(attempts={attempts}/{job.max_attempts}, retry_in={delay}ms, error={error})")

    def reclaim_expired_locks(self):
        """Return stalled active jobs to waiting (or terminal failure)."""
        now_iso = iso(self.now())
        with self.transaction() as cur:
            cur.execute("""
                SELECT * FROM jobs
                WHERE state='active' AND lock_expires_at IS NOT NULL AND lock_expires_at < ?
                ORDER BY priority ASC, rowid ASC
            """, (now_iso,))
            stalled = [self._row_to_job(row) for row in cur.fetchall()]
            for job in stalled:
                self._apply_failure(cur, job, "stalled")
            return [self._fetch(cur, job.id) for job in stalled]

    # ---------------- Retention ----------------
    def _purge_completed(self, cur):
        cutoff = iso(self.now() - timedelta(seconds=self.retention_age_seconds))
        removed = cur.execute("""
            DELETE FROM jobs WHERE state='completed' AND finished_at < ?
        """, (cutoff,)).rowcount
        removed += cur.execute("""
            DELETE FROM jobs WHERE state='completed' AND id NOT IN (
                SELECT id FROM jobs WHERE state='completed'
                ORDER BY finished_at DESC, rowid DESC LIMIT ?
            )
        """, (self.retention_count,)).rowcount
        return removed

    def purge_completed(self):
        """Apply completed-job retention; terminal failures are never purged."""
        with self.transaction() as cur:
            return self._purge_completed(cur)

    # ---------------- Queries ----------------
    def get_job(self, job_id):
        with self._lock:
            return self._fetch(self.conn.cursor(), job_id)

    def list_jobs(self, state=None, limit=None):
        query = "SELECT * FROM jobs"
        params = []
        if state:
            query += " WHERE state=?"
            params.append(state)
        query += " ORDER BY enqueued_at DESC, rowid DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def get_queue_stats(self):
        now_iso = iso(self.now())
        with self._lock:
            row = self.conn.execute("""
                SELECT
                    SUM(CASE WHEN state='waiting' AND next_run_at <= ? THEN 1 ELSE 0 END) AS waiting,
                    SUM(CASE WHEN state='waiting' AND next_run_at > ? THEN 1 ELSE 0 END) AS delayed,
                    SUM(CASE WHEN state='active' THEN 1 ELSE 0 END) AS active,
                    SUM(CASE WHEN state='completed' THEN 1 ELSE 0 END) AS completed,
                    SUM(CASE WHEN state='failed' THEN 1 ELSE 0 END) AS failed
                FROM jobs
            """, (now_iso, now_iso)).fetchone()
        return {key: row[key] or 0 for key in ("waiting", "active", "completed", "failed", "delayed")}

    def failure_history(self, job_id):
        """Earlier terminal failures of ``job_id``, oldest first."""
        with self._lock:
            rows = self.conn.execute("""
                SELECT attempts_made, max_attempts, error, enqueued_at, finished_at, archived_at
                FROM failed_history WHERE job_id=? ORDER BY rowid
            """, (job_id,)).fetchall()
        return [dict(row) for row in rows]

    def remove_job(self, job_id):
        with self.transaction() as cur:
            removed = cur.execute("DELETE FROM jobs WHERE id=?", (job_id,)).rowcount
        if removed:
            logger.info(f"Job {job_id} removed")
        return removed == 1

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        with self._lock:
            row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = iso(self.now())
        with self.transaction() as cur:
            cur.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))

    def list_config(self):
        with self._lock:
            rows = self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()
        return [dict(row) for row in rows]
