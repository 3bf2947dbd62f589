"""SQLite backed job store used by the message dispatcher."""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .errors import DuplicateMessageError, StorageError, ValidationError
from .retry import DEFAULT_MAX_ATTEMPTS, calculate_retry_delay

PRIORITY_RANKS = {"HIGH": 3, "NORMAL": 2, "LOW": 1}
DEFAULT_PRIORITY = "NORMAL"

JOB_STATUSES = ("waiting", "active", "completed", "failed", "delayed", "paused")
TERMINAL_STATUSES = ("completed", "failed")

REQUIRED_PAYLOAD_FIELDS = ("chat_id", "message", "formatted_number", "original_number")

_JOB_COLUMNS = """
    id, message_id, chat_id, message, formatted_number, original_number,
    priority, status, attempts, max_attempts, next_retry, delay, progress,
    result, failed_reason, last_error, created_at, updated_at,
    processed_at, completed_at, failed_at, stalled_at
"""

_READY_ORDER = "ORDER BY priority_rank DESC, created_at ASC, rowid ASC"


def utc_now_ms() -> int:
    """Return the current UTC time as milliseconds since epoch."""
    return int(time.time() * 1000)


def _new_id(prefix: str, ts: int) -> str:
    return f"{prefix}_{ts}_{uuid.uuid4().hex[:9]}"


class Persistence:
    """Durable record of queued messages and their retry state."""

    def __init__(
        self,
        db_path: str = "/data/message_service.db",
        *,
        base_delay_ms: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
    ):
        """Persist data to the given database file."""
        self.db_path = db_path
        self._backoff_kwargs: Dict[str, int] = {}
        if base_delay_ms is not None:
            self._backoff_kwargs["base_delay_ms"] = int(base_delay_ms)
        if max_delay_ms is not None:
            self._backoff_kwargs["max_delay_ms"] = int(max_delay_ms)
        # Serialises write transactions issued from this process.
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection, turning driver failures into :class:`StorageError`."""
        try:
            async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
                yield db
        except aiosqlite.Error as exc:
            raise StorageError(f"Job storage failure: {exc}") from exc

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the block inside a single-writer ``BEGIN IMMEDIATE`` transaction."""
        async with self._write_lock:
            async with self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    yield db
                except BaseException:
                    await db.execute("ROLLBACK")
                    raise
                await db.execute("COMMIT")

    async def init_db(self) -> None:
        """Create (or migrate) the database schema."""
        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    message_id TEXT NOT NULL UNIQUE,
                    chat_id TEXT NOT NULL,
                    message TEXT NOT NULL,
                    formatted_number TEXT NOT NULL,
                    original_number TEXT NOT NULL,
                    priority TEXT NOT NULL DEFAULT 'NORMAL',
                    priority_rank INTEGER NOT NULL DEFAULT 2,
                    status TEXT NOT NULL DEFAULT 'waiting',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 5,
                    next_retry INTEGER NOT NULL,
                    delay INTEGER NOT NULL DEFAULT 0,
                    progress INTEGER NOT NULL DEFAULT 0,
                    result TEXT,
                    failed_reason TEXT,
                    last_error TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    processed_at INTEGER,
                    completed_at INTEGER,
                    failed_at INTEGER,
                    stalled_at INTEGER,
                    CHECK (attempts <= max_attempts)
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_retry ON jobs(status, next_retry)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_priority_created ON jobs(priority_rank, created_at)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_number_status ON jobs(formatted_number, status)")

    # Decoding -----------------------------------------------------------------
    @staticmethod
    def _decode_job_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        result = data.get("result")
        if result is not None:
            try:
                data["result"] = json.loads(result)
            except json.JSONDecodeError:
                data["result"] = {"raw_result": result}
        return data

    async def _fetch_jobs(self, db: aiosqlite.Connection, query: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        async with db.execute(query, params) as cur:
            rows = await cur.fetchall()
            cols = [c[0] for c in cur.description]
        return [self._decode_job_row(row, cols) for row in rows]

    # Submit -------------------------------------------------------------------
    async def enqueue(
        self,
        payload: Dict[str, Any],
        priority: str = DEFAULT_PRIORITY,
        delay_ms: int = 0,
        *,
        message_id: Optional[str] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Persist a new job and return its identity and initial status."""
        if not isinstance(payload, dict):
            raise ValidationError("payload must be a mapping")
        for field in REQUIRED_PAYLOAD_FIELDS:
            value = payload.get(field)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ValidationError(f"missing {field}", field=field)
        label = str(priority or DEFAULT_PRIORITY).upper()
        if label not in PRIORITY_RANKS:
            raise ValidationError(f"unknown priority '{priority}'", field="priority")
        try:
            delay = int(delay_ms or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError("delay must be an integer", field="delay") from exc
        if delay < 0:
            raise ValidationError("delay must not be negative", field="delay")
        if int(max_attempts) < 1:
            raise ValidationError("max_attempts must be at least 1", field="max_attempts")

        ts = now_ms if now_ms is not None else utc_now_ms()
        job_id = _new_id("job", ts)
        msg_id = message_id or payload.get("message_id") or _new_id("msg", ts)
        status = "delayed" if delay > 0 else "waiting"

        async with self._write_lock:
            async with self._connect() as db:
                try:
                    await db.execute(
                        """
                        INSERT INTO jobs (
                            id, message_id, chat_id, message, formatted_number, original_number,
                            priority, priority_rank, status, attempts, max_attempts,
                            next_retry, delay, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                        """,
                        (
                            job_id,
                            msg_id,
                            payload["chat_id"],
                            payload["message"],
                            payload["formatted_number"],
                            payload["original_number"],
                            label,
                            PRIORITY_RANKS[label],
                            status,
                            int(max_attempts),
                            ts + delay,
                            delay,
                            ts,
                            ts,
                        ),
                    )
                except aiosqlite.IntegrityError as exc:
                    raise DuplicateMessageError(f"message_id '{msg_id}' already exists", field="message_id") from exc
        return {"job_id": job_id, "message_id": msg_id, "status": status, "priority": label}

    # Claiming -----------------------------------------------------------------
    async def claim_ready(self, limit: int, *, now_ms: Optional[int] = None) -> List[Dict[str, Any]]:
        """Atomically claim up to ``limit`` ready jobs and mark them active.

        Due ``delayed`` jobs are promoted to ``waiting`` first. Selection and the
        transition to ``active`` happen in one write transaction, so two
        concurrent claims never return the same job.
        """
        if limit <= 0:
            return []
        ts = now_ms if now_ms is not None else utc_now_ms()
        async with self._transaction() as db:
            await db.execute(
                "UPDATE jobs SET status='waiting', updated_at=? WHERE status='delayed' AND next_retry <= ?",
                (ts, ts),
            )
            jobs = await self._fetch_jobs(
                db,
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE status='waiting' AND next_retry <= ?
                {_READY_ORDER}
                LIMIT ?
                """,
                (ts, int(limit)),
            )
            if not jobs:
                return []
            ids = [job["id"] for job in jobs]
            placeholders = ",".join("?" for _ in ids)
            await db.execute(
                f"""
                UPDATE jobs SET status='active', processed_at=?, updated_at=?
                WHERE id IN ({placeholders}) AND status='waiting'
                """,
                (ts, ts, *ids),
            )
        for job in jobs:
            job["status"] = "active"
            job["processed_at"] = ts
            job["updated_at"] = ts
        return jobs

    async def mark_active(self, job_id: str, *, now_ms: Optional[int] = None) -> bool:
        """Claim a single waiting job; ``False`` when it was not waiting."""
        ts = now_ms if now_ms is not None else utc_now_ms()
        async with self._write_lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    UPDATE jobs SET status='active', processed_at=?, updated_at=?
                    WHERE id=? AND status='waiting'
                    """,
                    (ts, ts, job_id),
                )
                return cursor.rowcount > 0

    # Outcomes -----------------------------------------------------------------
    async def mark_completed(self, job_id: str, result: Any = None, *, now_ms: Optional[int] = None) -> bool:
        """Mark an active job as completed with the provider's result."""
        ts = now_ms if now_ms is not None else utc_now_ms()
        async with self._write_lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    UPDATE jobs
                    SET status='completed', progress=100, completed_at=?, result=?, updated_at=?
                    WHERE id=? AND status='active'
                    """,
                    (ts, json.dumps(result) if result is not None else None, ts, job_id),
                )
                return cursor.rowcount > 0

    async def mark_failed(self, job_id: str, reason: Optional[str] = None, *, now_ms: Optional[int] = None) -> bool:
        """Fail a job immediately, regardless of its remaining attempts."""
        ts = now_ms if now_ms is not None else utc_now_ms()
        async with self._write_lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    UPDATE jobs
                    SET status='failed', failed_at=?, failed_reason=?, last_error=?, updated_at=?
                    WHERE id=? AND status NOT IN ('completed', 'failed')
                    """,
                    (ts, reason, reason, ts, job_id),
                )
                return cursor.rowcount > 0

    async def _increment_locked(
        self,
        db: aiosqlite.Connection,
        job: Dict[str, Any],
        error: Optional[str],
        ts: int,
        *,
        stalled: bool,
    ) -> Dict[str, Any]:
        attempts = int(job["attempts"]) + 1
        max_attempts = int(job["max_attempts"])
        stalled_at = ts if stalled else job.get("stalled_at")
        if attempts >= max_attempts:
            attempts = max_attempts
            await db.execute(
                """
                UPDATE jobs
                SET attempts=?, last_error=?, failed_reason=?, status='failed',
                    failed_at=?, stalled_at=?, updated_at=?
                WHERE id=?
                """,
                (attempts, error, error, ts, stalled_at, ts, job["id"]),
            )
            job.update(status="failed", failed_at=ts, failed_reason=error)
        else:
            next_retry = ts + calculate_retry_delay(attempts, **self._backoff_kwargs)
            await db.execute(
                """
                UPDATE jobs
                SET attempts=?, last_error=?, status='waiting', next_retry=?,
                    stalled_at=?, updated_at=?
                WHERE id=?
                """,
                (attempts, error, next_retry, stalled_at, ts, job["id"]),
            )
            job.update(status="waiting", next_retry=next_retry)
        job.update(attempts=attempts, last_error=error, stalled_at=stalled_at, updated_at=ts)
        return job

    async def increment_attempts(
        self,
        job_id: str,
        error: Optional[str] = None,
        *,
        stalled: bool = False,
        now_ms: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """Record a retryable failure: back to ``waiting`` with backoff, or ``failed``.

        Returns the updated job, or ``None`` when the job is missing or terminal.
        """
        ts = now_ms if now_ms is not None else utc_now_ms()
        async with self._transaction() as db:
            jobs = await self._fetch_jobs(
                db,
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id=? AND status NOT IN ('completed', 'failed')",
                (job_id,),
            )
            if not jobs:
                return None
            return await self._increment_locked(db, jobs[0], error, ts, stalled=stalled)

    async def update_progress(self, job_id: str, progress: int) -> bool:
        """Store an informational progress value clamped to [0, 100]."""
        value = max(0, min(100, int(progress)))
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE jobs SET progress=?
                WHERE id=? AND status NOT IN ('completed', 'failed')
                """,
                (value, job_id),
            )
            return cursor.rowcount > 0

    # Stalled jobs -------------------------------------------------------------
    async def find_stalled(self, cutoff_ms: int) -> List[Dict[str, Any]]:
        """Return active jobs whose processing started before ``cutoff_ms``."""
        async with self._connect() as db:
            return await self._fetch_jobs(
                db,
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE status='active' AND processed_at < ?
                ORDER BY processed_at ASC
                """,
                (cutoff_ms,),
            )

    async def reclaim_stalled(
        self,
        job_id: str,
        cutoff_ms: int,
        reason: str,
        *,
        now_ms: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """Requeue or fail a stalled job, only if it is still active past the cutoff."""
        ts = now_ms if now_ms is not None else utc_now_ms()
        async with self._transaction() as db:
            jobs = await self._fetch_jobs(
                db,
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id=? AND status='active' AND processed_at < ?",
                (job_id, cutoff_ms),
            )
            if not jobs:
                return None
            return await self._increment_locked(db, jobs[0], reason, ts, stalled=True)

    # Query --------------------------------------------------------------------
    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return a single job or ``None``."""
        async with self._connect() as db:
            jobs = await self._fetch_jobs(db, f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id=?", (job_id,))
        return jobs[0] if jobs else None

    async def get_job_by_message_id(self, message_id: str) -> Optional[Dict[str, Any]]:
        """Return the job correlated with a caller-assigned message id."""
        async with self._connect() as db:
            jobs = await self._fetch_jobs(db, f"SELECT {_JOB_COLUMNS} FROM jobs WHERE message_id=?", (message_id,))
        return jobs[0] if jobs else None

    async def get_jobs(self, status: Optional[str] = "waiting", start: int = 0, end: int = 10) -> List[Dict[str, Any]]:
        """Return a page of jobs with the given status, in claim order."""
        if status is not None and status not in JOB_STATUSES:
            raise ValidationError(f"unknown status '{status}'", field="status")
        limit = max(0, int(end) - int(start))
        query = f"SELECT {_JOB_COLUMNS} FROM jobs"
        params: Tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status=?"
            params = (status,)
        query += f" {_READY_ORDER} LIMIT ? OFFSET ?"
        async with self._connect() as db:
            return await self._fetch_jobs(db, query, (*params, limit, max(0, int(start))))

    async def get_stats(self) -> Dict[str, int]:
        """Return the number of jobs per status plus the total."""
        stats = {status: 0 for status in JOB_STATUSES}
        stats["total"] = 0
        async with self._connect() as db:
            async with db.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status") as cur:
                rows = await cur.fetchall()
        for status, count in rows:
            stats[status] = int(count)
            stats["total"] += int(count)
        return stats

    async def count_actionable(self) -> int:
        """Return the number of jobs not yet in a terminal state."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM jobs WHERE status NOT IN ('completed', 'failed')"
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    # Control ------------------------------------------------------------------
    async def pause_all(self) -> int:
        """Move every waiting or delayed job to ``paused``."""
        async with self._write_lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE jobs SET status='paused', updated_at=? WHERE status IN ('waiting', 'delayed')",
                    (utc_now_ms(),),
                )
                return cursor.rowcount

    async def resume_all(self) -> int:
        """Move every paused job back to ``waiting``."""
        async with self._write_lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE jobs SET status='waiting', updated_at=? WHERE status='paused'",
                    (utc_now_ms(),),
                )
                return cursor.rowcount

    async def clear_all(self) -> int:
        """Delete every job that is not currently active."""
        async with self._write_lock:
            async with self._connect() as db:
                cursor = await db.execute("DELETE FROM jobs WHERE status != 'active'")
                return cursor.rowcount

    async def clean_old_jobs(self, retention_hours: float = 24, *, now_ms: Optional[int] = None) -> int:
        """Delete completed and failed jobs older than the retention window."""
        ts = now_ms if now_ms is not None else utc_now_ms()
        cutoff = ts - int(float(retention_hours) * 3600 * 1000)
        async with self._write_lock:
            async with self._connect() as db:
                completed = await db.execute(
                    "DELETE FROM jobs WHERE status='completed' AND completed_at < ?",
                    (cutoff,),
                )
                failed = await db.execute(
                    "DELETE FROM jobs WHERE status='failed' AND failed_at < ?",
                    (cutoff,),
                )
                return completed.rowcount + failed.rowcount

    async def retry_job(self, job_id: str, *, now_ms: Optional[int] = None) -> bool:
        """Re-open a failed or paused job as ``waiting``.

        A failed job gets its attempts reset so it receives a full retry budget.
        """
        ts = now_ms if now_ms is not None else utc_now_ms()
        async with self._write_lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    UPDATE jobs
                    SET attempts = CASE WHEN status='failed' THEN 0 ELSE attempts END,
                        status='waiting', next_retry=?, last_error=NULL,
                        failed_reason=NULL, failed_at=NULL, updated_at=?
                    WHERE id=? AND status IN ('failed', 'paused')
                    """,
                    (ts, ts, job_id),
                )
                return cursor.rowcount > 0

    async def remove_job(self, job_id: str) -> bool:
        """Remove a job regardless of its state."""
        async with self._write_lock:
            async with self._connect() as db:
                cursor = await db.execute("DELETE FROM jobs WHERE id=?", (job_id,))
                return cursor.rowcount > 0
