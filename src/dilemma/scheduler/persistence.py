"""
Persistence Adapter for Job Scheduler.

SQLite-backed job store:
- WAL mode so readers don't block the claiming writer
- Every state change runs in a BEGIN IMMEDIATE transaction under a process
  lock, so two workers can never claim the same job
- Jobs are keyed by their deterministic id; writing an existing id
  replaces the row

Provides:
- Upsert / delete by id
- Atomic claim of due jobs (PENDING -> READY -> ACTIVE) and release of
  unstarted claims
- Guarded ACTIVE transitions fenced by claim token
- Count, listing and retention queries
"""

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .entities import (
    Job,
    JobState,
    JobType,
    from_iso,
    payload_from_dict,
    payload_to_dict,
    to_iso,
)
from .errors import (
    ConcurrencyViolationError,
    JobNotFoundError,
    StoreUnavailableError,
)


# Seconds SQLite waits on a locked database before giving up
SQLITE_BUSY_TIMEOUT = 30.0

MEMORY_DB = ":memory:"


class PersistenceAdapter:
    """
    SQLite-based persistence for scheduler jobs.

    - Abstracts SQLite storage
    - Does NOT decide retries or timing (QueueManager's responsibility)
    - Does NOT execute anything
    """

    def __init__(self, db_path: str | Path):
        """
        Initialize persistence adapter.

        Args:
            db_path: Path to SQLite database file. Use ":memory:" for testing.
        """
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._shared_conn: Optional[sqlite3.Connection] = None

        if self.db_path == MEMORY_DB:
            # A memory database only lives as long as its connection
            self._shared_conn = self._open()
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _open(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=SQLITE_BUSY_TIMEOUT,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            if self.db_path != MEMORY_DB:
                conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as e:
            raise StoreUnavailableError(
                f"Cannot open job store at {self.db_path}: {e}"
            ) from e
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection (the shared one for memory databases)."""
        if self._shared_conn is not None:
            return self._shared_conn
        return self._open()

    def _release(self, conn: sqlite3.Connection) -> None:
        if conn is not self._shared_conn:
            conn.close()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for read-only access."""
        with self._lock:
            conn = self._get_connection()
            try:
                yield conn
            except sqlite3.OperationalError as e:
                raise StoreUnavailableError(f"Job store read failed: {e}") from e
            finally:
                self._release(conn)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for exclusive write transactions."""
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except sqlite3.OperationalError as e:
                conn.rollback()
                raise StoreUnavailableError(f"Job store write failed: {e}") from e
            except Exception:
                conn.rollback()
                raise
            finally:
                self._release(conn)

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    job_type TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    state TEXT NOT NULL,
                    not_before TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    created_at TEXT NOT NULL,
                    last_attempt_at TEXT,
                    finished_at TEXT,
                    last_error TEXT,
                    claim_token TEXT,
                    worker_id TEXT
                )
            """)

            # Claim path: state + due time
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_due
                ON jobs (state, not_before)
            """)

            # Retention sweep
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_finished
                ON jobs (state, finished_at)
            """)

    def close(self) -> None:
        """Close the shared connection of a memory database."""
        with self._lock:
            if self._shared_conn is not None:
                self._shared_conn.close()
                self._shared_conn = None

    # =========================================================================
    # Row Mapping
    # =========================================================================

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        job_type = JobType(row["job_type"])
        return Job(
            job_id=row["job_id"],
            job_type=job_type,
            payload=payload_from_dict(job_type, json.loads(row["payload"])),
            state=JobState(row["state"]),
            not_before=from_iso(row["not_before"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            created_at=from_iso(row["created_at"]),
            last_attempt_at=from_iso(row["last_attempt_at"]) if row["last_attempt_at"] else None,
            finished_at=from_iso(row["finished_at"]) if row["finished_at"] else None,
            last_error=row["last_error"],
            claim_token=row["claim_token"],
            worker_id=row["worker_id"],
        )

    def _fetch(self, conn: sqlite3.Connection, job_id: str) -> Optional[Job]:
        row = conn.execute(
            "SELECT * FROM jobs WHERE job_id = ?",
            (job_id,),
        ).fetchone()
        return self._row_to_job(row) if row is not None else None

    # =========================================================================
    # Job Operations
    # =========================================================================

    def upsert_job(self, job: Job) -> bool:
        """
        Insert a job, replacing any existing job with the same id.

        Returns:
            True if an existing job was replaced
        """
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT 1 FROM jobs WHERE job_id = ?",
                (job.job_id,),
            ).fetchone()

            conn.execute(
                """
                INSERT OR REPLACE INTO jobs
                (job_id, job_type, payload, state, not_before, attempts, max_attempts,
                 created_at, last_attempt_at, finished_at, last_error, claim_token, worker_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.job_type.value,
                    json.dumps(payload_to_dict(job.payload)),
                    job.state.value,
                    to_iso(job.not_before),
                    job.attempts,
                    job.max_attempts,
                    to_iso(job.created_at),
                    to_iso(job.last_attempt_at) if job.last_attempt_at else None,
                    to_iso(job.finished_at) if job.finished_at else None,
                    job.last_error,
                    job.claim_token,
                    job.worker_id,
                ),
            )

        return existing is not None

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        with self._connection() as conn:
            return self._fetch(conn, job_id)

    def delete_job(self, job_id: str) -> bool:
        """
        Delete a job in any state.

        Returns:
            True if a job was deleted
        """
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
        return cursor.rowcount > 0

    # =========================================================================
    # Claiming
    # =========================================================================

    def _claim_in(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        now: datetime,
        worker_id: Optional[str],
    ) -> Job:
        """READY -> ACTIVE inside an open transaction."""
        cursor = conn.execute(
            """
            UPDATE jobs
            SET state = ?, attempts = attempts + 1, last_attempt_at = ?,
                claim_token = ?, worker_id = ?
            WHERE job_id = ? AND state = ?
            """,
            (
                JobState.ACTIVE.value,
                to_iso(now),
                uuid.uuid4().hex,
                worker_id,
                job_id,
                JobState.READY.value,
            ),
        )

        if cursor.rowcount == 0:
            row = conn.execute(
                "SELECT state FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()

            if row is None:
                raise JobNotFoundError(job_id)

            raise ConcurrencyViolationError(
                job_id,
                expected_state=JobState.READY.value,
                actual_state=row["state"],
            )

        return self._fetch(conn, job_id)

    def claim_due_jobs(
        self,
        now: datetime,
        limit: int,
        worker_id: Optional[str] = None,
    ) -> list[Job]:
        """
        Atomically claim up to `limit` due jobs.

        1. PENDING jobs whose not_before has elapsed become READY
        2. READY jobs (oldest not_before first) become ACTIVE with
           attempts + 1 and a fresh claim token

        Returns:
            The claimed jobs, in ACTIVE state
        """
        claimed: list[Job] = []

        with self._transaction() as conn:
            conn.execute(
                "UPDATE jobs SET state = ? WHERE state = ? AND not_before <= ?",
                (JobState.READY.value, JobState.PENDING.value, to_iso(now)),
            )

            rows = conn.execute(
                """
                SELECT job_id FROM jobs
                WHERE state = ?
                ORDER BY not_before ASC, created_at ASC
                LIMIT ?
                """,
                (JobState.READY.value, limit),
            ).fetchall()

            for row in rows:
                try:
                    claimed.append(self._claim_in(conn, row["job_id"], now, worker_id))
                except (ConcurrencyViolationError, JobNotFoundError):
                    continue

        return claimed

    # =========================================================================
    # ACTIVE Transitions
    # =========================================================================

    def _transition_active(
        self,
        job_id: str,
        claim_token: Optional[str],
        state: JobState,
        not_before: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> Optional[Job]:
        """
        Move an ACTIVE job to `state`.

        Only applies if the job is still ACTIVE and, when given, still holds
        `claim_token`. A job removed or replaced while running is left alone.

        Returns:
            The updated job, or None if the transition did not apply
        """
        updates = ["state = ?", "claim_token = NULL"]
        values: list = [state.value]

        if not_before is not None:
            updates.append("not_before = ?")
            values.append(to_iso(not_before))
        if finished_at is not None:
            updates.append("finished_at = ?")
            values.append(to_iso(finished_at))
        if error is not None:
            updates.append("last_error = ?")
            values.append(error)

        where = "job_id = ? AND state = ?"
        values.extend([job_id, JobState.ACTIVE.value])
        if claim_token is not None:
            where += " AND claim_token = ?"
            values.append(claim_token)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {', '.join(updates)} WHERE {where}",
                values,
            )
            if cursor.rowcount == 0:
                return None
            return self._fetch(conn, job_id)

    def mark_completed(
        self,
        job_id: str,
        finished_at: datetime,
        claim_token: Optional[str] = None,
    ) -> Optional[Job]:
        """ACTIVE -> COMPLETED."""
        return self._transition_active(
            job_id,
            claim_token,
            JobState.COMPLETED,
            finished_at=finished_at,
        )

    def mark_failed(
        self,
        job_id: str,
        finished_at: datetime,
        error: str,
        claim_token: Optional[str] = None,
    ) -> Optional[Job]:
        """ACTIVE -> FAILED (terminal)."""
        return self._transition_active(
            job_id,
            claim_token,
            JobState.FAILED,
            finished_at=finished_at,
            error=error,
        )

    def rearm_job(
        self,
        job_id: str,
        not_before: datetime,
        error: str,
        claim_token: Optional[str] = None,
    ) -> Optional[Job]:
        """ACTIVE -> PENDING with a new not_before (retry)."""
        return self._transition_active(
            job_id,
            claim_token,
            JobState.PENDING,
            not_before=not_before,
            error=error,
        )

    def release_job(self, job_id: str, claim_token: str) -> Optional[Job]:
        """
        ACTIVE -> READY for a claimed job that never started.

        The attempt taken by the claim is given back.

        Returns:
            The released job, or None if the claim no longer holds
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET state = ?, attempts = attempts - 1,
                    claim_token = NULL, worker_id = NULL
                WHERE job_id = ? AND state = ? AND claim_token = ?
                """,
                (JobState.READY.value, job_id, JobState.ACTIVE.value, claim_token),
            )
            if cursor.rowcount == 0:
                return None
            return self._fetch(conn, job_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def count_jobs_by_state(self, now: datetime) -> dict[str, int]:
        """
        Count jobs per effective state.

        PENDING jobs already due are counted as READY even before a worker
        promotes them.
        """
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT
                    CASE WHEN state = ? AND not_before <= ? THEN ? ELSE state END
                        AS effective_state,
                    COUNT(*) AS n
                FROM jobs
                GROUP BY effective_state
                """,
                (JobState.PENDING.value, to_iso(now), JobState.READY.value),
            ).fetchall()

        counts = {state.value: 0 for state in JobState}
        for row in rows:
            counts[row["effective_state"]] = row["n"]
        return counts

    def list_upcoming_jobs(self, limit: int = 10) -> list[Job]:
        """List PENDING and READY jobs, soonest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE state IN (?, ?)
                ORDER BY not_before ASC, created_at ASC
                LIMIT ?
                """,
                (JobState.PENDING.value, JobState.READY.value, limit),
            ).fetchall()

        return [self._row_to_job(row) for row in rows]

    def list_jobs_by_state(self, state: JobState, limit: int = 100) -> list[Job]:
        """List jobs in a state, most recently finished or due first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE state = ?
                ORDER BY COALESCE(finished_at, not_before) DESC
                LIMIT ?
                """,
                (state.value, limit),
            ).fetchall()

        return [self._row_to_job(row) for row in rows]

    def delete_finished_before(self, state: JobState, cutoff: datetime) -> int:
        """
        Delete terminal jobs of `state` that finished before `cutoff`.

        Returns:
            Number of jobs deleted
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE state = ? AND finished_at < ?",
                (state.value, to_iso(cutoff)),
            )
        return cursor.rowcount
