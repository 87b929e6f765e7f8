"""
SQLite database for persistent job storage.

This module is the single source of truth for job state. Every status change
goes through ``JobStore.transition``, a compare-and-swap on the stored status:
the UPDATE only applies when the row is still in the expected state, and the
affected-row count tells the caller whether it won the race.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import DuplicateIdError, ErrorCode, JobStoreError
from .lifecycle import MUTABLE_FIELDS, JobUpdate, utcnow
from .models import TERMINAL_STATUSES, Job, JobStatus, JobType

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path("data/jobs.db")

_TERMINAL_VALUES = tuple(sorted(status.value for status in TERMINAL_STATUSES))
_TERMINAL_PLACEHOLDERS = ", ".join("?" for _ in _TERMINAL_VALUES)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to a fixed-width UTC ISO string so text order matches time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return datetime.fromisoformat(s)


def _serialize_field(name: str, value: Any) -> Any:
    if name in ("updated_at", "completed_at"):
        return _serialize_datetime(value)
    if name == "error_code":
        return value.value if value is not None else None
    if name == "retryable":
        return int(bool(value))
    return value


class JobStore:
    """
    SQLite-backed job store.

    Thread-safe: each call opens its own connection and SQLite serializes
    writers (WAL mode, 30s busy timeout).
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection with proper settings."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as exc:
            raise JobStoreError(f"Cannot open job database {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise JobStoreError(f"Job database error: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    job_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input_refs TEXT NOT NULL,
                    output_ref TEXT,
                    parameters TEXT,
                    progress INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    error_code TEXT,
                    retryable INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    lease_id TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_owner_created
                ON jobs(owner_id, created_at DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status_updated
                ON jobs(status, updated_at)
            """)

    def create(self, job: Job) -> Job:
        """
        Insert a new job record.

        Raises:
            DuplicateIdError: If a job with the same id already exists
        """
        with self._get_connection() as conn:
            try:
                conn.execute("""
                    INSERT INTO jobs (
                        id, owner_id, job_type, status, input_refs, output_ref,
                        parameters, progress, error_message, error_code, retryable,
                        created_at, updated_at, completed_at, lease_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    job.id,
                    job.owner_id,
                    job.type.value,
                    job.status.value,
                    json.dumps(list(job.input_refs)),
                    job.output_ref,
                    json.dumps(job.parameters),
                    job.progress,
                    job.error_message,
                    _serialize_field("error_code", job.error_code),
                    int(job.retryable),
                    _serialize_datetime(job.created_at),
                    _serialize_datetime(job.updated_at),
                    _serialize_datetime(job.completed_at),
                    job.lease_id,
                ))
            except sqlite3.IntegrityError as exc:
                raise DuplicateIdError(job.id) from exc
        return job

    def find_by_id(self, job_id: str) -> Optional[Job]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_job(row)

    def find_by_owner(
        self,
        owner_id: str,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        page: int = 0,
        size: int = 20,
    ) -> Tuple[List[Job], int]:
        """
        List an owner's jobs, newest first.

        Args:
            owner_id: Submitter identity
            status: Optional status filter
            job_type: Optional type filter
            page: Zero-based page index
            size: Page size

        Returns:
            Tuple of (jobs on the requested page, total matching jobs)
        """
        where = ["owner_id = ?"]
        values: List[Any] = [owner_id]
        if status is not None:
            where.append("status = ?")
            values.append(status.value)
        if job_type is not None:
            where.append("job_type = ?")
            values.append(job_type.value)
        clause = " AND ".join(where)

        with self._get_connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM jobs WHERE {clause}", values
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM jobs WHERE {clause} "
                "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                [*values, size, page * size],
            ).fetchall()

            return [self._row_to_job(row) for row in rows], total

    def transition(
        self,
        job_id: str,
        expected: JobStatus,
        next_status: JobStatus,
        fields: Optional[Dict[str, Any]] = None,
        lease_id: Optional[str] = None,
    ) -> bool:
        """
        Conditionally move a job from ``expected`` to ``next_status``.

        Args:
            job_id: The job ID
            expected: Status the row must currently have
            next_status: Status to write
            fields: Additional columns to update (see ``lifecycle.MUTABLE_FIELDS``)
            lease_id: If given, the row must also still hold this lease

        Returns:
            True if the row was updated, False if the job is missing or its
            status has already moved on
        """
        fields = dict(fields or {})
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Transition may not modify: {sorted(unknown)}")
        fields.setdefault("updated_at", utcnow())

        updates = ["status = ?"]
        values: List[Any] = [next_status.value]
        for name, value in fields.items():
            updates.append(f"{name} = ?")
            values.append(_serialize_field(name, value))
        values.extend([job_id, expected.value])
        condition = "id = ? AND status = ?"
        if lease_id is not None:
            condition += " AND lease_id = ?"
            values.append(lease_id)

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {', '.join(updates)} WHERE {condition}",
                values,
            )
            applied = cursor.rowcount > 0

        if applied:
            logger.debug("Job %s: %s -> %s", job_id, expected.value, next_status.value)
        else:
            logger.debug("Job %s: transition %s -> %s lost", job_id, expected.value, next_status.value)
        return applied

    def apply(self, job_id: str, update: JobUpdate) -> bool:
        """Conditionally apply a lifecycle transition; see ``transition``."""
        return self.transition(job_id, update.expected, update.status, update.fields, update.lease_id)

    def update_progress(self, job_id: str, progress: int, lease_id: Optional[str] = None) -> bool:
        """
        Record progress for a running job and refresh its heartbeat.

        Args:
            job_id: The job ID
            progress: New progress value, clamped to 0-100
            lease_id: If given, the row must still hold this lease

        Returns:
            False if the job is no longer PROCESSING under this lease (or
            progress would go backwards)
        """
        progress = max(0, min(100, int(progress)))
        query = (
            "UPDATE jobs SET progress = ?, updated_at = ? "
            "WHERE id = ? AND status = ? AND progress <= ?"
        )
        values: List[Any] = [progress, _serialize_datetime(utcnow()), job_id, JobStatus.PROCESSING.value, progress]
        if lease_id is not None:
            query += " AND lease_id = ?"
            values.append(lease_id)
        with self._get_connection() as conn:
            cursor = conn.execute(query, values)
            return cursor.rowcount > 0

    def find_stale(self, status: JobStatus, older_than: datetime) -> List[Job]:
        """Jobs in ``status`` whose last update is older than ``older_than``."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status = ? AND updated_at < ? ORDER BY updated_at",
                (status.value, _serialize_datetime(older_than)),
            ).fetchall()

            return [self._row_to_job(row) for row in rows]

    def find_expired(self, older_than: datetime) -> List[Job]:
        """Terminal jobs that reached their terminal state before ``older_than``."""
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs WHERE status IN ({_TERMINAL_PLACEHOLDERS}) "
                "AND completed_at < ? ORDER BY completed_at",
                (*_TERMINAL_VALUES, _serialize_datetime(older_than)),
            ).fetchall()

            return [self._row_to_job(row) for row in rows]

    def delete(self, job_id: str) -> bool:
        """
        Delete a job record.

        Returns:
            True if deleted, False if not found or not in a terminal state
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"DELETE FROM jobs WHERE id = ? AND status IN ({_TERMINAL_PLACEHOLDERS})",
                (job_id, *_TERMINAL_VALUES),
            )
            return cursor.rowcount > 0

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        """Convert a database row to a Job."""
        return Job(
            id=row["id"],
            owner_id=row["owner_id"],
            type=JobType(row["job_type"]),
            status=JobStatus(row["status"]),
            input_refs=tuple(json.loads(row["input_refs"] or "[]")),
            output_ref=row["output_ref"],
            parameters=json.loads(row["parameters"] or "{}"),
            progress=row["progress"],
            error_message=row["error_message"],
            error_code=ErrorCode(row["error_code"]) if row["error_code"] else None,
            retryable=bool(row["retryable"]),
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
            completed_at=_deserialize_datetime(row["completed_at"]),
            lease_id=row["lease_id"],
        )
