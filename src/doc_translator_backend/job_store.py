"""
Job status storage.

JobStore is the only state mutated by several workers at once. Two
implementations share the same transition rules:

- InMemoryJobStore: a dict of records with one lock per job id, so updates to
  unrelated jobs never wait on each other.
- SqliteJobStore: durable records in SQLite, each mutation applied inside a
  single ``BEGIN IMMEDIATE`` transaction.

Callers always receive copies; mutating a returned record has no effect on
the store.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from .database import SqliteDatabase, deserialize_datetime, serialize_datetime
from .errors import InvalidJobStateError, JobConflictError, JobNotFoundError
from .models import JobDetail, JobEvent, JobStatus, JobSummary
from .utils import utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.QUEUED, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

# Fields a worker may change without a status transition.
PROGRESS_FIELDS = frozenset({"step", "progress", "total_files", "current", "attempts"})


@dataclass
class JobRecord:
    """
    Internal representation of one translation request.

    Attributes:
        id: Unique job identifier (hex UUID)
        original_name: Sanitized name of the uploaded file
        target_language: Target language code
        source_path: Stored upload, owned by the pipeline until the job is terminal
        status: Current lifecycle status
        step: Human-readable current phase (advisory)
        progress: 0-100, never decreases
        total_files: Number of eligible entries (1 for single files)
        current: Entries processed so far
        attempts: Delivery attempts started
        result_path: Produced artifact, set only when completed
        error: Failure message, set only when failed
        error_code: Exception class behind the failure
        events: Chronological lifecycle events
    """

    id: str
    original_name: str
    target_language: str
    source_path: Path
    status: JobStatus = JobStatus.QUEUED
    step: Optional[str] = "Queued"
    progress: int = 0
    total_files: int = 1
    current: int = 0
    attempts: int = 0
    result_path: Optional[Path] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    events: List[JobEvent] = field(default_factory=list)

    def copy(self) -> "JobRecord":
        return replace(self, events=list(self.events))

    def to_summary(self) -> JobSummary:
        return JobSummary(
            id=self.id,
            status=self.status,
            original_name=self.original_name,
            target_language=self.target_language,
            step=self.step,
            progress=self.progress,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
        )

    def to_detail(self) -> JobDetail:
        summary = self.to_summary()
        return JobDetail(
            **summary.model_dump(),
            total_files=self.total_files,
            current=self.current,
            attempts=self.attempts,
            started_at=self.started_at,
            result_available=bool(self.result_path and self.result_path.exists()),
            error=self.error,
            error_code=self.error_code,
            events=list(self.events),
        )


def apply_update(record: JobRecord, changes: Dict[str, Any], message: Optional[str] = None) -> None:
    """
    Apply progress-type changes to ``record`` in place.

    Progress keeps its high-water mark: a lower value than the current one is
    ignored rather than rejected.
    """
    if record.status.is_terminal and changes:
        raise InvalidJobStateError(f"Job {record.id} is {record.status.value}; progress updates are not allowed")
    _set_fields(record, changes)
    _touch(record, message)


def _normalize_fields(record: JobRecord, changes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - PROGRESS_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated directly: {sorted(unknown)}")
    normalized = dict(changes)
    if "progress" in normalized:
        normalized["progress"] = max(record.progress, min(100, max(0, int(normalized["progress"]))))
    return normalized


def _set_fields(record: JobRecord, changes: Dict[str, Any]) -> None:
    for key, value in _normalize_fields(record, changes).items():
        setattr(record, key, value)


def _touch(record: JobRecord, message: Optional[str]) -> None:
    now = utc_now()
    record.updated_at = now
    if message:
        record.events.append(JobEvent(timestamp=now, message=message))


def apply_transition(
    record: JobRecord,
    to_status: JobStatus,
    changes: Dict[str, Any],
    message: Optional[str] = None,
) -> bool:
    """
    Move ``record`` to ``to_status`` in place, enforcing the state machine.

    ``changes`` may carry ``result_path`` (required for completed) and
    ``error`` (required for failed) besides progress fields.

    Returns:
        False when the record is already in the requested terminal state
        (idempotent no-op), True otherwise

    Raises:
        InvalidJobStateError: The transition is not allowed
    """
    if record.status == to_status and to_status.is_terminal:
        return False
    if to_status not in ALLOWED_TRANSITIONS[record.status]:
        raise InvalidJobStateError(f"Illegal transition: {record.status.value} -> {to_status.value}")

    changes = dict(changes)
    result_path = changes.pop("result_path", None)
    error = changes.pop("error", None)
    error_code = changes.pop("error_code", None)
    if to_status == JobStatus.COMPLETED:
        changes["progress"] = 100
        if not result_path:
            raise InvalidJobStateError("A completed job requires a result path")
    if to_status == JobStatus.FAILED and not error:
        raise InvalidJobStateError("A failed job requires an error message")
    changes = _normalize_fields(record, changes)
    now = utc_now()

    if to_status == JobStatus.COMPLETED:
        record.result_path = Path(result_path)
        record.error = None
        record.error_code = None
        record.completed_at = now
    elif to_status == JobStatus.FAILED:
        record.error = str(error)
        record.error_code = error_code
        record.result_path = None
        record.completed_at = now
    elif to_status == JobStatus.PROCESSING:
        record.started_at = record.started_at or now

    for key, value in changes.items():
        setattr(record, key, value)
    record.status = to_status
    _touch(record, message or f"Status changed to {to_status.value}.")
    return True


class JobStore(ABC):
    """Interface over job records keyed by id."""

    @abstractmethod
    def create(self, record: JobRecord) -> JobRecord:
        """Register a new record. Raises JobConflictError if the id exists."""

    @abstractmethod
    def get(self, job_id: str) -> JobRecord:
        """Return a copy of the record. Raises JobNotFoundError."""

    @abstractmethod
    def list(self) -> List[JobRecord]:
        """All records, newest first."""

    @abstractmethod
    def update(self, job_id: str, *, message: Optional[str] = None, **changes: Any) -> JobRecord:
        """Atomically apply progress-type changes and return the new state."""

    @abstractmethod
    def transition(
        self,
        job_id: str,
        status: JobStatus,
        *,
        message: Optional[str] = None,
        **changes: Any,
    ) -> JobRecord:
        """Atomically move the job to ``status`` and return the new state."""

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        """Forget a job. Returns False when it was unknown."""


class InMemoryJobStore(JobStore):
    """
    Process-local store with per-job locking.

    The registry lock only guards adding and removing keys; record reads and
    writes hold the lock of that job id alone.
    """

    def __init__(self) -> None:
        self._records: Dict[str, JobRecord] = {}
        self._locks: Dict[str, Lock] = {}
        self._registry_lock = Lock()

    def _lock_for(self, job_id: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(job_id)
        if lock is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return lock

    def _mutate(self, job_id: str, fn: Callable[[JobRecord], None]) -> JobRecord:
        with self._lock_for(job_id):
            record = self._records.get(job_id)
            if record is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            fn(record)
            return record.copy()

    def create(self, record: JobRecord) -> JobRecord:
        with self._registry_lock:
            if record.id in self._records:
                raise JobConflictError(f"Job already exists: {record.id}")
            self._locks[record.id] = Lock()
            self._records[record.id] = record.copy()
        return record.copy()

    def get(self, job_id: str) -> JobRecord:
        return self._mutate(job_id, lambda record: None)

    def list(self) -> List[JobRecord]:
        with self._registry_lock:
            job_ids = list(self._records)
        records = []
        for job_id in job_ids:
            try:
                records.append(self.get(job_id))
            except JobNotFoundError:
                continue
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def update(self, job_id: str, *, message: Optional[str] = None, **changes: Any) -> JobRecord:
        return self._mutate(job_id, lambda record: apply_update(record, changes, message))

    def transition(
        self,
        job_id: str,
        status: JobStatus,
        *,
        message: Optional[str] = None,
        **changes: Any,
    ) -> JobRecord:
        return self._mutate(job_id, lambda record: apply_transition(record, status, changes, message))

    def delete(self, job_id: str) -> bool:
        try:
            lock = self._lock_for(job_id)
        except JobNotFoundError:
            return False
        with lock, self._registry_lock:
            self._locks.pop(job_id, None)
            return self._records.pop(job_id, None) is not None


class SqliteJobStore(SqliteDatabase, JobStore):
    """
    Durable job records, so status survives server restarts.

    Thread-safe: every mutation is a read-modify-write inside one
    ``BEGIN IMMEDIATE`` transaction.
    """

    _schema = (
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            original_name TEXT NOT NULL,
            target_language TEXT NOT NULL,
            source_path TEXT NOT NULL,
            status TEXT NOT NULL,
            step TEXT,
            progress INTEGER NOT NULL,
            total_files INTEGER NOT NULL,
            current INTEGER NOT NULL,
            attempts INTEGER NOT NULL,
            result_path TEXT,
            error TEXT,
            error_code TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            events TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at DESC)",
    )

    _columns = (
        "id", "original_name", "target_language", "source_path", "status", "step",
        "progress", "total_files", "current", "attempts", "result_path", "error", "error_code",
        "created_at", "updated_at", "started_at", "completed_at", "events",
    )

    def _save(self, conn, record: JobRecord) -> None:
        placeholders = ", ".join("?" for _ in self._columns)
        conn.execute(
            f"INSERT OR REPLACE INTO jobs ({', '.join(self._columns)}) VALUES ({placeholders})",
            (
                record.id,
                record.original_name,
                record.target_language,
                str(record.source_path),
                record.status.value,
                record.step,
                record.progress,
                record.total_files,
                record.current,
                record.attempts,
                str(record.result_path) if record.result_path else None,
                record.error,
                record.error_code,
                serialize_datetime(record.created_at),
                serialize_datetime(record.updated_at),
                serialize_datetime(record.started_at),
                serialize_datetime(record.completed_at),
                json.dumps([
                    {"timestamp": serialize_datetime(e.timestamp), "message": e.message}
                    for e in record.events
                ]),
            ),
        )

    def _row_to_record(self, row) -> JobRecord:
        return JobRecord(
            id=row["id"],
            original_name=row["original_name"],
            target_language=row["target_language"],
            source_path=Path(row["source_path"]),
            status=JobStatus(row["status"]),
            step=row["step"],
            progress=row["progress"],
            total_files=row["total_files"],
            current=row["current"],
            attempts=row["attempts"],
            result_path=Path(row["result_path"]) if row["result_path"] else None,
            error=row["error"],
            error_code=row["error_code"],
            created_at=deserialize_datetime(row["created_at"]),
            updated_at=deserialize_datetime(row["updated_at"]),
            started_at=deserialize_datetime(row["started_at"]),
            completed_at=deserialize_datetime(row["completed_at"]),
            events=[
                JobEvent(timestamp=deserialize_datetime(e["timestamp"]), message=e["message"])
                for e in json.loads(row["events"] or "[]")
            ],
        )

    def _mutate(self, job_id: str, fn: Callable[[JobRecord], None]) -> JobRecord:
        with self._get_connection(immediate=True) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            record = self._row_to_record(row)
            fn(record)
            self._save(conn, record)
            return record

    def create(self, record: JobRecord) -> JobRecord:
        with self._get_connection(immediate=True) as conn:
            exists = conn.execute("SELECT 1 FROM jobs WHERE id = ?", (record.id,)).fetchone()
            if exists:
                raise JobConflictError(f"Job already exists: {record.id}")
            self._save(conn, record)
        return record.copy()

    def get(self, job_id: str) -> JobRecord:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return self._row_to_record(row)

    def list(self) -> List[JobRecord]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM jobs ORDER BY created_at DESC").fetchall()
        return [self._row_to_record(row) for row in rows]

    def update(self, job_id: str, *, message: Optional[str] = None, **changes: Any) -> JobRecord:
        return self._mutate(job_id, lambda record: apply_update(record, changes, message))

    def transition(
        self,
        job_id: str,
        status: JobStatus,
        *,
        message: Optional[str] = None,
        **changes: Any,
    ) -> JobRecord:
        return self._mutate(job_id, lambda record: apply_transition(record, status, changes, message))

    def delete(self, job_id: str) -> bool:
        with self._get_connection(immediate=True) as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0
