"""
Durable work queue with bounded concurrency and retry-with-limit.

Deliveries live in SQLite, so queued and in-flight work survives a process
restart: rows left ``active`` by a crashed process are handed out again on the
next ``start()``. Delivery is therefore at-least-once; a single delivery is
owned by exactly one worker thread at a time because claiming flips the row to
``active`` inside a ``BEGIN IMMEDIATE`` transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .database import SqliteDatabase, serialize_datetime
from .errors import JobConflictError
from .utils import utc_now

logger = logging.getLogger(__name__)

PENDING = "pending"
ACTIVE = "active"
FAILED = "failed"

SETTLE_TRIES = 3
SETTLE_BACKOFF_SECONDS = 0.05


@dataclass(frozen=True)
class Delivery:
    job_id: str
    payload: Dict[str, Any]
    attempt: int
    max_attempts: int

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


Handler = Callable[[Delivery], None]
ExhaustedObserver = Callable[[str, str], None]


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class JobQueue(SqliteDatabase):
    """
    Dispatches queued deliveries to a pool of worker threads.

    Attributes:
        concurrency: Maximum number of deliveries running at once
        retry_delay_seconds: Delay before a failed delivery becomes claimable again
        poll_interval_seconds: Dispatcher wake-up interval when idle
    """

    _schema = (
        """
        CREATE TABLE IF NOT EXISTS deliveries (
            job_id TEXT PRIMARY KEY,
            payload TEXT NOT NULL,
            status TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL,
            available_at REAL NOT NULL,
            last_error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_deliveries_status ON deliveries(status, available_at)",
    )

    def __init__(
        self,
        db_path: Path,
        handler: Handler,
        *,
        concurrency: int = 1,
        retry_delay_seconds: float = 0.0,
        poll_interval_seconds: float = 0.5,
        on_exhausted: Optional[ExhaustedObserver] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        super().__init__(db_path)
        self.concurrency = concurrency
        self.retry_delay_seconds = retry_delay_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._handler = handler
        self._on_exhausted = on_exhausted

        self._executor: Optional[ThreadPoolExecutor] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._wakeup = threading.Event()
        self._running_lock = threading.Lock()
        self._running = 0

    # --- producer side ------------------------------------------------------

    def enqueue(self, job_id: str, payload: Dict[str, Any], max_attempts: int = 3) -> None:
        """
        Add a delivery for ``job_id``.

        Raises:
            JobConflictError: A delivery for this job id already exists
            ValueError: max_attempts is below 1
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        now = utc_now()
        try:
            with self._get_connection(immediate=True) as conn:
                conn.execute(
                    """
                    INSERT INTO deliveries (job_id, payload, status, attempts, max_attempts,
                                            available_at, created_at, updated_at)
                    VALUES (?, ?, ?, 0, ?, ?, ?, ?)
                    """,
                    (
                        job_id,
                        json.dumps(payload),
                        PENDING,
                        max_attempts,
                        time.time(),
                        serialize_datetime(now),
                        serialize_datetime(now),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise JobConflictError(f"Job already queued: {job_id}") from exc
        logger.info(f"Queued job {job_id} (max attempts {max_attempts})")
        self._wakeup.set()

    # --- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if self._dispatcher is not None:
            return
        self.recover_interrupted()
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="translate-worker")
        self._dispatcher = threading.Thread(target=self._run_loop, name="job-queue-dispatcher", daemon=True)
        self._dispatcher.start()
        logger.info(f"Job queue started with concurrency {self.concurrency}")

    def stop(self, wait: bool = True) -> None:
        if self._dispatcher is None:
            return
        self._stop.set()
        self._wakeup.set()
        self._dispatcher.join()
        self._dispatcher = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("Job queue stopped")

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.dispatch()
            except sqlite3.Error as e:
                logger.error(f"Queue dispatch failed: {e}")
            self._wakeup.wait(self.poll_interval_seconds)
            self._wakeup.clear()

    # --- dispatch -----------------------------------------------------------

    def dispatch(self) -> int:
        """
        Claim pending deliveries while worker slots are free and submit them.

        Returns:
            Number of deliveries handed to workers
        """
        if self._executor is None:
            raise RuntimeError("Queue is not started")
        submitted = 0
        while not self._stop.is_set():
            with self._running_lock:
                if self._running >= self.concurrency:
                    break
                self._running += 1
            try:
                delivery = self._claim()
            except BaseException:
                with self._running_lock:
                    self._running -= 1
                raise
            if delivery is None:
                with self._running_lock:
                    self._running -= 1
                break
            self._executor.submit(self._execute, delivery)
            submitted += 1
        return submitted

    def _claim(self) -> Optional[Delivery]:
        with self._get_connection(immediate=True) as conn:
            row = conn.execute(
                """
                SELECT job_id, payload, attempts, max_attempts FROM deliveries
                WHERE status = ? AND available_at <= ?
                ORDER BY available_at ASC, created_at ASC
                LIMIT 1
                """,
                (PENDING, time.time()),
            ).fetchone()
            if row is None:
                return None
            attempt = row["attempts"] + 1
            conn.execute(
                "UPDATE deliveries SET status = ?, attempts = ?, updated_at = ? WHERE job_id = ?",
                (ACTIVE, attempt, serialize_datetime(utc_now()), row["job_id"]),
            )
        return Delivery(
            job_id=row["job_id"],
            payload=json.loads(row["payload"]),
            attempt=attempt,
            max_attempts=row["max_attempts"],
        )

    def _execute(self, delivery: Delivery) -> None:
        try:
            try:
                self._handler(delivery)
            except Exception as exc:  # noqa: BLE001
                outcome = self._settle(self._record_failure, delivery, exc)
            else:
                outcome = self._settle(self._acknowledge, delivery)
            if not outcome:
                self._release(delivery)
        finally:
            with self._running_lock:
                self._running -= 1
            self._wakeup.set()

    def _settle(self, step: Callable[..., None], delivery: Delivery, *args: Any) -> bool:
        """
        Run a bookkeeping ``step`` for a finished delivery, retrying while the
        database is locked or otherwise failing.

        Returns:
            True once the step went through, False when every try failed
        """
        for tries in range(1, SETTLE_TRIES + 1):
            try:
                step(delivery, *args)
                return True
            except sqlite3.Error as e:
                logger.warning(f"Bookkeeping for job {delivery.job_id} failed (try {tries} of {SETTLE_TRIES}): {e}")
                time.sleep(SETTLE_BACKOFF_SECONDS * tries)
        return False

    def _release(self, delivery: Delivery) -> None:
        # The outcome was not stored; an active row would otherwise wait for the next start.
        try:
            with self._get_connection(immediate=True) as conn:
                conn.execute(
                    "UPDATE deliveries SET status = ?, available_at = ?, updated_at = ? WHERE job_id = ? AND status = ?",
                    (PENDING, time.time() + self.retry_delay_seconds, serialize_datetime(utc_now()), delivery.job_id, ACTIVE),
                )
        except sqlite3.Error:
            logger.exception(f"Could not release job {delivery.job_id}; it is redelivered on the next start")
            return
        logger.warning(f"Released job {delivery.job_id} back to the queue after bookkeeping failed")

    def _acknowledge(self, delivery: Delivery) -> None:
        with self._get_connection(immediate=True) as conn:
            conn.execute("DELETE FROM deliveries WHERE job_id = ?", (delivery.job_id,))
        logger.info(f"Job {delivery.job_id} finished on attempt {delivery.attempt}")

    def _record_failure(self, delivery: Delivery, exc: BaseException) -> None:
        message = _error_message(exc)
        now = serialize_datetime(utc_now())
        if not delivery.is_final_attempt:
            with self._get_connection(immediate=True) as conn:
                conn.execute(
                    """
                    UPDATE deliveries SET status = ?, available_at = ?, last_error = ?, updated_at = ?
                    WHERE job_id = ?
                    """,
                    (PENDING, time.time() + self.retry_delay_seconds, message, now, delivery.job_id),
                )
            logger.warning(
                f"Job {delivery.job_id} failed attempt {delivery.attempt} of {delivery.max_attempts}: {message}; retrying"
            )
            return

        with self._get_connection(immediate=True) as conn:
            conn.execute(
                "UPDATE deliveries SET status = ?, last_error = ?, updated_at = ? WHERE job_id = ?",
                (FAILED, message, now, delivery.job_id),
            )
        logger.error(f"Job {delivery.job_id} failed after {delivery.attempt} attempts: {message}")
        if self._notify_exhausted(delivery.job_id, message):
            self._discard(delivery.job_id)

    def _notify_exhausted(self, job_id: str, message: str) -> bool:
        if self._on_exhausted is None:
            return False
        try:
            self._on_exhausted(job_id, message)
        except Exception:  # noqa: BLE001
            logger.exception(f"Exhaustion observer failed for job {job_id}")
            return False
        return True

    def _discard(self, job_id: str) -> None:
        try:
            with self._get_connection(immediate=True) as conn:
                conn.execute("DELETE FROM deliveries WHERE job_id = ? AND status = ?", (job_id, FAILED))
        except sqlite3.Error as e:
            logger.warning(f"Could not drop failed delivery for job {job_id}: {e}")

    def recover_interrupted(self) -> int:
        """
        Return deliveries left ``active`` by a crashed process to the queue.

        Deliveries that already used every attempt are failed and reported to
        the exhaustion observer instead. Their rows are dropped once the
        observer has recorded the failure.

        Returns:
            Number of deliveries recovered or failed
        """
        exhausted = []
        now = serialize_datetime(utc_now())
        with self._get_connection(immediate=True) as conn:
            rows = conn.execute(
                "SELECT job_id, attempts, max_attempts FROM deliveries WHERE status = ?",
                (ACTIVE,),
            ).fetchall()
            for row in rows:
                if row["attempts"] >= row["max_attempts"]:
                    conn.execute(
                        "UPDATE deliveries SET status = ?, last_error = ?, updated_at = ? WHERE job_id = ?",
                        (FAILED, "Worker stopped before the job finished", now, row["job_id"]),
                    )
                    exhausted.append(row["job_id"])
                else:
                    conn.execute(
                        "UPDATE deliveries SET status = ?, available_at = ?, updated_at = ? WHERE job_id = ?",
                        (PENDING, time.time(), now, row["job_id"]),
                    )
        if rows:
            logger.warning(f"Recovered {len(rows)} interrupted deliveries ({len(exhausted)} exhausted)")
        for job_id in exhausted:
            if self._notify_exhausted(job_id, "Worker stopped before the job finished"):
                self._discard(job_id)
        return len(rows)

    # --- introspection ------------------------------------------------------

    def stats(self) -> Dict[str, int]:
        counts = {PENDING: 0, ACTIVE: 0, FAILED: 0}
        with self._get_connection() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM deliveries GROUP BY status"):
                counts[row["status"]] = row["n"]
        with self._running_lock:
            counts["running"] = self._running
        return counts

    def last_error(self, job_id: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT last_error FROM deliveries WHERE job_id = ?", (job_id,)).fetchone()
        return row["last_error"] if row else None

    def wait_until_idle(self, timeout: float = 10.0) -> bool:
        """Block until nothing is pending or running. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            counts = self.stats()
            if counts[PENDING] == 0 and counts[ACTIVE] == 0 and counts["running"] == 0:
                return True
            self._wakeup.set()
            time.sleep(0.02)
        return False
