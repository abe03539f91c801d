"""
SQLite plumbing shared by the durable job store and the work queue.

Each operation opens its own connection so the helpers are safe to call from
any worker thread. Write paths use ``BEGIN IMMEDIATE`` so a read-then-update
sequence (claiming a delivery, applying a job transition) holds the write
lock for its whole duration.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


class SqliteDatabase:
    """
    Base class for components persisted in a single SQLite file.

    Subclasses provide ``_schema`` statements; they are applied on construction.
    """

    _schema: tuple[str, ...] = ()

    def __init__(self, db_path: Path):
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection wrapped in one transaction."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._get_connection(immediate=True) as conn:
            for statement in self._schema:
                conn.execute(statement)
