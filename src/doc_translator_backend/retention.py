"""
Periodic cleanup of translated results.

Results older than ``max_age_seconds`` (by modification time) are deleted on a
fixed interval. The sweeper only looks at files; job status records are left
alone, so a completed job whose result was swept answers downloads with
ResultNotFoundError.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """
    Deletes expired files under ``result_root``.

    Attributes:
        result_root: Directory walked by each sweep
        max_age_seconds: Files with an older mtime are deleted
        interval_seconds: Delay between sweeps once started
    """

    def __init__(self, result_root: Path, max_age_seconds: float = 3600, interval_seconds: float = 3600) -> None:
        if max_age_seconds < 0:
            raise ValueError("max_age_seconds must be >= 0")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.result_root = result_root
        self.max_age_seconds = max_age_seconds
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="retention-sweeper", daemon=True)
        self._thread.start()
        logger.info(
            f"Retention sweeper started (max age {self.max_age_seconds}s, every {self.interval_seconds}s)"
        )

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        self._thread = None
        logger.info("Retention sweeper stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except OSError as e:
                logger.error(f"Retention sweep failed: {e}")

    def sweep_once(self, now: Optional[float] = None) -> List[Path]:
        """
        Run one cleanup cycle.

        Args:
            now: Reference time as a Unix timestamp (defaults to the current time)

        Returns:
            Paths of the files deleted by this cycle
        """
        if not self.result_root.exists():
            return []
        cutoff = (time.time() if now is None else now) - self.max_age_seconds
        deleted: List[Path] = []

        for dirpath, dirnames, filenames in os.walk(self.result_root, topdown=False):
            directory = Path(dirpath)
            for name in filenames:
                path = directory / name
                try:
                    if path.stat().st_mtime < cutoff:
                        path.unlink()
                        deleted.append(path)
                        logger.info(f"Deleted expired file: {path}")
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.error(f"Error deleting expired file {path}: {e}")
            if directory != self.result_root:
                self._prune_if_empty(directory)

        if deleted:
            logger.info(f"Retention sweep removed {len(deleted)} files")
        return deleted

    @staticmethod
    def _prune_if_empty(directory: Path) -> None:
        try:
            if not any(directory.iterdir()):
                directory.rmdir()
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error(f"Error removing directory {directory}: {e}")
