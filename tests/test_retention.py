"""
Tests for the retention sweeper.
"""

import os
import time

import pytest

from doc_translator_backend.errors import ResultNotFoundError
from doc_translator_backend.retention import RetentionSweeper


def age(path, seconds):
    """Backdate a file's modification time."""
    stamp = time.time() - seconds
    os.utime(path, (stamp, stamp))


class TestSweepOnce:
    def test_deletes_expired_files_and_prunes_directories(self, tmp_path):
        old = tmp_path / "job-old" / "hello_translated_to_es.txt"
        fresh = tmp_path / "job-new" / "hello_translated_to_fr.txt"
        for path in (old, fresh):
            path.parent.mkdir()
            path.write_text("hola")
        age(old, 2 * 3600)

        deleted = RetentionSweeper(tmp_path, max_age_seconds=3600).sweep_once()

        assert deleted == [old]
        assert not old.parent.exists()
        assert fresh.exists()
        assert tmp_path.exists()

    def test_reference_time_can_be_injected(self, tmp_path):
        path = tmp_path / "job" / "result.zip"
        path.parent.mkdir()
        path.write_bytes(b"PK")

        sweeper = RetentionSweeper(tmp_path, max_age_seconds=60)
        assert sweeper.sweep_once() == []
        assert sweeper.sweep_once(now=time.time() + 120) == [path]

    def test_missing_root_is_a_noop(self, tmp_path):
        assert RetentionSweeper(tmp_path / "absent").sweep_once() == []

    def test_invalid_settings(self, tmp_path):
        with pytest.raises(ValueError):
            RetentionSweeper(tmp_path, max_age_seconds=-1)
        with pytest.raises(ValueError):
            RetentionSweeper(tmp_path, interval_seconds=0)


class TestSchedule:
    def test_background_sweeps_run_until_stopped(self, tmp_path):
        path = tmp_path / "job" / "old.txt"
        path.parent.mkdir()
        path.write_text("x")
        age(path, 10)

        sweeper = RetentionSweeper(tmp_path, max_age_seconds=1, interval_seconds=0.05)
        sweeper.start()
        try:
            deadline = time.monotonic() + 5
            while path.exists() and time.monotonic() < deadline:
                time.sleep(0.02)
        finally:
            sweeper.stop()

        assert not path.exists()


class TestDownloadAfterSweep:
    def test_swept_result_is_not_found(self, manager, wait_for_status):
        """A completed job keeps its status after its result is swept."""
        job_id = manager.submit(b"Hello", "hello.txt", "es")
        manager.start()
        wait_for_status(manager, job_id)
        result = manager.get_result_path(job_id)
        age(result, 2 * 3600)

        RetentionSweeper(manager.result_root, max_age_seconds=3600).sweep_once()

        assert manager.get_status(job_id).status.value == "completed"
        with pytest.raises(ResultNotFoundError):
            manager.get_result_path(job_id)
