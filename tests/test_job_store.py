"""
Tests for the job status stores.

Both implementations run the same contract tests.
"""

import threading
from pathlib import Path

import pytest

from doc_translator_backend.errors import InvalidJobStateError, JobConflictError, JobNotFoundError
from doc_translator_backend.job_store import InMemoryJobStore, JobRecord, SqliteJobStore
from doc_translator_backend.models import JobStatus


@pytest.fixture(params=["memory", "sqlite"])
def job_store(request, tmp_path):
    if request.param == "sqlite":
        return SqliteJobStore(tmp_path / "jobs.db")
    return InMemoryJobStore()


def new_record(job_id="job1", **kwargs):
    return JobRecord(
        id=job_id,
        original_name="hello.txt",
        target_language="es",
        source_path=Path("/tmp/uploads") / job_id / "hello.txt",
        **kwargs,
    )


class TestCreateAndGet:
    def test_create_then_get(self, job_store):
        job_store.create(new_record())
        record = job_store.get("job1")
        assert record.status is JobStatus.QUEUED
        assert record.progress == 0
        assert record.original_name == "hello.txt"

    def test_duplicate_id_conflicts(self, job_store):
        job_store.create(new_record())
        with pytest.raises(JobConflictError):
            job_store.create(new_record())

    def test_unknown_id(self, job_store):
        with pytest.raises(JobNotFoundError):
            job_store.get("missing")
        with pytest.raises(JobNotFoundError):
            job_store.update("missing", progress=10)

    def test_returned_records_are_copies(self, job_store):
        job_store.create(new_record())
        record = job_store.get("job1")
        record.progress = 99
        record.events.append("junk")
        assert job_store.get("job1").progress == 0
        assert job_store.get("job1").events == []

    def test_list_is_newest_first(self, job_store):
        first = job_store.create(new_record("a"))
        job_store.create(new_record("b", created_at=first.created_at.replace(year=first.created_at.year + 1)))
        assert [record.id for record in job_store.list()] == ["b", "a"]

    def test_delete(self, job_store):
        job_store.create(new_record())
        assert job_store.delete("job1") is True
        assert job_store.delete("job1") is False
        with pytest.raises(JobNotFoundError):
            job_store.get("job1")


class TestTransitions:
    """Tests for the job state machine."""

    def test_happy_path(self, job_store, tmp_path):
        job_store.create(new_record())
        processing = job_store.transition("job1", JobStatus.PROCESSING, attempts=1)
        assert processing.started_at is not None

        completed = job_store.transition("job1", JobStatus.COMPLETED, result_path=tmp_path / "out.txt")
        assert completed.status is JobStatus.COMPLETED
        assert completed.progress == 100
        assert completed.result_path == tmp_path / "out.txt"
        assert completed.error is None
        assert completed.completed_at is not None

    def test_failed_requires_error_and_clears_result(self, job_store):
        job_store.create(new_record())
        job_store.transition("job1", JobStatus.PROCESSING)
        with pytest.raises(InvalidJobStateError):
            job_store.transition("job1", JobStatus.FAILED)

        failed = job_store.transition("job1", JobStatus.FAILED, error="boom", error_code="ServiceUnavailable")
        assert failed.error == "boom"
        assert failed.error_code == "ServiceUnavailable"
        assert failed.result_path is None

    def test_completed_requires_result_path(self, job_store):
        job_store.create(new_record())
        job_store.transition("job1", JobStatus.PROCESSING)
        with pytest.raises(InvalidJobStateError):
            job_store.transition("job1", JobStatus.COMPLETED)
        assert job_store.get("job1").status is JobStatus.PROCESSING

    def test_queued_cannot_complete(self, job_store, tmp_path):
        job_store.create(new_record())
        with pytest.raises(InvalidJobStateError):
            job_store.transition("job1", JobStatus.COMPLETED, result_path=tmp_path / "x")

    def test_retry_edge_processing_to_queued(self, job_store):
        job_store.create(new_record())
        job_store.transition("job1", JobStatus.PROCESSING, attempts=1)
        queued = job_store.transition("job1", JobStatus.QUEUED, message="Attempt 1 failed: boom")
        assert queued.status is JobStatus.QUEUED
        assert queued.error is None
        assert queued.events[-1].message == "Attempt 1 failed: boom"

    def test_terminal_states_are_final(self, job_store, tmp_path):
        job_store.create(new_record())
        job_store.transition("job1", JobStatus.PROCESSING)
        job_store.transition("job1", JobStatus.COMPLETED, result_path=tmp_path / "out.txt")

        with pytest.raises(InvalidJobStateError):
            job_store.transition("job1", JobStatus.FAILED, error="late failure")
        with pytest.raises(InvalidJobStateError):
            job_store.transition("job1", JobStatus.PROCESSING)
        with pytest.raises(InvalidJobStateError):
            job_store.update("job1", progress=10)

    def test_repeated_terminal_transition_is_noop(self, job_store):
        job_store.create(new_record())
        job_store.transition("job1", JobStatus.FAILED, error="first")
        again = job_store.transition("job1", JobStatus.FAILED, error="second")
        assert again.error == "first"


class TestProgress:
    def test_progress_never_decreases(self, job_store):
        job_store.create(new_record())
        job_store.transition("job1", JobStatus.PROCESSING)
        job_store.update("job1", progress=50)
        assert job_store.update("job1", progress=25).progress == 50
        assert job_store.update("job1", progress=75).progress == 75

    def test_progress_is_clamped(self, job_store):
        job_store.create(new_record())
        assert job_store.update("job1", progress=250).progress == 100

    def test_only_progress_fields_are_updatable(self, job_store):
        job_store.create(new_record())
        with pytest.raises(ValueError):
            job_store.update("job1", status=JobStatus.COMPLETED)
        with pytest.raises(ValueError):
            job_store.update("job1", error="sneaky")

    def test_message_appends_event(self, job_store):
        job_store.create(new_record())
        record = job_store.update("job1", step="Translating content", message="Started translating")
        assert record.step == "Translating content"
        assert [event.message for event in record.events] == ["Started translating"]


class TestConcurrency:
    def test_concurrent_updates_are_not_lost(self, job_store):
        """Events appended from many threads all survive."""
        job_store.create(new_record())
        job_store.transition("job1", JobStatus.PROCESSING)

        def worker(n):
            for i in range(10):
                job_store.update("job1", progress=n * 10 + i, message=f"w{n}-{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        record = job_store.get("job1")
        assert len([e for e in record.events if e.message.startswith("w")]) == 50
        assert record.progress == 49


class TestSqlitePersistence:
    def test_records_survive_reopen(self, tmp_path):
        db_path = tmp_path / "jobs.db"
        SqliteJobStore(db_path).create(new_record())
        SqliteJobStore(db_path).transition("job1", JobStatus.PROCESSING, attempts=2, message="Started")

        record = SqliteJobStore(db_path).get("job1")
        assert record.status is JobStatus.PROCESSING
        assert record.attempts == 2
        assert record.events[-1].message == "Started"


class TestDetail:
    def test_detail_reports_result_availability(self, job_store, tmp_path):
        result = tmp_path / "out.txt"
        result.write_text("hola")
        job_store.create(new_record())
        job_store.transition("job1", JobStatus.PROCESSING)
        job_store.transition("job1", JobStatus.COMPLETED, result_path=result)

        assert job_store.get("job1").to_detail().result_available is True
        result.unlink()
        assert job_store.get("job1").to_detail().result_available is False
