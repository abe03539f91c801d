"""
Job orchestration and lifecycle management for document translation.

This module wires the translation backend together:
- Upload intake (format, language and size validation)
- Job registration in the JobStore
- Durable queueing with bounded concurrency and retries
- Result lookup for downloads
- Background retention of old results

The JobManager class provides the core business logic for the API; the HTTP
layer only translates its exceptions into status codes.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

import httpx
from omegaconf import DictConfig

from .configuration import make_runtime_config, resolve_storage_path
from .errors import JobNotReadyError, ResultNotFoundError
from .formats import detect_format
from .job_queue import JobQueue
from .job_store import InMemoryJobStore, JobRecord, JobStore, SqliteJobStore
from .models import JobDetail, JobStatus, JobSummary, Language
from .pipeline import TranslationPipeline, TranslationTask
from .retention import RetentionSweeper
from .translation import TranslationClient
from .utils import atomic_write_bytes, ensure_directory, normalize_language_code, remove_tree, sanitize_filename

logger = logging.getLogger(__name__)


def build_job_store(config: DictConfig) -> JobStore:
    if config.store.backend == "sqlite":
        return SqliteJobStore(resolve_storage_path(config, config.store.db_path))
    return InMemoryJobStore()


class JobManager:
    """
    Central coordinator for translation jobs.

    Thread Safety:
        Job state lives in the JobStore, which serializes updates per job.
        The manager itself holds no mutable job state.

    Attributes:
        upload_root: Base directory for stored uploads, one subdirectory per job
        result_root: Base directory for translated results
        max_attempts: Delivery attempts per job before it is failed
        max_upload_bytes: Largest accepted upload
    """

    def __init__(
        self,
        store: JobStore,
        translator: TranslationClient,
        *,
        upload_root: Path,
        result_root: Path,
        temp_root: Path,
        queue_db_path: Path,
        concurrency: int = 2,
        max_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        poll_interval_seconds: float = 0.5,
        max_upload_bytes: Optional[int] = None,
        sweeper: Optional[RetentionSweeper] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.upload_root = ensure_directory(upload_root)
        self.result_root = ensure_directory(result_root)
        self.max_attempts = max_attempts
        self.max_upload_bytes = max_upload_bytes
        self._store = store
        self._translator = translator
        self.pipeline = TranslationPipeline(store, translator, result_root=self.result_root, temp_root=temp_root)
        self.queue = JobQueue(
            queue_db_path,
            self.pipeline.handle_delivery,
            concurrency=concurrency,
            retry_delay_seconds=retry_delay_seconds,
            poll_interval_seconds=poll_interval_seconds,
            on_exhausted=self.pipeline.finalize_exhausted,
        )
        self.sweeper = sweeper

    @classmethod
    def from_config(
        cls,
        config: Optional[DictConfig] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "JobManager":
        """
        Build a manager from runtime configuration.

        Args:
            config: Runtime configuration (default: ``make_runtime_config()``)
            transport: Optional httpx transport for the translation client
        """
        config = config if config is not None else make_runtime_config()
        ensure_directory(Path(config.storage.data_dir))
        result_root = resolve_storage_path(config, config.storage.result_dir)

        translator = TranslationClient(
            config.translation.base_url,
            api_key=config.translation.api_key or None,
            timeout=float(config.translation.timeout_seconds),
            transport=transport,
        )
        sweeper = None
        if config.retention.enabled:
            sweeper = RetentionSweeper(
                result_root,
                max_age_seconds=float(config.retention.max_age_seconds),
                interval_seconds=float(config.retention.interval_seconds),
            )
        return cls(
            build_job_store(config),
            translator,
            upload_root=resolve_storage_path(config, config.storage.upload_dir),
            result_root=result_root,
            temp_root=resolve_storage_path(config, config.storage.temp_dir),
            queue_db_path=resolve_storage_path(config, config.queue.db_path),
            concurrency=int(config.queue.concurrency),
            max_attempts=int(config.queue.max_attempts),
            retry_delay_seconds=float(config.queue.retry_delay_seconds),
            poll_interval_seconds=float(config.queue.poll_interval_seconds),
            max_upload_bytes=config.intake.max_upload_bytes,
            sweeper=sweeper,
        )

    # --- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        self.queue.start()
        if self.sweeper is not None:
            self.sweeper.start()

    def shutdown(self, wait: bool = True) -> None:
        if self.sweeper is not None:
            self.sweeper.stop()
        self.queue.stop(wait=wait)
        self._translator.close()

    # --- intake -------------------------------------------------------------

    def submit(self, file_bytes: bytes, original_name: str, target_language: str) -> str:
        """
        Accept an upload and queue it for translation.

        The upload is written to ``uploads/<job_id>/`` before the job is
        registered, so a queued job always has its source on disk.

        Args:
            file_bytes: Raw upload content
            original_name: Client-supplied filename (sanitized here)
            target_language: Target language code

        Returns:
            The new job id

        Raises:
            UnsupportedFormatError: The extension is not txt, docx, pdf or zip
            ValueError: Invalid language code or oversize upload
        """
        safe_name = sanitize_filename(original_name or "")
        detect_format(safe_name)
        language = normalize_language_code(target_language)
        if self.max_upload_bytes and len(file_bytes) > int(self.max_upload_bytes):
            raise ValueError(f"File exceeds the maximum upload size of {self.max_upload_bytes} bytes")

        job_id = uuid4().hex
        upload_dir = self.upload_root / job_id
        source_path = atomic_write_bytes(upload_dir / safe_name, file_bytes)

        try:
            self._store.create(
                JobRecord(
                    id=job_id,
                    original_name=safe_name,
                    target_language=language,
                    source_path=source_path,
                )
            )
            self._store.update(job_id, message="Job registered and awaiting execution.")
            task = TranslationTask(
                job_id=job_id,
                file_path=source_path,
                target_language=language,
                original_name=safe_name,
            )
            self.queue.enqueue(job_id, task.to_payload(), max_attempts=self.max_attempts)
        except Exception:
            self._store.delete(job_id)
            remove_tree(upload_dir)
            raise

        logger.info(f"Accepted {safe_name} for translation to {language} as job {job_id}")
        return job_id

    # --- queries ------------------------------------------------------------

    def get_status(self, job_id: str) -> JobDetail:
        """Raises JobNotFoundError for unknown ids."""
        return self._store.get(job_id).to_detail()

    def list_jobs(self) -> List[JobSummary]:
        return [record.to_summary() for record in self._store.list()]

    def get_result_path(self, job_id: str) -> Path:
        """
        Locate the translated artifact of a completed job.

        Raises:
            JobNotFoundError: Unknown job id
            JobNotReadyError: The job is not completed
            ResultNotFoundError: The result was removed (e.g. by retention)
        """
        record = self._store.get(job_id)
        if record.status != JobStatus.COMPLETED:
            raise JobNotReadyError(f"Job {job_id} is {record.status.value}; no result available")
        if record.result_path is None or not record.result_path.is_file():
            raise ResultNotFoundError(f"Translated file not found for job {job_id}")
        return record.result_path

    def languages(self) -> List[Language]:
        return self._translator.languages()

