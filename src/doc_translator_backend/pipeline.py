"""
Translation pipeline: extract -> translate -> persist for one job.

A job is either a single document (txt/docx/pdf) or a ZIP archive of them.
The pipeline owns the job's status record while it runs: it claims the job
(queued -> processing), reports step and progress, and moves the job to a
terminal state exactly once. Retries are driven by the queue; each attempt
re-runs the whole branch from scratch and writes deterministic result names,
so a retry overwrites rather than duplicates.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from . import formats
from .archive import ArchiveEntry, output_member_name, pack, unique_member_name, unpack
from .errors import (
    ExtractionError,
    InvalidJobStateError,
    JobNotFoundError,
    NoFilesTranslated,
    TranslatorError,
)
from .formats import Format, detect_format
from .job_queue import Delivery
from .job_store import JobRecord, JobStore
from .models import JobStatus
from .translation import TranslationClient
from .utils import atomic_write_bytes, ensure_directory, remove_file, remove_tree, split_extension

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranslationTask:
    """Job descriptor replayed unchanged on every delivery attempt."""

    job_id: str
    file_path: Path
    target_language: str
    original_name: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TranslationTask":
        return cls(
            job_id=payload["jobId"],
            file_path=Path(payload["filePath"]),
            target_language=payload["targetLanguage"],
            original_name=payload["originalName"],
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "filePath": str(self.file_path),
            "targetLanguage": self.target_language,
            "originalName": self.original_name,
        }


def translated_filename(original_name: str, target_language: str) -> str:
    """``report.docx`` -> ``report_translated_to_es.docx``"""
    stem, extension = split_extension(original_name)
    return f"{stem}_translated_to_{target_language}{extension.lower()}"


def translated_archive_name(original_name: str, target_language: str) -> str:
    """``bundle.zip`` -> ``translated_to_es_bundle.zip``"""
    return f"translated_to_{target_language}_{Path(original_name).name}"


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class TranslationPipeline:
    """
    Runs translation jobs against a JobStore.

    Attributes:
        result_root: Directory holding produced artifacts, one subdirectory per job
        temp_root: Directory for per-attempt scratch space
    """

    def __init__(
        self,
        store: JobStore,
        translator: TranslationClient,
        *,
        result_root: Path,
        temp_root: Path,
    ) -> None:
        self._store = store
        self._translator = translator
        self.result_root = ensure_directory(result_root)
        self.temp_root = ensure_directory(temp_root)

    # --- queue entry points -------------------------------------------------

    def handle_delivery(self, delivery: Delivery) -> None:
        self.run(
            TranslationTask.from_payload(delivery.payload),
            attempt=delivery.attempt,
            max_attempts=delivery.max_attempts,
        )

    def finalize_exhausted(self, job_id: str, error: str) -> None:
        """
        Mark a job failed after the queue gave up on it.

        Usually the final attempt already failed the job and this is a no-op
        besides making sure the upload is gone.
        """
        try:
            record = self._store.transition(
                job_id,
                JobStatus.FAILED,
                error=error,
                error_code="AttemptsExhausted",
                step=f"Error processing file: {error}",
                message=f"Job failed permanently: {error}",
            )
        except JobNotFoundError:
            logger.warning(f"Exhausted job {job_id} has no status record")
            return
        except InvalidJobStateError as e:
            logger.warning(f"Cannot fail exhausted job {job_id}: {e}")
            return
        self._release_source(job_id, record.source_path)

    # --- main entry point ---------------------------------------------------

    def run(self, task: TranslationTask, attempt: int = 1, max_attempts: int = 1) -> Optional[Path]:
        """
        Process one attempt of ``task``.

        Returns:
            Path of the produced artifact, or None when the job was already
            terminal (a redelivery after completion)

        Raises:
            Exception: Whatever aborted the attempt, after the job status has
                been moved back to queued (attempts left) or to failed
        """
        if not self._claim(task, attempt, max_attempts):
            return None

        terminal = False
        try:
            fmt = detect_format(task.original_name)
            if fmt is Format.ARCHIVE:
                result_path = self._process_archive(task)
            else:
                result_path = self._process_single(task, fmt)

            self._store.transition(
                task.job_id,
                JobStatus.COMPLETED,
                result_path=result_path,
                step="Translation complete",
                message=f"Translation completed: {result_path.name}",
            )
            terminal = True
            logger.info(f"Completed processing file {task.job_id}: {task.original_name}")
            return result_path
        except Exception as exc:
            message = _error_message(exc)
            logger.error(f"Error processing file {task.job_id} (attempt {attempt} of {max_attempts}): {message}")
            if attempt < max_attempts:
                self._store.transition(
                    task.job_id,
                    JobStatus.QUEUED,
                    step=f"Retrying (attempt {attempt + 1} of {max_attempts})",
                    message=f"Attempt {attempt} failed: {message}",
                )
            else:
                self._store.transition(
                    task.job_id,
                    JobStatus.FAILED,
                    error=message,
                    error_code=exc.__class__.__name__,
                    step=f"Error processing file: {message}",
                    message=f"Job failed: {message}",
                )
                terminal = True
            raise
        finally:
            if terminal:
                self._release_source(task.job_id, task.file_path)

    def _claim(self, task: TranslationTask, attempt: int, max_attempts: int) -> bool:
        try:
            record = self._store.get(task.job_id)
        except JobNotFoundError:
            logger.warning(f"Job {task.job_id} has no status record; recreating it from the queued payload")
            record = self._store.create(
                JobRecord(
                    id=task.job_id,
                    original_name=task.original_name,
                    target_language=task.target_language,
                    source_path=task.file_path,
                )
            )

        if record.status.is_terminal:
            logger.info(f"Job {task.job_id} is already {record.status.value}; skipping redelivery")
            return False

        started = f"Attempt {attempt} of {max_attempts} started."
        if record.status == JobStatus.PROCESSING:
            # Left processing by an interrupted worker; the queue hands each job to one worker only.
            self._store.update(task.job_id, attempts=attempt, message=f"Resumed after interruption. {started}")
        else:
            self._store.transition(
                task.job_id,
                JobStatus.PROCESSING,
                attempts=attempt,
                step=f"Processing {task.original_name}",
                message=started,
            )
        return True

    # --- single file --------------------------------------------------------

    def _process_single(self, task: TranslationTask, fmt: Format) -> Path:
        job_id = task.job_id
        self._store.update(job_id, step=f"Processing {task.original_name}", progress=0, total_files=1, current=0)

        self._store.update(job_id, step=f"Extracting content from {fmt.extension} file", progress=25, current=1)
        content = formats.extract(task.file_path.read_bytes(), fmt)

        self._store.update(job_id, step="Translating content", progress=50)
        translated = self._translator.translate(content, task.target_language)

        self._store.update(job_id, step="Saving translated content", progress=75)
        destination = self._result_dir(job_id) / translated_filename(task.original_name, task.target_language)
        atomic_write_bytes(destination, formats.render(translated, fmt))
        return destination

    # --- archive ------------------------------------------------------------

    def _process_archive(self, task: TranslationTask) -> Path:
        job_id = task.job_id
        self._store.update(job_id, step="Validating ZIP file")
        entries = unpack(task.file_path)

        eligible = [entry for entry in entries if entry.eligible]
        for entry in entries:
            if not entry.eligible:
                logger.info(f"Skipping unsupported file: {entry.name}")
        total = len(eligible)
        self._store.update(job_id, step=f"Processing ZIP file with {total} files", total_files=total, current=0)
        if not eligible:
            raise NoFilesTranslated("ZIP file contains no .txt, .docx or .pdf files")

        work_dir = Path(tempfile.mkdtemp(prefix=f"{job_id}-", dir=self.temp_root))
        try:
            outputs: List[Tuple[str, Path]] = []
            taken: Set[str] = set()
            failures = 0
            for index, entry in enumerate(eligible, start=1):
                self._store.update(job_id, step=f"Processing {entry.name}")
                try:
                    arcname, output_path = self._translate_entry(task, entry, work_dir, index)
                    outputs.append((unique_member_name(arcname, taken), output_path))
                except (TranslatorError, OSError) as exc:
                    failures += 1
                    logger.warning(f"Error processing zip entry {entry.name}: {_error_message(exc)}")
                self._store.update(job_id, current=index, progress=round(index / total * 100))

            if not outputs:
                raise NoFilesTranslated(f"No files were successfully translated ({failures} of {total} failed)")
            if failures:
                self._store.update(job_id, message=f"Skipped {failures} of {total} files that could not be translated.")

            self._store.update(job_id, step="Creating ZIP archive with translated files")
            destination = self._result_dir(job_id) / translated_archive_name(task.original_name, task.target_language)
            pack(outputs, destination)
            self._store.update(job_id, step="Cleaning up temporary files")
            return destination
        finally:
            remove_tree(work_dir)

    def _translate_entry(self, task: TranslationTask, entry: ArchiveEntry, work_dir: Path, index: int) -> Tuple[str, Path]:
        if entry.read_error:
            raise ExtractionError(f"Unreadable zip entry: {entry.read_error}")
        content = formats.extract(entry.data, entry.format)
        if not content.strip():
            raise ExtractionError(f"Empty content in file: {entry.name}")

        self._store.update(task.job_id, step=f"Translating {entry.name}")
        translated = self._translator.translate(content, task.target_language)

        output_path = work_dir / f"{index:04d}{entry.format.extension}"
        output_path.write_bytes(formats.render(translated, entry.format))
        return output_member_name(entry.name, task.target_language), output_path

    # --- helpers ------------------------------------------------------------

    def _result_dir(self, job_id: str) -> Path:
        return ensure_directory(self.result_root / job_id)

    def _release_source(self, job_id: str, source_path: Path) -> None:
        if remove_file(source_path):
            logger.info(f"Removed upload for job {job_id}: {source_path}")
        if source_path.parent.name == job_id:
            remove_tree(source_path.parent)
