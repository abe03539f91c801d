"""
Pytest configuration and fixtures for Document Translator Backend tests.
"""

import io
import json
import os
import shutil
import tempfile
import time
import zipfile

import fitz  # PyMuPDF
import httpx
import pytest
from docx import Document
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["DOC_TRANSLATOR_DATA_DIR"] = tempfile.mkdtemp(prefix="doc_translator_test_data_")
os.environ["LIBRETRANSLATE_URL"] = "http://translate.test"

from doc_translator_backend.configuration import make_runtime_config
from doc_translator_backend.job_manager import JobManager
from doc_translator_backend.job_store import InMemoryJobStore
from doc_translator_backend.main import create_app
from doc_translator_backend.pipeline import TranslationPipeline
from doc_translator_backend.translation import TranslationClient


class FakeTranslationService:
    """
    In-process stand-in for a LibreTranslate server.

    Translations are deterministic: ``"Hello"`` to ``es`` becomes ``"[es] Hello"``.
    Requests whose text contains a registered needle fail instead.
    """

    def __init__(self):
        self.requests = []
        self.failures = {}
        self.fail_all = None
        self.replies = {}
        self.languages = [
            {"code": "en", "name": "English"},
            {"code": "es", "name": "Spanish"},
            {"code": "fr", "name": "French"},
        ]

    def fail_when(self, needle, failure="unavailable"):
        """``failure`` is "unavailable" (no response) or an HTTP status code."""
        self.failures[needle] = failure

    def reply_with(self, needle, text):
        """Answer requests whose text contains ``needle`` with ``text`` verbatim."""
        self.replies[needle] = text

    def _fail(self, request, failure):
        if failure == "unavailable":
            raise httpx.ConnectError("Connection refused", request=request)
        return httpx.Response(failure, text="Translation engine error")

    def handler(self, request):
        if request.url.path == "/languages":
            if self.fail_all is not None:
                return self._fail(request, self.fail_all)
            return httpx.Response(200, json=self.languages)

        payload = json.loads(request.content)
        self.requests.append(payload)
        if self.fail_all is not None:
            return self._fail(request, self.fail_all)
        for needle, failure in self.failures.items():
            if needle in payload["q"]:
                return self._fail(request, failure)
        for needle, text in self.replies.items():
            if needle in payload["q"]:
                return httpx.Response(200, json={"translatedText": text})
        return httpx.Response(200, json={"translatedText": f"[{payload['target']}] {payload['q']}"})

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


@pytest.fixture(scope="session", autouse=True)
def test_data_dir():
    """Cleanup the import-time data directory after all tests."""
    data_dir = os.environ["DOC_TRANSLATOR_DATA_DIR"]
    yield data_dir
    shutil.rmtree(data_dir, ignore_errors=True)


@pytest.fixture
def translation_service():
    return FakeTranslationService()


@pytest.fixture
def translator(translation_service):
    client = TranslationClient("http://translate.test", transport=translation_service.transport)
    yield client
    client.close()


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def pipeline(tmp_path, store, translator):
    return TranslationPipeline(
        store,
        translator,
        result_root=tmp_path / "translated",
        temp_root=tmp_path / "temp",
    )


@pytest.fixture
def runtime_config(tmp_path):
    """Runtime configuration isolated under tmp_path with fast retries."""
    return make_runtime_config(
        {
            "storage": {"data_dir": str(tmp_path / "data")},
            "translation": {"base_url": "http://translate.test"},
            "queue": {"concurrency": 2, "max_attempts": 2, "retry_delay_seconds": 0.0, "poll_interval_seconds": 0.05},
            "retention": {"enabled": False},
            "intake": {"max_upload_bytes": 1024 * 1024},
        },
        use_env=False,
    )


@pytest.fixture
def manager(runtime_config, translation_service):
    job_manager = JobManager.from_config(runtime_config, transport=translation_service.transport)
    yield job_manager
    job_manager.shutdown()


@pytest.fixture
def client(manager, runtime_config):
    """Create a test client whose lifespan starts and stops the job queue."""
    with TestClient(create_app(manager, runtime_config)) as test_client:
        yield test_client


@pytest.fixture
def wait_for_status():
    """Poll a JobManager until the job reaches one of ``statuses``."""

    def _wait(job_manager, job_id, statuses=("completed", "failed"), timeout=10.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            detail = job_manager.get_status(job_id)
            if detail.status.value in statuses:
                return detail
            time.sleep(0.02)
        raise AssertionError(f"Job {job_id} did not reach {statuses}; last status {detail.status.value}")

    return _wait


@pytest.fixture
def docx_bytes():
    """Build a .docx document with one paragraph per line."""

    def _build(*paragraphs):
        document = Document()
        for text in paragraphs:
            document.add_paragraph(text)
        buffer = io.BytesIO()
        document.save(buffer)
        return buffer.getvalue()

    return _build


@pytest.fixture
def pdf_bytes():
    """Build a one-page PDF with a text layer."""

    def _build(text):
        with fitz.open() as pdf:
            page = pdf.new_page()
            page.insert_text((72, 72), text, fontsize=12)
            return pdf.tobytes()

    return _build


@pytest.fixture
def make_zip(tmp_path):
    """Write a ZIP archive from ``{arcname: bytes}``; a None value adds a directory entry."""

    def _build(name, members):
        path = tmp_path / name
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for arcname, data in members.items():
                if data is None:
                    archive.writestr(zipfile.ZipInfo(arcname.rstrip("/") + "/"), b"")
                else:
                    archive.writestr(arcname, data)
        return path

    return _build


@pytest.fixture
def corrupt_zip(tmp_path):
    """
    Write a ZIP archive whose listed members have damaged compressed data.

    The central directory stays valid, so the archive opens but the damaged
    members fail to decompress.
    """

    def _build(name, members, corrupted):
        path = tmp_path / name
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for arcname, data in members.items():
                archive.writestr(arcname, data)

        raw = bytearray(path.read_bytes())
        with zipfile.ZipFile(path) as archive:
            for info in archive.infolist():
                if info.filename not in corrupted:
                    continue
                name_len = int.from_bytes(raw[info.header_offset + 26:info.header_offset + 28], "little")
                extra_len = int.from_bytes(raw[info.header_offset + 28:info.header_offset + 30], "little")
                start = info.header_offset + 30 + name_len + extra_len
                for offset in range(start, start + info.compress_size):
                    raw[offset] ^= 0xFF
        path.write_bytes(bytes(raw))
        return path

    return _build
