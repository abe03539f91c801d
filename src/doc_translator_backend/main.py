from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from omegaconf import DictConfig

from .configuration import configure_logging, make_runtime_config
from .errors import (
    JobNotFoundError,
    JobNotReadyError,
    ResultNotFoundError,
    TranslationServiceError,
    UnsupportedFormatError,
)
from .job_manager import JobManager
from .models import JobDetail, JobStatus, JobSummary, Language, UploadResponse

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    ".txt": "text/plain; charset=utf-8",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".pdf": "application/pdf",
    ".zip": "application/zip",
}


def create_app(manager: Optional[JobManager] = None, config: Optional[DictConfig] = None) -> FastAPI:
    config = config if config is not None else make_runtime_config()
    configure_logging(config)
    job_manager = manager if manager is not None else JobManager.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        job_manager.start()
        try:
            yield
        finally:
            job_manager.shutdown()

    app = FastAPI(title="Document Translator API", version="0.1.0", lifespan=lifespan)
    app.state.job_manager = job_manager
    app.state.default_language = str(config.intake.default_language)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.get("/")(root)
    app.get("/healthz")(healthcheck)
    app.post("/upload", response_model=UploadResponse)(upload)
    app.get("/status/{job_id}", response_model=JobDetail)(job_status)
    app.get("/jobs", response_model=List[JobSummary])(list_jobs)
    app.get("/download/{job_id}")(download)
    app.get("/languages", response_model=List[Language])(languages)
    return app


def get_job_manager(request: Request) -> JobManager:
    return request.app.state.job_manager


def root() -> Dict[str, str]:
    return {"message": "Document translation API. Upload a .txt, .docx, .pdf or .zip file to /upload."}


def healthcheck(manager: JobManager = Depends(get_job_manager)) -> Dict[str, Any]:
    return {"status": "ok", "queue": manager.queue.stats()}


async def upload(
    request: Request,
    file: Optional[UploadFile] = File(None),
    language: Optional[str] = Form(None),
    manager: JobManager = Depends(get_job_manager),
) -> UploadResponse:
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")

    content = await file.read()
    await file.close()
    target_language = language or request.app.state.default_language

    try:
        job_id = manager.submit(content, file.filename, target_language)
    except UnsupportedFormatError as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return UploadResponse(
        fileId=job_id,
        status=JobStatus.QUEUED,
        message="File uploaded successfully. Translation in progress.",
    )


def job_status(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobDetail:
    try:
        return manager.get_status(job_id)
    except JobNotFoundError as exc:  # noqa: BLE001
        raise HTTPException(status_code=404, detail="Job not found") from exc


def list_jobs(manager: JobManager = Depends(get_job_manager)) -> List[JobSummary]:
    return manager.list_jobs()


def download(job_id: str, manager: JobManager = Depends(get_job_manager)) -> FileResponse:
    try:
        path = manager.get_result_path(job_id)
    except JobNotFoundError as exc:  # noqa: BLE001
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except ResultNotFoundError as exc:  # noqa: BLE001
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except JobNotReadyError as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    media_type = MEDIA_TYPES.get(path.suffix.lower(), "application/octet-stream")
    return FileResponse(path, media_type=media_type, filename=path.name)


def languages(manager: JobManager = Depends(get_job_manager)) -> List[Language]:
    try:
        return manager.languages()
    except TranslationServiceError as exc:  # noqa: BLE001
        logger.error(f"Error fetching languages: {exc}")
        raise HTTPException(status_code=502, detail=str(exc)) from exc


app = create_app()
