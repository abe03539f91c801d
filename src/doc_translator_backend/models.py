from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobEvent(BaseModel):
    timestamp: datetime
    message: str


class JobSummary(BaseModel):
    id: str
    status: JobStatus
    original_name: str
    target_language: str
    step: Optional[str] = None
    progress: int = 0
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class JobDetail(JobSummary):
    total_files: int = 1
    current: int = 0
    attempts: int = 0
    started_at: Optional[datetime] = None
    result_available: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    events: List[JobEvent] = []


class UploadResponse(BaseModel):
    fileId: str
    status: JobStatus
    message: str


class Language(BaseModel):
    code: str
    name: str
