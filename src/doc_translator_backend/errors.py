"""
Exception taxonomy for the translation backend.

Every domain failure derives from TranslatorError so the pipeline can tell
"this entry/job failed for a known reason" apart from programming errors.
Disk failures are left as the builtin OSError.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class TranslatorError(Exception):
    """Base class for all domain errors raised by the backend."""


class UnsupportedFormatError(TranslatorError):
    def __init__(self, extension: str):
        self.extension = extension
        super().__init__(f"Unsupported file format: {extension or '(none)'}")


class ExtractionError(TranslatorError):
    pass


class RenderError(TranslatorError):
    pass


class InvalidArchive(TranslatorError):
    pass


class EmptyArchive(InvalidArchive):
    pass


class NoFilesTranslated(TranslatorError):
    pass


class TranslationErrorKind(str, Enum):
    SERVICE_ERROR = "service_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    REQUEST_ERROR = "request_error"


class TranslationServiceError(TranslatorError):
    """
    Failure talking to the remote translation service.

    The ``kind`` attribute tells callers which of the three failure modes
    occurred without inspecting transport internals.
    """

    kind: TranslationErrorKind


class ServiceError(TranslationServiceError):
    kind = TranslationErrorKind.SERVICE_ERROR

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Translation service error: {status_code} - {body}")


class ServiceUnavailable(TranslationServiceError):
    kind = TranslationErrorKind.SERVICE_UNAVAILABLE

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason
        message = "Translation service unavailable - no response received"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class RequestError(TranslationServiceError):
    kind = TranslationErrorKind.REQUEST_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Translation error: {message}")


class JobNotFoundError(TranslatorError):
    pass


class JobNotReadyError(TranslatorError):
    pass


class ResultNotFoundError(TranslatorError):
    pass


class InvalidJobStateError(TranslatorError):
    pass


class JobConflictError(TranslatorError):
    pass
