"""
Document Translator Backend - REST API for asynchronous document translation

This package provides a FastAPI-based web service that translates uploaded
documents through a LibreTranslate-compatible service. It enables:

- Uploads of .txt, .docx and .pdf documents, or ZIP archives of them
- Queued background translation with bounded concurrency and retries
- Job status tracking with step, progress and event logging
- Download of translated documents and archives
- Periodic cleanup of old results

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Upload intake and job lifecycle coordinator
    - pipeline: Extract -> translate -> persist for a single job
    - job_queue: Durable SQLite-backed work queue
    - job_store: In-memory and SQLite job status stores
    - formats / archive: Document codecs and ZIP handling
    - translation: Client for the remote translation service
    - retention: Scheduled removal of expired results
    - configuration: Config loading and merging logic
    - utils: Filesystem and string utilities

Usage:
    Run the API server with:
        uvicorn doc_translator_backend.main:app --host 0.0.0.0 --port 8000

    Point it at a translation service with:
        LIBRETRANSLATE_URL=http://localhost:5001 uvicorn doc_translator_backend.main:app
"""
