"""
PDF Utility Backend - asynchronous PDF processing jobs over REST

This package provides a FastAPI-based web service that runs document
transformations (merge, split, compress, rotate, watermark, add text,
protect, unlock) as durable background jobs. It enables:

- PDF uploads to a local or S3 content store
- Non-blocking job submission with progress tracking
- Cancellation, retry and deletion of jobs by their owner
- Recovery of stuck or orphaned jobs by a periodic reaper
- Document inspection (page count, metadata, dimensions)

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Submission boundary used by the HTTP layer
    - dispatcher: Thread-pool execution of a single job, end to end
    - reaper: Periodic stale, retention and orphaned-job sweeps
    - database: SQLite job store with compare-and-swap transitions
    - lifecycle: Pure job state-machine transitions
    - engine: pypdf transformations; operations maps job types onto them
    - storage: Local and S3 content stores
    - configuration: OmegaConf settings and logging setup

Usage:
    Run the API server with:
        uvicorn pdfutility_backend.main:app --reload --host 0.0.0.0 --port 8000

Architecture Principles:
    - The job store is the only source of truth for job state
    - Every status change is a conditional (compare-and-swap) update
    - Failures are recorded on the job, never raised to the submitter
"""
