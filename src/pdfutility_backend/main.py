from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .configuration import configure_logging, load_settings
from .errors import ContentNotFoundError, PdfUtilityError, ProcessingError, StorageError, ValidationError
from .job_manager import JobManager
from .models import (
    ConfigMetadata,
    DocumentInfo,
    JobCreated,
    JobPage,
    JobStatus,
    JobType,
    JobView,
    StoredFile,
    SubmitJobRequest,
)
from .utils import is_pdf_upload, sanitize_filename

settings = load_settings()
configure_logging(settings.logging.level)
logger = logging.getLogger(__name__)

job_manager = JobManager.from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start background sweeps on startup; drain workers on shutdown."""
    job_manager.start()
    yield
    job_manager.shutdown(wait=True)


app = FastAPI(title="PDF Utility API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_job_manager() -> JobManager:
    return job_manager


def get_owner_id(x_user_id: str = Header(...)) -> str:
    owner_id = x_user_id.strip()
    if not owner_id:
        raise HTTPException(status_code=400, detail="X-User-Id header must not be blank")
    return owner_id


def _status_code_for(exc: PdfUtilityError) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ContentNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, StorageError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, ProcessingError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(PdfUtilityError)
async def handle_service_error(request: Request, exc: PdfUtilityError) -> JSONResponse:
    code = _status_code_for(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=code,
        content={"detail": exc.message, "error_code": exc.error_code.value, "retryable": exc.retryable},
    )


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/config/defaults", response_model=ConfigMetadata)
def get_config_defaults(manager: JobManager = Depends(get_job_manager)) -> ConfigMetadata:
    return manager.get_config_metadata()


@app.post("/files", response_model=StoredFile, status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: UploadFile = File(...),
    manager: JobManager = Depends(get_job_manager),
) -> StoredFile:
    """
    Store an input document and return its content reference.

    Note:
        File routes are not scoped by X-User-Id. A ref is an unguessable
        bearer capability (random UUID prefix): whoever holds it can read
        the blob, so clients must treat refs like secrets.
    """
    if not file.filename:
        raise HTTPException(status_code=400, detail="PDF file must have a filename")
    if not is_pdf_upload(file.filename, file.content_type):
        raise HTTPException(status_code=400, detail="Only PDF uploads are supported")

    data = await file.read()
    await file.close()
    ref = manager.upload_input(data, file.filename, "application/pdf")
    return StoredFile(ref=ref, filename=sanitize_filename(file.filename), size=len(data))


# Refs contain a slash, so the info route must be registered before the download route.
@app.get("/files/{ref:path}/info", response_model=DocumentInfo)
def file_info(ref: str, manager: JobManager = Depends(get_job_manager)) -> DocumentInfo:
    return manager.inspect(ref)


@app.get("/files/{ref:path}")
def download_file(ref: str, manager: JobManager = Depends(get_job_manager)) -> Response:
    data = manager.download(ref)
    filename = ref.rsplit("/", 1)[-1]
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/jobs", response_model=JobCreated, status_code=status.HTTP_202_ACCEPTED)
def create_job(
    request: SubmitJobRequest,
    owner_id: str = Depends(get_owner_id),
    manager: JobManager = Depends(get_job_manager),
) -> JobCreated:
    job = manager.submit(request.type, owner_id, request.input_refs, request.parameters)
    return JobCreated(
        job_id=job.id,
        type=job.type,
        status=job.status,
        tracking_url=f"/jobs/{job.id}",
    )


@app.get("/jobs", response_model=JobPage)
def list_jobs(
    job_status: Optional[JobStatus] = Query(None, alias="status"),
    job_type: Optional[JobType] = Query(None, alias="type"),
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    manager: JobManager = Depends(get_job_manager),
) -> JobPage:
    return manager.list_jobs(owner_id, status=job_status, job_type=job_type, page=page, size=size)


def _owned_job_view(manager: JobManager, job_id: str, owner_id: str) -> JobView:
    job = manager.get_owned_job(job_id, owner_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_view()


@app.get("/jobs/{job_id}", response_model=JobView)
def get_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    manager: JobManager = Depends(get_job_manager),
) -> JobView:
    return _owned_job_view(manager, job_id, owner_id)


@app.post("/jobs/{job_id}/cancel", response_model=JobView)
def cancel_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    manager: JobManager = Depends(get_job_manager),
) -> JobView:
    current = _owned_job_view(manager, job_id, owner_id)
    if not manager.cancel(job_id, owner_id):
        raise HTTPException(status_code=409, detail=f"Job cannot be cancelled (status {current.status.value})")
    return _owned_job_view(manager, job_id, owner_id)


@app.post("/jobs/{job_id}/retry", response_model=JobView)
def retry_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    manager: JobManager = Depends(get_job_manager),
) -> JobView:
    current = _owned_job_view(manager, job_id, owner_id)
    job = manager.retry(job_id, owner_id)
    if job is None:
        raise HTTPException(status_code=409, detail=f"Only failed jobs can be retried (status {current.status.value})")
    return job.to_view()


@app.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    manager: JobManager = Depends(get_job_manager),
) -> Response:
    current = _owned_job_view(manager, job_id, owner_id)
    if not manager.delete_job(job_id, owner_id):
        raise HTTPException(status_code=409, detail=f"Only finished jobs can be deleted (status {current.status.value})")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
