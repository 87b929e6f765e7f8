"""
Submission boundary for PDF jobs.

This module is what the HTTP layer talks to. The JobManager:
- Validates and records new jobs, then hands them to the dispatcher
- Answers status and listing queries from the job store
- Cancels, retries and deletes jobs on behalf of their owner
- Exposes document inspection and content uploads

It never changes a job's status directly except through the same
compare-and-swap transitions the dispatcher and reaper use, and it keeps no
job state in memory: the store is authoritative.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence
from uuid import uuid4

from omegaconf import DictConfig

from . import lifecycle
from .configuration import build_config_metadata, load_settings
from .database import JobStore
from .dispatcher import JobDispatcher
from .engine import document_info
from .errors import StorageError, ValidationError
from .models import ConfigMetadata, DocumentInfo, Job, JobPage, JobStatus, JobType
from .operations import parse_job_type, parse_parameters, resolve
from .reaper import Reaper
from .storage import ContentStore, build_content_store

logger = logging.getLogger(__name__)

# A cancel can lose its CAS to a concurrent claim; the job is then still cancellable.
CANCEL_ATTEMPTS = 3


class JobManager:
    """
    Central coordinator for job submission and owner-initiated actions.

    Attributes:
        store: Durable job records
        content_store: Blob storage for inputs and outputs
        dispatcher: Background executor
        reaper: Recovery sweeps (started by the application lifespan)
    """

    def __init__(
        self,
        store: JobStore,
        content_store: ContentStore,
        dispatcher: JobDispatcher,
        reaper: Optional[Reaper] = None,
        max_inputs: int = 20,
        max_document_bytes: int = 100 * 1024 * 1024,
        settings: Optional[DictConfig] = None,
    ) -> None:
        self.store = store
        self.content_store = content_store
        self.dispatcher = dispatcher
        self.reaper = reaper
        self.max_inputs = max_inputs
        self.max_document_bytes = max_document_bytes
        self.settings = settings
        self._config_metadata: ConfigMetadata | None = None

    @classmethod
    def from_settings(cls, settings: DictConfig) -> "JobManager":
        """
        Wire up store, content store, dispatcher and reaper from configuration.

        Args:
            settings: Output of ``configuration.load_settings``

        Note:
            The reaper is created but not started; call ``start`` (the FastAPI
            lifespan does) to begin background sweeps.
        """
        store = JobStore(Path(settings.database.path))
        content_store = build_content_store(
            settings.storage.provider,
            local_root=Path(settings.storage.local_root),
            s3_bucket=settings.storage.s3_bucket,
            s3_prefix=settings.storage.s3_prefix,
            timeout_seconds=settings.storage.timeout_seconds,
        )
        dispatcher = JobDispatcher(
            store,
            content_store,
            max_workers=settings.dispatcher.max_workers,
            execution_timeout_seconds=settings.dispatcher.execution_timeout_seconds,
            max_document_bytes=settings.limits.max_document_bytes,
        )
        reaper = None
        if settings.reaper.enabled:
            reaper = Reaper(
                store,
                dispatcher=dispatcher,
                content_store=content_store,
                interval_seconds=settings.reaper.interval_seconds,
                stale_after_seconds=settings.reaper.stale_after_seconds,
                pending_after_seconds=settings.reaper.pending_after_seconds,
                retention_seconds=settings.reaper.retention_seconds,
                purge_outputs=settings.reaper.purge_outputs,
            )
        return cls(
            store,
            content_store,
            dispatcher,
            reaper=reaper,
            max_inputs=settings.limits.max_inputs,
            max_document_bytes=settings.limits.max_document_bytes,
            settings=settings,
        )

    def start(self) -> None:
        if self.reaper is not None:
            self.reaper.start()

    def shutdown(self, wait: bool = True) -> None:
        if self.reaper is not None:
            self.reaper.stop()
        self.dispatcher.shutdown(wait=wait)

    def submit(
        self,
        job_type: str | JobType,
        owner_id: str,
        input_refs: Sequence[str],
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """
        Record a new PENDING job and queue it for execution.

        Only the shape of the request is checked here; document content is
        validated when the job runs.

        Args:
            job_type: A ``JobType`` or its name
            owner_id: Identity of the submitter
            input_refs: Content references, in operation order
            parameters: Operation-specific settings

        Returns:
            The created job (still PENDING)

        Raises:
            ValidationError: Empty or too many inputs, unknown type, bad parameters
            UnsupportedOperationError: Known type with no transformation
        """
        if not owner_id:
            raise ValidationError("An owner id is required")
        job_type = job_type if isinstance(job_type, JobType) else parse_job_type(job_type)
        operation = resolve(job_type)
        refs = list(input_refs or [])
        if not refs:
            raise ValidationError("At least one input document is required")
        if any(not isinstance(ref, str) or not ref.strip() for ref in refs):
            raise ValidationError("Input references must be non-empty strings")
        if len(refs) > self.max_inputs:
            raise ValidationError(f"Too many input documents: {len(refs)} (maximum {self.max_inputs})")
        params = parse_parameters(operation, parameters, ValidationError)

        now = lifecycle.utcnow()
        job = Job(
            id=uuid4().hex,
            owner_id=owner_id,
            type=job_type,
            status=JobStatus.PENDING,
            input_refs=tuple(refs),
            parameters=params.model_dump(mode="json"),
            created_at=now,
            updated_at=now,
        )
        self.store.create(job)
        logger.info("Job %s (%s) submitted by %s with %d inputs", job.id, job_type.value, owner_id, len(refs))

        self.dispatcher.dispatch(job.id)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.store.find_by_id(job_id)

    def get_owned_job(self, job_id: str, owner_id: str) -> Optional[Job]:
        """Like ``get_job`` but hides other owners' jobs."""
        job = self.store.find_by_id(job_id)
        if job is None or job.owner_id != owner_id:
            return None
        return job

    def list_jobs(
        self,
        owner_id: str,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        page: int = 0,
        size: int = 20,
    ) -> JobPage:
        if page < 0:
            raise ValidationError("page must be >= 0")
        if size < 1 or size > 100:
            raise ValidationError("size must be between 1 and 100")
        jobs, total = self.store.find_by_owner(owner_id, status=status, job_type=job_type, page=page, size=size)
        return JobPage(items=[job.to_view() for job in jobs], page=page, size=size, total=total)

    def cancel(self, job_id: str, owner_id: str) -> bool:
        """
        Cancel a PENDING or PROCESSING job.

        Returns:
            False for unknown jobs, other owners' jobs, or jobs that reached a
            terminal state first

        Note:
            A PROCESSING job is marked CANCELLED immediately; its execution
            stops at the next checkpoint and any output it produces is discarded.
        """
        for _ in range(CANCEL_ATTEMPTS):
            job = self.get_owned_job(job_id, owner_id)
            if job is None or job.status not in (JobStatus.PENDING, JobStatus.PROCESSING):
                return False
            if self.store.apply(job.id, lifecycle.cancel(job.status)):
                logger.info("Job %s cancelled by %s (was %s)", job.id, owner_id, job.status.value)
                return True
        logger.warning("Job %s: cancel lost %d races, giving up", job_id, CANCEL_ATTEMPTS)
        return False

    def retry(self, job_id: str, owner_id: str) -> Optional[Job]:
        """
        Move a FAILED job back to PENDING and queue it again.

        Returns:
            The reset job, or None if the job is unknown, not owned, or not FAILED
        """
        job = self.get_owned_job(job_id, owner_id)
        if job is None or job.status != JobStatus.FAILED:
            return None
        update = lifecycle.retry()
        if not self.store.apply(job.id, update):
            return None
        logger.info("Job %s retried by %s", job.id, owner_id)
        self.dispatcher.dispatch(job.id)
        return update.apply(job)

    def delete_job(self, job_id: str, owner_id: str) -> bool:
        """Delete a terminal job and its output; False otherwise."""
        job = self.get_owned_job(job_id, owner_id)
        if job is None or not job.status.is_terminal:
            return False
        if not self.store.delete(job.id):
            return False
        if job.output_ref:
            try:
                self.content_store.delete(job.output_ref)
            except StorageError as exc:
                logger.warning("Could not delete output %s of job %s: %s", job.output_ref, job.id, exc.message)
        logger.info("Job %s deleted by %s", job.id, owner_id)
        return True

    def upload_input(self, data: bytes, filename: str, content_type: str = "application/pdf") -> str:
        if not data:
            raise ValidationError("Uploaded file is empty")
        if len(data) > self.max_document_bytes:
            raise ValidationError(f"Uploaded file exceeds {self.max_document_bytes} bytes")
        return self.content_store.upload(data, filename, content_type)

    def download(self, ref: str) -> bytes:
        return self.content_store.download(ref)

    def inspect(self, ref: str) -> DocumentInfo:
        """
        Read a stored document's metadata.

        Raises:
            ContentNotFoundError: If ``ref`` names no blob
            ProcessingError: If the blob is not a readable PDF
        """
        return document_info(self.content_store.download(ref))

    def get_config_metadata(self) -> ConfigMetadata:
        """
        Get configuration metadata (cached after first call).

        Returns:
            ConfigMetadata with effective settings and per-operation parameter schemas
        """
        if self._config_metadata is None:
            self._config_metadata = build_config_metadata(self.settings or load_settings())
        return self._config_metadata
