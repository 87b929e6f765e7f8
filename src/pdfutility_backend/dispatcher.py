"""
Background execution of jobs.

The dispatcher runs each job end to end on a bounded thread pool:

- claim the job (PENDING -> PROCESSING, compare-and-swap)
- download its inputs from the content store
- run the registered transformation
- upload the result and mark the job COMPLETED

Submission never waits for any of this. Every failure inside an execution is
caught and written to the job record as FAILED; the only way to observe the
outcome is to read the job back from the store.

Progress is recorded at checkpoints (downloads 0-30, transformation 30-80,
upload 80-95, completion 100). Each checkpoint also enforces the execution
deadline and notices when the job left PROCESSING underneath us (cancelled, or
reaped and since claimed by a newer execution), in which case the
execution stops without writing anything else.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

from . import lifecycle
from .database import JobStore
from .engine import Checkpoint
from .errors import ErrorCode, ExecutionTimeoutError, JobStoreError, PdfUtilityError, ProcessingError, StorageError
from .models import Job
from .operations import parse_parameters, resolve
from .storage import ContentStore

logger = logging.getLogger(__name__)

OUTPUT_CONTENT_TYPE = "application/pdf"


class ExecutionAborted(Exception):
    """The job is no longer PROCESSING; the running execution must stop."""


class ExecutionContext:
    """
    Per-execution deadline and progress reporting.

    Attributes:
        job_id: The job being executed
        lease_id: Lease written by this execution's claim
        deadline: Monotonic time after which checkpoints raise ``ExecutionTimeoutError``
        progress: Highest progress value recorded so far
    """

    def __init__(
        self,
        store: JobStore,
        job_id: str,
        timeout_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        lease_id: Optional[str] = None,
    ) -> None:
        self.store = store
        self.job_id = job_id
        self.lease_id = lease_id
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self.deadline = clock() + timeout_seconds
        self.progress = 0

    def checkpoint(self, progress: int) -> None:
        """
        Enforce the deadline, then record progress.

        Raises:
            ExecutionTimeoutError: If the deadline has passed
            ExecutionAborted: If the job is no longer PROCESSING under our lease
        """
        if self._clock() >= self.deadline:
            raise ExecutionTimeoutError(f"Execution exceeded {self.timeout_seconds:g}s")
        self.progress = max(self.progress, min(100, int(progress)))
        if not self.store.update_progress(self.job_id, self.progress, self.lease_id):
            raise ExecutionAborted(self.job_id)

    def band(self, start: int, end: int) -> Checkpoint:
        """A ``(done, total)`` callback mapping unit progress into ``start..end``."""

        def report(done: int, total: int) -> None:
            fraction = done / total if total else 1.0
            self.checkpoint(start + int((end - start) * fraction))

        return report


class JobDispatcher:
    """
    Runs jobs on a ``ThreadPoolExecutor``.

    Excess submissions queue inside the executor. Holding no job state of its
    own, the dispatcher can safely be asked to run the same job twice: only
    one execution wins the claim.
    """

    def __init__(
        self,
        store: JobStore,
        content_store: ContentStore,
        max_workers: int = 2,
        execution_timeout_seconds: float = 300.0,
        max_document_bytes: int = 100 * 1024 * 1024,
    ) -> None:
        self.store = store
        self.content_store = content_store
        self.execution_timeout_seconds = execution_timeout_seconds
        self.max_document_bytes = max_document_bytes
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pdf-job")

    def dispatch(self, job_id: str) -> Future:
        """Queue ``job_id`` for execution and return immediately."""
        future = self._executor.submit(self.execute, job_id)
        future.add_done_callback(lambda done: self._log_escaped(job_id, done))
        return future

    @staticmethod
    def _log_escaped(job_id: str, future: Future) -> None:
        if future.cancelled():
            logger.warning("Execution of job %s was cancelled before it started", job_id)
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Execution of job %s escaped with %r", job_id, exc, exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def execute(self, job_id: str) -> None:
        """
        Run one job to a terminal state.

        Returns silently if the claim is lost. Never raises: failures become a
        FAILED record, store outages are logged and left to the reaper.
        """
        lease_id = lifecycle.new_lease()
        try:
            if not self.store.apply(job_id, lifecycle.claim(lease_id=lease_id)):
                logger.info("Job %s was already claimed or cancelled; skipping", job_id)
                return
            job = self.store.find_by_id(job_id)
        except JobStoreError as exc:
            logger.error("Could not claim job %s: %s", job_id, exc.message)
            return
        if job is None:
            return

        logger.info("Job %s (%s) started", job.id, job.type.value)
        context = ExecutionContext(self.store, job.id, self.execution_timeout_seconds, lease_id=lease_id)
        try:
            self._run(job, context)
        except ExecutionAborted:
            logger.info("Job %s left PROCESSING during execution; stopping", job.id)
        except PdfUtilityError as exc:
            logger.warning("Job %s failed (%s): %s", job.id, exc.error_code.value, exc.message)
            self._fail(job.id, exc.message, exc.error_code, exc.retryable, lease_id)
        except Exception as exc:
            logger.exception("Job %s failed unexpectedly", job.id)
            self._fail(job.id, f"Unexpected error: {exc}", ErrorCode.INTERNAL_ERROR, False, lease_id)

    def _run(self, job: Job, context: ExecutionContext) -> None:
        operation = resolve(job.type)
        params = parse_parameters(operation, job.parameters, ProcessingError)

        documents = self._download_inputs(job, context)
        result = operation.handler(documents, params, context.band(30, 80))
        context.checkpoint(80)

        name = f"{operation.output_prefix}_{job.id}.pdf"
        output_ref = self.content_store.upload(result, name, OUTPUT_CONTENT_TYPE)
        try:
            context.checkpoint(95)
            completed = self.store.apply(job.id, lifecycle.complete(output_ref, lease_id=context.lease_id))
        except Exception:
            self._discard_output(job.id, output_ref)
            raise

        if completed:
            logger.info("Job %s completed: %s (%d bytes)", job.id, output_ref, len(result))
        else:
            logger.info("Job %s left PROCESSING before completion; discarding output", job.id)
            self._discard_output(job.id, output_ref)

    def _download_inputs(self, job: Job, context: ExecutionContext) -> List[bytes]:
        documents: List[bytes] = []
        total = len(job.input_refs)
        for index, ref in enumerate(job.input_refs, start=1):
            data = self.content_store.download(ref)
            if len(data) > self.max_document_bytes:
                raise ProcessingError(
                    f"Input {ref} is {len(data)} bytes; the limit is {self.max_document_bytes}"
                )
            documents.append(data)
            context.checkpoint(30 * index // total)
        return documents

    def _fail(
        self,
        job_id: str,
        message: str,
        error_code: ErrorCode,
        retryable: bool,
        lease_id: Optional[str] = None,
    ) -> None:
        update = lifecycle.fail(message, error_code, retryable, lease_id=lease_id)
        try:
            if not self.store.apply(job_id, update):
                logger.info("Job %s left PROCESSING before its failure was recorded", job_id)
        except JobStoreError as exc:
            logger.error("Could not record failure of job %s: %s", job_id, exc.message)

    def _discard_output(self, job_id: str, output_ref: Optional[str]) -> None:
        if not output_ref:
            return
        try:
            self.content_store.delete(output_ref)
        except StorageError as exc:
            logger.warning("Could not delete output %s of job %s: %s", output_ref, job_id, exc.message)
