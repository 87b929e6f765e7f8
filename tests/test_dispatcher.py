"""
Tests for job execution: claim, download, transform, upload, terminal state.

Most tests call ``execute`` directly so the whole pipeline runs synchronously
on the test thread.
"""

import io

import pytest
from pypdf import PdfReader

from conftest import build_pdf, wait_for_status
from pdfutility_backend import lifecycle
from pdfutility_backend.dispatcher import ExecutionContext, JobDispatcher
from pdfutility_backend.errors import ErrorCode, ExecutionTimeoutError, StorageError
from pdfutility_backend.models import JobStatus, JobType
from pdfutility_backend.storage import LocalContentStore


class FlakyContentStore(LocalContentStore):
    """Local store whose downloads fail with a transient error."""

    def download(self, ref):
        raise StorageError("connection reset")


class HookedContentStore(LocalContentStore):
    """Local store that runs a callback before each download or upload."""

    def __init__(self, root, on_download=None, on_upload=None):
        super().__init__(root)
        self.on_download = on_download
        self.on_upload = on_upload
        self.uploaded = []

    def download(self, ref):
        if self.on_download:
            self.on_download(ref)
        return super().download(ref)

    def upload(self, data, name, content_type):
        if self.on_upload:
            self.on_upload(name)
        ref = super().upload(data, name, content_type)
        self.uploaded.append(ref)
        return ref


def _pages(content_store, ref):
    return len(PdfReader(io.BytesIO(content_store.download(ref))).pages)


class TestSuccessfulExecution:
    def test_merge_completes_with_output(self, store, content_store, dispatcher, make_job):
        first = content_store.upload(build_pdf(3), "first.pdf", "application/pdf")
        second = content_store.upload(build_pdf(5), "second.pdf", "application/pdf")
        job = make_job(job_type=JobType.MERGE, input_refs=(first, second))

        dispatcher.execute(job.id)

        done = store.find_by_id(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert done.error_message is None
        assert done.completed_at is not None
        assert done.output_ref.endswith(f"merged_{job.id}.pdf")
        assert _pages(content_store, done.output_ref) == 8

    def test_split_uses_parameters(self, store, content_store, dispatcher, make_job):
        ref = content_store.upload(build_pdf(10), "big.pdf", "application/pdf")
        job = make_job(job_type=JobType.SPLIT, input_refs=(ref,), parameters={"from_page": 3, "to_page": 6})

        dispatcher.execute(job.id)

        done = store.find_by_id(job.id)
        assert done.status == JobStatus.COMPLETED
        assert _pages(content_store, done.output_ref) == 4

    def test_dispatch_runs_in_background(self, store, content_store, dispatcher, make_job):
        ref = content_store.upload(build_pdf(2), "doc.pdf", "application/pdf")
        job = make_job(job_type=JobType.ROTATE, input_refs=(ref,), parameters={"angle": 90})

        future = dispatcher.dispatch(job.id)
        future.result(timeout=15)

        assert wait_for_status(store, job.id, {JobStatus.COMPLETED}).progress == 100

    def test_double_dispatch_runs_once(self, store, content_store, make_job, tmp_path):
        hooked = HookedContentStore(tmp_path / "hooked")
        ref = hooked.upload(build_pdf(2), "doc.pdf", "application/pdf")
        hooked.uploaded.clear()
        dispatcher = JobDispatcher(store, hooked, max_workers=4)
        job = make_job(job_type=JobType.COMPRESS, input_refs=(ref,))
        try:
            futures = [dispatcher.dispatch(job.id) for _ in range(4)]
            for future in futures:
                future.result(timeout=15)
        finally:
            dispatcher.shutdown()

        assert store.find_by_id(job.id).status == JobStatus.COMPLETED
        assert len(hooked.uploaded) == 1


class TestFailures:
    def test_bad_page_range_is_processing_error(self, store, content_store, dispatcher, make_job):
        ref = content_store.upload(build_pdf(10), "doc.pdf", "application/pdf")
        job = make_job(job_type=JobType.SPLIT, input_refs=(ref,), parameters={"from_page": 7, "to_page": 3})

        dispatcher.execute(job.id)

        failed = store.find_by_id(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_code == ErrorCode.PROCESSING_ERROR
        assert failed.retryable is False
        assert "Invalid page range" in failed.error_message
        assert failed.output_ref is None
        assert failed.progress < 100

    def test_missing_input(self, store, dispatcher, make_job):
        job = make_job(input_refs=("0123/missing.pdf",))

        dispatcher.execute(job.id)

        failed = store.find_by_id(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_code == ErrorCode.CONTENT_NOT_FOUND
        assert failed.retryable is False

    def test_storage_failure_is_retryable(self, store, make_job, tmp_path):
        dispatcher = JobDispatcher(store, FlakyContentStore(tmp_path / "flaky"))
        job = make_job()
        try:
            dispatcher.execute(job.id)
        finally:
            dispatcher.shutdown()

        failed = store.find_by_id(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_code == ErrorCode.STORAGE_ERROR
        assert failed.retryable is True
        assert failed.error_message == "connection reset"

    def test_wrong_password(self, store, content_store, dispatcher, make_job):
        from pdfutility_backend.engine import protect_document
        from pdfutility_backend.parameters import ProtectParameters

        locked = protect_document(build_pdf(1), ProtectParameters(user_password="right"))
        ref = content_store.upload(locked, "locked.pdf", "application/pdf")
        job = make_job(job_type=JobType.UNLOCK, input_refs=(ref,), parameters={"password": "wrong"})

        dispatcher.execute(job.id)

        failed = store.find_by_id(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_code == ErrorCode.AUTHORIZATION_ERROR

    def test_oversized_input(self, store, content_store, make_job):
        ref = content_store.upload(build_pdf(3), "doc.pdf", "application/pdf")
        dispatcher = JobDispatcher(store, content_store, max_document_bytes=10)
        job = make_job(input_refs=(ref,))
        try:
            dispatcher.execute(job.id)
        finally:
            dispatcher.shutdown()

        failed = store.find_by_id(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_code == ErrorCode.PROCESSING_ERROR

    def test_invalid_stored_parameters(self, store, content_store, dispatcher, make_job):
        ref = content_store.upload(build_pdf(1), "doc.pdf", "application/pdf")
        job = make_job(job_type=JobType.ROTATE, input_refs=(ref,), parameters={"angle": 45})

        dispatcher.execute(job.id)

        failed = store.find_by_id(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_code == ErrorCode.PROCESSING_ERROR
        assert "angle" in failed.error_message

    def test_timeout(self, store, content_store, make_job):
        ref = content_store.upload(build_pdf(2), "doc.pdf", "application/pdf")
        dispatcher = JobDispatcher(store, content_store, execution_timeout_seconds=0)
        job = make_job(input_refs=(ref,))
        try:
            dispatcher.execute(job.id)
        finally:
            dispatcher.shutdown()

        failed = store.find_by_id(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_code == ErrorCode.TIMEOUT
        assert failed.retryable is True

    def test_unexpected_error_is_internal(self, store, make_job, tmp_path):
        class BrokenStore(LocalContentStore):
            def download(self, ref):
                raise RuntimeError("boom")

        dispatcher = JobDispatcher(store, BrokenStore(tmp_path / "broken"))
        job = make_job()
        try:
            dispatcher.execute(job.id)
        finally:
            dispatcher.shutdown()

        failed = store.find_by_id(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_code == ErrorCode.INTERNAL_ERROR
        assert "boom" in failed.error_message


class TestCancellation:
    def test_cancelled_pending_job_is_never_claimed(self, store, content_store, dispatcher, make_job):
        ref = content_store.upload(build_pdf(2), "doc.pdf", "application/pdf")
        job = make_job(input_refs=(ref,))
        assert store.apply(job.id, lifecycle.cancel(JobStatus.PENDING))

        dispatcher.execute(job.id)

        cancelled = store.find_by_id(job.id)
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.output_ref is None
        assert cancelled.progress == 0

    def test_cancel_during_downloads_stops_at_checkpoint(self, store, make_job, tmp_path):
        uploads = []

        def cancel_on_second(ref):
            if ref == second:
                store.apply(job.id, lifecycle.cancel(JobStatus.PROCESSING))

        hooked = HookedContentStore(tmp_path / "hooked", on_download=cancel_on_second)
        first = hooked.upload(build_pdf(1), "a.pdf", "application/pdf")
        second = hooked.upload(build_pdf(1), "b.pdf", "application/pdf")
        hooked.on_upload = uploads.append
        job = make_job(job_type=JobType.MERGE, input_refs=(first, second))
        dispatcher = JobDispatcher(store, hooked)
        try:
            dispatcher.execute(job.id)
        finally:
            dispatcher.shutdown()

        cancelled = store.find_by_id(job.id)
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.output_ref is None
        assert uploads == []

    def test_output_discarded_when_cancelled_after_upload(self, store, make_job, tmp_path):
        def cancel(name):
            store.apply(job.id, lifecycle.cancel(JobStatus.PROCESSING))

        hooked = HookedContentStore(tmp_path / "hooked")
        ref = hooked.upload(build_pdf(2), "doc.pdf", "application/pdf")
        hooked.uploaded.clear()
        hooked.on_upload = cancel
        job = make_job(input_refs=(ref,))
        dispatcher = JobDispatcher(store, hooked)
        try:
            dispatcher.execute(job.id)
        finally:
            dispatcher.shutdown()

        cancelled = store.find_by_id(job.id)
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.output_ref is None
        assert len(hooked.uploaded) == 1
        assert not hooked.exists(hooked.uploaded[0])


class TestRetry:
    def test_retry_after_transient_failure_completes(self, store, content_store, dispatcher, make_job):
        ref = content_store.upload(build_pdf(2), "doc.pdf", "application/pdf")
        job = make_job(
            input_refs=(ref,),
            status=JobStatus.FAILED,
            error_message="connection reset",
            error_code=ErrorCode.STORAGE_ERROR,
            retryable=True,
            completed_at=lifecycle.utcnow(),
        )

        assert store.apply(job.id, lifecycle.retry())
        reset = store.find_by_id(job.id)
        assert reset.status == JobStatus.PENDING
        assert reset.progress == 0
        assert reset.error_message is None

        dispatcher.execute(job.id)

        done = store.find_by_id(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.id == job.id
        assert done.input_refs == job.input_refs


    def test_reaped_execution_cannot_touch_reclaimed_job(self, store, make_job, tmp_path):
        def reap_and_reclaim(name):
            assert store.apply(job.id, lifecycle.time_out())
            assert store.apply(job.id, lifecycle.retry())
            assert store.apply(job.id, lifecycle.claim(lease_id="newer"))

        hooked = HookedContentStore(tmp_path / "hooked")
        first = hooked.upload(build_pdf(2), "a.pdf", "application/pdf")
        second = hooked.upload(build_pdf(3), "b.pdf", "application/pdf")
        hooked.on_upload = reap_and_reclaim
        job = make_job(job_type=JobType.MERGE, input_refs=(first, second))
        dispatcher = JobDispatcher(store, hooked)
        try:
            dispatcher.execute(job.id)
        finally:
            dispatcher.shutdown()

        current = store.find_by_id(job.id)
        assert current.status == JobStatus.PROCESSING
        assert current.lease_id == "newer"
        assert current.progress == 0
        assert current.output_ref is None
        # The stale execution's upload was discarded
        assert not hooked.exists(hooked.uploaded[-1])
        assert store.update_progress(job.id, 15, "newer")

    def test_stale_lease_cannot_record_failure(self, store, make_job):
        job = make_job(status=JobStatus.PROCESSING, lease_id="older")
        assert store.apply(job.id, lifecycle.time_out())
        assert store.apply(job.id, lifecycle.retry())
        assert store.apply(job.id, lifecycle.claim(lease_id="newer"))

        update = lifecycle.fail("late failure", ErrorCode.PROCESSING_ERROR, False, lease_id="older")
        assert store.apply(job.id, update) is False
        assert store.find_by_id(job.id).status == JobStatus.PROCESSING

class TestExecutionContext:
    def test_band_maps_units_into_range(self, store, make_job):
        job = make_job(status=JobStatus.PROCESSING)
        context = ExecutionContext(store, job.id, 60)
        report = context.band(30, 80)

        report(1, 2)
        assert store.find_by_id(job.id).progress == 55
        report(2, 2)
        assert store.find_by_id(job.id).progress == 80

    def test_deadline(self, store, make_job):
        job = make_job(status=JobStatus.PROCESSING)
        now = [100.0]
        context = ExecutionContext(store, job.id, 10, clock=lambda: now[0])

        context.checkpoint(10)
        now[0] = 111.0
        with pytest.raises(ExecutionTimeoutError):
            context.checkpoint(20)
        assert store.find_by_id(job.id).progress == 10
