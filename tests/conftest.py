"""
Pytest configuration and fixtures for PDF Utility Backend tests.
"""

import io
import os
import shutil
import tempfile
import time

import pytest
from fastapi.testclient import TestClient
from pypdf import PdfWriter

# Set test environment variables before importing the app
_TEST_ROOT = tempfile.mkdtemp(prefix="pdfutility_test_")
os.environ["PDFUTILITY_DB_PATH"] = os.path.join(_TEST_ROOT, "jobs.db")
os.environ["PDFUTILITY_STORAGE_PROVIDER"] = "local"
os.environ["PDFUTILITY_STORAGE_ROOT"] = os.path.join(_TEST_ROOT, "content")
os.environ["PDFUTILITY_REAPER_ENABLED"] = "false"
os.environ["PDFUTILITY_MAX_INPUTS"] = "5"

from pdfutility_backend.database import JobStore  # noqa: E402
from pdfutility_backend.dispatcher import JobDispatcher  # noqa: E402
from pdfutility_backend.job_manager import JobManager  # noqa: E402
from pdfutility_backend.lifecycle import utcnow  # noqa: E402
from pdfutility_backend.main import app  # noqa: E402
from pdfutility_backend.models import Job, JobStatus, JobType  # noqa: E402
from pdfutility_backend.storage import LocalContentStore  # noqa: E402


def build_pdf(pages: int, width: float = 612, height: float = 792, title: str = None) -> bytes:
    """Create a PDF with ``pages`` blank pages; page i is (width + i) points wide."""
    writer = PdfWriter()
    for index in range(pages):
        writer.add_blank_page(width=width + index, height=height)
    if title:
        writer.add_metadata({"/Title": title, "/Author": "Test Suite"})
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def wait_for_status(store: JobStore, job_id: str, statuses, timeout: float = 15.0) -> Job:
    """Poll until the job reaches one of ``statuses``."""
    deadline = time.monotonic() + timeout
    while True:
        job = store.find_by_id(job_id)
        if job is not None and job.status in statuses:
            return job
        if time.monotonic() > deadline:
            raise AssertionError(f"Job {job_id} stuck in {job.status if job else None}")
        time.sleep(0.05)


class RecordingDispatcher(JobDispatcher):
    """Dispatcher that records dispatch requests instead of running them."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.dispatched = []

    def dispatch(self, job_id):
        self.dispatched.append(job_id)
        return None


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the app's test directories after the session."""
    yield _TEST_ROOT
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def store(tmp_path):
    return JobStore(tmp_path / "jobs.db")


@pytest.fixture
def content_store(tmp_path):
    return LocalContentStore(tmp_path / "content")


@pytest.fixture
def dispatcher(store, content_store):
    dispatcher = JobDispatcher(store, content_store, max_workers=2, execution_timeout_seconds=60)
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture
def recording_dispatcher(store, content_store):
    dispatcher = RecordingDispatcher(store, content_store, max_workers=1, execution_timeout_seconds=60)
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture
def manager(store, content_store, recording_dispatcher):
    """A JobManager whose dispatches are recorded, not executed."""
    return JobManager(store, content_store, recording_dispatcher, max_inputs=5)


@pytest.fixture
def make_job(store):
    """Insert a job directly into the store."""

    def _make(
        job_type=JobType.SPLIT,
        input_refs=("ref/a.pdf",),
        parameters=None,
        owner_id="alice",
        status=JobStatus.PENDING,
        **fields,
    ) -> Job:
        now = fields.pop("now", None) or utcnow()
        job = Job(
            id=fields.pop("id", None) or os.urandom(16).hex(),
            owner_id=owner_id,
            type=job_type,
            status=status,
            input_refs=tuple(input_refs),
            parameters=parameters or {},
            created_at=now,
            updated_at=now,
            **fields,
        )
        return store.create(job)

    return _make

