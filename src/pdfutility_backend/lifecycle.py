"""
Pure state-machine transitions for jobs.

Each function here describes one edge of the job state graph as a
``JobUpdate``: the status the job must currently be in, the status it moves
to, and the fields that change. Nothing is mutated. The job store turns an
update into a conditional write (``UPDATE ... WHERE status = expected``), and
``JobUpdate.apply`` produces the equivalent in-memory value.

    PENDING -> PROCESSING -> COMPLETED | FAILED
    PENDING | PROCESSING -> CANCELLED
    FAILED -> PENDING (retry)

Each claim writes a fresh ``lease_id``. Updates made on behalf of a running
execution (progress, completion, failure) carry that lease and only apply
while it is still the current one, so an execution that was reaped and whose
job was retried and claimed again can no longer write to the record.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from .errors import ErrorCode
from .models import Job, JobStatus

STALE_MESSAGE = "execution timed out"

# Fields a transition may touch. Identity, inputs and parameters are never here.
MUTABLE_FIELDS = frozenset(
    {
        "progress",
        "output_ref",
        "error_message",
        "error_code",
        "retryable",
        "updated_at",
        "completed_at",
        "lease_id",
    }
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobUpdate:
    expected: JobStatus
    status: JobStatus
    fields: Dict[str, Any]
    lease_id: Optional[str] = None

    def __post_init__(self) -> None:
        unknown = set(self.fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Transition may not modify: {sorted(unknown)}")

    def apply(self, job: Job) -> Job:
        if job.status != self.expected:
            raise ValueError(f"Job {job.id} is {job.status.value}, expected {self.expected.value}")
        if self.lease_id is not None and job.lease_id != self.lease_id:
            raise ValueError(f"Job {job.id} is held by another execution")
        return replace(job, status=self.status, **self.fields)


def new_lease() -> str:
    return uuid4().hex


def claim(now: Optional[datetime] = None, lease_id: Optional[str] = None) -> JobUpdate:
    return JobUpdate(
        JobStatus.PENDING,
        JobStatus.PROCESSING,
        {"lease_id": lease_id or new_lease(), "updated_at": now or utcnow()},
    )


def complete(
    output_ref: str,
    now: Optional[datetime] = None,
    lease_id: Optional[str] = None,
) -> JobUpdate:
    now = now or utcnow()
    return JobUpdate(
        JobStatus.PROCESSING,
        JobStatus.COMPLETED,
        {
            "output_ref": output_ref,
            "progress": 100,
            "error_message": None,
            "error_code": None,
            "retryable": False,
            "updated_at": now,
            "completed_at": now,
        },
        lease_id,
    )


def fail(
    message: str,
    error_code: ErrorCode,
    retryable: bool,
    now: Optional[datetime] = None,
    lease_id: Optional[str] = None,
) -> JobUpdate:
    now = now or utcnow()
    return JobUpdate(
        JobStatus.PROCESSING,
        JobStatus.FAILED,
        {
            "output_ref": None,
            "error_message": message or error_code.value,
            "error_code": error_code,
            "retryable": retryable,
            "updated_at": now,
            "completed_at": now,
        },
        lease_id,
    )


def time_out(now: Optional[datetime] = None) -> JobUpdate:
    return fail(STALE_MESSAGE, ErrorCode.TIMEOUT, True, now)


def cancel(current: JobStatus, now: Optional[datetime] = None) -> JobUpdate:
    if current not in (JobStatus.PENDING, JobStatus.PROCESSING):
        raise ValueError(f"Cannot cancel a {current.value} job")
    now = now or utcnow()
    return JobUpdate(
        current,
        JobStatus.CANCELLED,
        {"output_ref": None, "updated_at": now, "completed_at": now},
    )


def retry(now: Optional[datetime] = None) -> JobUpdate:
    return JobUpdate(
        JobStatus.FAILED,
        JobStatus.PENDING,
        {
            "progress": 0,
            "output_ref": None,
            "error_message": None,
            "error_code": None,
            "retryable": False,
            "updated_at": now or utcnow(),
            "completed_at": None,
            "lease_id": None,
        },
    )
