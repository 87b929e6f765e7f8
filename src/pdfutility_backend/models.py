from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .errors import ErrorCode


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobType(str, Enum):
    MERGE = "MERGE"
    SPLIT = "SPLIT"
    COMPRESS = "COMPRESS"
    EDIT = "EDIT"
    ROTATE = "ROTATE"
    PROTECT = "PROTECT"
    UNLOCK = "UNLOCK"
    WATERMARK = "WATERMARK"
    CONVERT = "CONVERT"
    OCR = "OCR"


@dataclass(frozen=True)
class Job:
    """
    A durable unit of work: one requested document transformation.

    Instances are immutable. State changes are described by
    ``lifecycle.JobUpdate`` objects and applied by the job store, which returns
    a fresh ``Job`` on the next read.

    Attributes:
        id: Unique job identifier (hex UUID)
        owner_id: Identity of the submitter
        type: Operation to run
        status: Current lifecycle state
        input_refs: Content-store references, in submission order
        parameters: Operation-specific configuration as submitted
        progress: 0-100, reaches 100 only on completion
        output_ref: Content-store reference of the result (COMPLETED only)
        error_message: Human-readable failure reason (FAILED only)
        error_code: Failure category (FAILED only)
        retryable: Whether resubmitting is worth attempting
        created_at: Creation timestamp (UTC)
        updated_at: Last mutation timestamp (UTC)
        completed_at: Time the job entered a terminal state
        lease_id: Token of the execution that last claimed the job
    """

    id: str
    owner_id: str
    type: JobType
    status: JobStatus
    input_refs: Tuple[str, ...]
    created_at: datetime
    updated_at: datetime
    parameters: Dict[str, Any] = field(default_factory=dict)
    progress: int = 0
    output_ref: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    retryable: bool = False
    completed_at: Optional[datetime] = None
    lease_id: Optional[str] = None

    def to_view(self) -> "JobView":
        return JobView(
            id=self.id,
            owner_id=self.owner_id,
            type=self.type,
            status=self.status,
            input_refs=list(self.input_refs),
            output_ref=self.output_ref,
            progress=self.progress,
            error_message=self.error_message,
            error_code=self.error_code,
            retryable=self.retryable,
            parameters=self.parameters,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
        )


class JobView(BaseModel):
    id: str
    owner_id: str
    type: JobType
    status: JobStatus
    input_refs: List[str]
    output_ref: Optional[str] = None
    progress: int
    error_message: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    retryable: bool = False
    parameters: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class JobPage(BaseModel):
    items: List[JobView]
    page: int
    size: int
    total: int


class SubmitJobRequest(BaseModel):
    type: str
    input_refs: List[str]
    parameters: Dict[str, Any] = Field(default_factory=dict)


class JobCreated(BaseModel):
    job_id: str
    type: JobType
    status: JobStatus
    tracking_url: str


class StoredFile(BaseModel):
    ref: str
    filename: str
    size: int


class PageDimensions(BaseModel):
    width: float
    height: float
    unit: str = "points"


class DocumentInfo(BaseModel):
    page_count: int
    author: Optional[str] = None
    title: Optional[str] = None
    subject: Optional[str] = None
    creator: Optional[str] = None
    producer: Optional[str] = None
    created_date: Optional[datetime] = None
    modified_date: Optional[datetime] = None
    is_encrypted: bool = False
    pdf_version: Optional[str] = None
    dimensions: Optional[PageDimensions] = None
    file_size_bytes: int


class ConfigMetadata(BaseModel):
    defaults: Dict[str, Any]
    operations: Dict[str, Any]
    unsupported_operations: List[str]
    notes: Dict[str, str]
