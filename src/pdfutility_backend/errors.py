"""
Error taxonomy for the PDF job service.

Every error carries an ``error_code`` (persisted on FAILED jobs) and a
``retryable`` flag telling clients whether resubmitting the same job is worth
attempting. Lost compare-and-swap races are not errors: the store reports them
as ``False`` return values.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    CONTENT_NOT_FOUND = "CONTENT_NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class PdfUtilityError(Exception):
    """Base class for all errors raised by the service."""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PdfUtilityError):
    """Malformed submission; rejected synchronously, no job is created."""

    error_code = ErrorCode.VALIDATION_ERROR


class UnsupportedOperationError(ValidationError):
    """The job type is known but has no registered transformation."""

    error_code = ErrorCode.UNSUPPORTED_OPERATION


class ProcessingError(PdfUtilityError):
    """
    The transformation rejected its input.

    Bad page ranges, corrupt documents and similar problems end up here. These
    are terminal for the job and will fail again unless the parameters or the
    inputs change.
    """

    error_code = ErrorCode.PROCESSING_ERROR


class AuthorizationError(ProcessingError):
    """Wrong password supplied for an encrypted document."""

    error_code = ErrorCode.AUTHORIZATION_ERROR


class StorageError(PdfUtilityError):
    """The content store is unavailable or timed out."""

    error_code = ErrorCode.STORAGE_ERROR
    retryable = True


class ContentNotFoundError(StorageError):
    """A content reference does not name an existing blob."""

    error_code = ErrorCode.CONTENT_NOT_FOUND
    retryable = False

    def __init__(self, ref: str) -> None:
        super().__init__(f"Content not found: {ref}")
        self.ref = ref


class ExecutionTimeoutError(PdfUtilityError):
    """An execution exceeded its wall-clock budget."""

    error_code = ErrorCode.TIMEOUT
    retryable = True


class DuplicateIdError(PdfUtilityError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job already exists: {job_id}")
        self.job_id = job_id


class JobStoreError(PdfUtilityError):
    """The job database could not be read or written."""

    retryable = True
