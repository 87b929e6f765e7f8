"""
Static lookup table from job type to transformation.

Each supported ``JobType`` maps to an ``Operation``: the pydantic model its
parameters must validate against, the engine function that runs it, and the
prefix used to name its output. Types without an entry (CONVERT, OCR) are
known but unsupported and are rejected at submission.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Type

from pydantic import ValidationError as PydanticValidationError

from . import engine
from .errors import PdfUtilityError, ProcessingError, UnsupportedOperationError, ValidationError
from .models import JobType
from .parameters import (
    AddTextParameters,
    CompressParameters,
    ExtractParameters,
    MergeParameters,
    OperationParameters,
    ProtectParameters,
    RotateParameters,
    UnlockParameters,
    WatermarkParameters,
)

Handler = Callable[[Sequence[bytes], Any, Optional[engine.Checkpoint]], bytes]


@dataclass(frozen=True)
class Operation:
    parameters_model: Type[OperationParameters]
    handler: Handler
    output_prefix: str


def _single(func: Callable[[bytes, Any, Optional[engine.Checkpoint]], bytes]) -> Handler:
    """Adapt a one-document engine function to the list-of-documents handler shape."""

    def handler(documents: Sequence[bytes], params: Any, checkpoint: Optional[engine.Checkpoint] = None) -> bytes:
        if len(documents) != 1:
            raise ProcessingError(f"Operation expects exactly one document, got {len(documents)}")
        return func(documents[0], params, checkpoint)

    handler.__name__ = func.__name__
    return handler


OPERATIONS: Mapping[JobType, Operation] = {
    JobType.MERGE: Operation(MergeParameters, engine.merge_documents, "merged"),
    JobType.SPLIT: Operation(ExtractParameters, _single(engine.extract_pages), "extracted"),
    JobType.COMPRESS: Operation(CompressParameters, _single(engine.compress_document), "compressed"),
    JobType.EDIT: Operation(AddTextParameters, _single(engine.add_text), "edited"),
    JobType.ROTATE: Operation(RotateParameters, _single(engine.rotate_pages), "rotated"),
    JobType.PROTECT: Operation(ProtectParameters, _single(engine.protect_document), "protected"),
    JobType.UNLOCK: Operation(UnlockParameters, _single(engine.unlock_document), "unlocked"),
    JobType.WATERMARK: Operation(WatermarkParameters, _single(engine.add_watermark), "watermarked"),
}

UNSUPPORTED_TYPES = frozenset(set(JobType) - set(OPERATIONS))


def parse_job_type(value: str) -> JobType:
    try:
        return JobType(value.upper())
    except (ValueError, AttributeError):
        raise ValidationError(f"Unknown job type: {value}") from None


def resolve(job_type: JobType) -> Operation:
    """
    Look up the operation for ``job_type``.

    Raises:
        UnsupportedOperationError: For known types with no transformation
    """
    operation = OPERATIONS.get(job_type)
    if operation is None:
        raise UnsupportedOperationError(f"Operation {job_type.value} is not supported")
    return operation


def parse_parameters(
    operation: Operation,
    raw: Optional[Dict[str, Any]],
    error_cls: Type[PdfUtilityError] = ValidationError,
) -> OperationParameters:
    """Validate a raw parameter dict, reporting failures as ``error_cls``."""
    try:
        return operation.parameters_model.model_validate(raw or {})
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'parameters'}: {error['msg']}"
            for error in exc.errors()
        )
        raise error_cls(f"Invalid parameters: {details}") from exc
