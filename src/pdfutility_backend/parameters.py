"""Typed parameter payloads, one model per operation."""

from __future__ import annotations

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CompressionLevel(str, Enum):
    LOW = "LOW"  # High quality, minimal compression
    MEDIUM = "MEDIUM"  # Balanced quality and compression
    HIGH = "HIGH"  # Maximum compression, lower quality


class WatermarkPosition(str, Enum):
    CENTER = "CENTER"
    TOP_LEFT = "TOP_LEFT"
    TOP_RIGHT = "TOP_RIGHT"
    BOTTOM_LEFT = "BOTTOM_LEFT"
    BOTTOM_RIGHT = "BOTTOM_RIGHT"
    DIAGONAL = "DIAGONAL"


StandardFont = Literal[
    "Helvetica",
    "Helvetica-Bold",
    "Times-Roman",
    "Times-Bold",
    "Courier",
    "Courier-Bold",
]


class OperationParameters(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class MergeParameters(OperationParameters):
    preserve_bookmarks: bool = True


class CompressParameters(OperationParameters):
    level: CompressionLevel = CompressionLevel.MEDIUM
    remove_metadata: bool = False
    optimize_images: bool = True


class ExtractParameters(OperationParameters):
    # Range checks happen against the actual document at execution time.
    from_page: int = 1
    to_page: Optional[int] = None


class RotateParameters(OperationParameters):
    angle: Literal[90, 180, 270]
    page_numbers: Optional[List[int]] = None


class WatermarkParameters(OperationParameters):
    text: str = Field(min_length=1)
    opacity: float = Field(0.5, ge=0.0, le=1.0)
    rotation: int = 45
    position: WatermarkPosition = WatermarkPosition.DIAGONAL
    font_size: int = Field(50, gt=0, le=500)
    color: str = "#BFBFBF"
    page_numbers: Optional[List[int]] = None


class AddTextParameters(OperationParameters):
    text: str = Field(min_length=1)
    page_number: int = 1
    x: float = 50.0
    y: float = 50.0
    font_name: StandardFont = "Helvetica"
    font_size: int = Field(12, gt=0, le=500)
    color: str = "#000000"


class ProtectParameters(OperationParameters):
    user_password: str = Field(min_length=1)
    owner_password: Optional[str] = None
    allow_printing: bool = True
    allow_copying: bool = False
    allow_editing: bool = False


class UnlockParameters(OperationParameters):
    password: str
