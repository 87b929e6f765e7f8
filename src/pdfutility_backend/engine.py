"""
PDF transformations built on pypdf.

Every function here takes document bytes plus a typed parameter model and
returns new document bytes (or, for ``document_info``, a metadata model).
They keep no state and touch nothing outside their arguments. Multi-unit
operations call the optional ``checkpoint(done, total)`` callback between
units so the caller can record progress, enforce deadlines and notice
cancellation; a checkpoint that raises aborts the operation.

Bad input (corrupt file, invalid page range, wrong password) raises
``ProcessingError``; nothing in this module performs I/O.
"""

from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from pypdf import PageObject, PasswordType, PdfReader, PdfWriter
from pypdf.constants import UserAccessPermissions
from pypdf.errors import PyPdfError
from pypdf.generic import DecodedStreamObject, DictionaryObject, FloatObject, NameObject, NumberObject

from .errors import AuthorizationError, ProcessingError
from .models import DocumentInfo, PageDimensions
from .parameters import (
    AddTextParameters,
    CompressionLevel,
    CompressParameters,
    ExtractParameters,
    MergeParameters,
    ProtectParameters,
    RotateParameters,
    UnlockParameters,
    WatermarkParameters,
    WatermarkPosition,
)

logger = logging.getLogger(__name__)

Checkpoint = Callable[[int, int], None]
RGB = Tuple[float, float, float]

# Errors pypdf (and the image codecs it drives) raise for malformed input
_READ_ERRORS = (PyPdfError, ValueError, KeyError, TypeError, AttributeError, OSError)

FONT_RESOURCE = "/PUFont"
STATE_RESOURCE = "/PUState"
CORNER_MARGIN = 36.0


@dataclass(frozen=True)
class _CompressionProfile:
    zlib_level: int
    image_quality: int
    max_image_side: Optional[int]
    dedupe_objects: bool


COMPRESSION_PROFILES = {
    CompressionLevel.LOW: _CompressionProfile(6, 90, None, False),
    CompressionLevel.MEDIUM: _CompressionProfile(9, 70, 2000, True),
    CompressionLevel.HIGH: _CompressionProfile(9, 50, 1200, True),
}


def _noop(done: int, total: int) -> None:
    return None


def _read(data: bytes, label: str = "document", password: Optional[str] = None) -> PdfReader:
    """
    Parse a document, decrypting it when needed.

    Encrypted documents are opened with ``password`` if given, otherwise with
    the empty user password that owner-restricted files accept.
    """
    if not data:
        raise ProcessingError(f"{label} is empty")
    try:
        reader = PdfReader(io.BytesIO(data))
        decrypted = True
        if reader.is_encrypted:
            decrypted = reader.decrypt(password or "") != PasswordType.NOT_DECRYPTED
        page_count = len(reader.pages) if decrypted else None
    except _READ_ERRORS as exc:
        raise ProcessingError(f"{label} is not a valid PDF: {exc}") from exc

    if not decrypted:
        if password is None:
            raise ProcessingError(f"{label} is password protected")
        raise AuthorizationError(f"Incorrect password for {label}")
    if page_count == 0:
        raise ProcessingError(f"{label} has no pages")
    return reader


def _write(writer: PdfWriter) -> bytes:
    buffer = io.BytesIO()
    try:
        writer.write(buffer)
    except _READ_ERRORS as exc:
        raise ProcessingError(f"Failed to write PDF: {exc}") from exc
    return buffer.getvalue()


def _target_pages(page_numbers: Optional[Sequence[int]], page_count: int) -> List[int]:
    """Resolve 1-indexed page selections; ``None`` selects every page. Numbers outside the document are skipped."""
    if page_numbers is None:
        return list(range(1, page_count + 1))
    return sorted({n for n in page_numbers if 1 <= n <= page_count})


def parse_color(value: Optional[str]) -> RGB:
    """'#RRGGBB' (or 'RRGGBB') to RGB floats; anything unparsable is black."""
    if not value:
        return (0.0, 0.0, 0.0)
    digits = value.lstrip("#")
    if len(digits) != 6:
        return (0.0, 0.0, 0.0)
    try:
        channels = [int(digits[i:i + 2], 16) for i in (0, 2, 4)]
    except ValueError:
        return (0.0, 0.0, 0.0)
    return tuple(channel / 255.0 for channel in channels)  # type: ignore[return-value]


def _escape_text(text: str) -> str:
    text = " ".join(text.splitlines())
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def _estimate_width(text: str, font_size: float) -> float:
    # Standard-14 fonts average roughly half an em per glyph.
    return len(text) * font_size * 0.5


def _text_operations(
    text: str,
    font_size: float,
    color: RGB,
    origin: Tuple[float, float],
    rotation: float = 0.0,
    offset: Tuple[float, float] = (0.0, 0.0),
) -> bytes:
    angle = math.radians(rotation)
    cos, sin = math.cos(angle), math.sin(angle)
    r, g, b = color
    lines = [
        "q",
        f"{STATE_RESOURCE} gs",
        f"{r:.3f} {g:.3f} {b:.3f} rg",
        "BT",
        f"{FONT_RESOURCE} {font_size} Tf",
        f"{cos:.4f} {sin:.4f} {-sin:.4f} {cos:.4f} {origin[0]:.2f} {origin[1]:.2f} Tm",
        f"{offset[0]:.2f} {offset[1]:.2f} Td",
        f"({_escape_text(text)}) Tj",
        "ET",
        "Q",
    ]
    content = "\n".join(lines)
    # The overlay font uses WinAnsiEncoding, which is cp1252.
    try:
        return content.encode("cp1252")
    except UnicodeEncodeError as exc:
        raise ProcessingError(
            f"Text contains characters the standard fonts cannot render: {content[exc.start:exc.end]!r}"
        ) from exc


def _stamp(page: PageObject, operations: bytes, font_name: str, opacity: float) -> None:
    """Draw ``operations`` over the page's existing content."""
    box = page.mediabox
    overlay = PageObject.create_blank_page(width=box.width, height=box.height)
    overlay[NameObject("/Resources")] = DictionaryObject({
        NameObject("/Font"): DictionaryObject({
            NameObject(FONT_RESOURCE): DictionaryObject({
                NameObject("/Type"): NameObject("/Font"),
                NameObject("/Subtype"): NameObject("/Type1"),
                NameObject("/BaseFont"): NameObject(f"/{font_name}"),
                NameObject("/Encoding"): NameObject("/WinAnsiEncoding"),
            }),
        }),
        NameObject("/ExtGState"): DictionaryObject({
            NameObject(STATE_RESOURCE): DictionaryObject({
                NameObject("/Type"): NameObject("/ExtGState"),
                NameObject("/ca"): FloatObject(opacity),
                NameObject("/CA"): FloatObject(opacity),
            }),
        }),
    })
    contents = DecodedStreamObject()
    contents.set_data(operations)
    overlay[NameObject("/Contents")] = contents

    if "/Resources" not in page:
        page[NameObject("/Resources")] = DictionaryObject()
    page.merge_page(overlay)


def merge_documents(
    documents: Sequence[bytes],
    params: MergeParameters,
    checkpoint: Optional[Checkpoint] = None,
) -> bytes:
    """
    Concatenate documents in the given order.

    The result has exactly the sum of the inputs' page counts. Outlines
    (bookmarks) are carried over when ``preserve_bookmarks`` is set.
    """
    if len(documents) < 2:
        raise ProcessingError("Merging requires at least two documents")
    checkpoint = checkpoint or _noop

    writer = PdfWriter()
    total = len(documents)
    for index, data in enumerate(documents, start=1):
        reader = _read(data, f"document {index}")
        try:
            writer.append(reader, import_outline=params.preserve_bookmarks)
        except _READ_ERRORS as exc:
            raise ProcessingError(f"Failed to merge document {index}: {exc}") from exc
        checkpoint(index, total)

    result = _write(writer)
    logger.info("Merged %d documents (%d pages, %d bytes)", total, len(writer.pages), len(result))
    return result


def compress_document(
    data: bytes,
    params: CompressParameters,
    checkpoint: Optional[Checkpoint] = None,
) -> bytes:
    """
    Shrink a document.

    Content streams are recompressed, images re-encoded as JPEG at a quality
    set by the level, and for MEDIUM and HIGH large images are downsampled
    and identical objects deduplicated. Smaller output is likely, not
    guaranteed: already-optimized files can grow slightly.
    """
    checkpoint = checkpoint or _noop
    profile = COMPRESSION_PROFILES[params.level]
    reader = _read(data)

    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)
    if not params.remove_metadata and reader.metadata:
        info = reader.metadata
        writer.add_metadata({key: str(info[key]) for key in info})

    total = len(writer.pages)
    for index, page in enumerate(writer.pages, start=1):
        if params.optimize_images:
            _optimize_images(page, profile, index)
        page.compress_content_streams(level=profile.zlib_level)
        checkpoint(index, total)

    if profile.dedupe_objects:
        writer.compress_identical_objects(remove_identicals=True, remove_orphans=True)

    result = _write(writer)
    ratio = 1.0 - (len(result) / len(data))
    logger.info(
        "Compression complete. Original: %d bytes, Compressed: %d bytes, Ratio: %.2f%%",
        len(data), len(result), ratio * 100,
    )
    return result


def _optimize_images(page: PageObject, profile: _CompressionProfile, page_number: int) -> None:
    try:
        images = list(page.images)
    except _READ_ERRORS as exc:
        logger.warning("Cannot enumerate images on page %d: %s", page_number, exc)
        return

    for image in images:
        try:
            picture = image.image
            if picture is None or picture.mode not in ("RGB", "L"):
                continue
            if profile.max_image_side and max(picture.size) > profile.max_image_side:
                picture = picture.copy()
                picture.thumbnail((profile.max_image_side, profile.max_image_side))
            image.replace(picture, quality=profile.image_quality)
        except (*_READ_ERRORS, NotImplementedError) as exc:
            # Unsupported encodings stay as they are.
            logger.warning("Skipping image %s on page %d: %s", image.name, page_number, exc)


def extract_pages(
    data: bytes,
    params: ExtractParameters,
    checkpoint: Optional[Checkpoint] = None,
) -> bytes:
    """Copy pages ``from_page``..``to_page`` (1-indexed, inclusive) into a new document."""
    checkpoint = checkpoint or _noop
    reader = _read(data)
    page_count = len(reader.pages)
    from_page = params.from_page
    to_page = params.to_page if params.to_page is not None else page_count

    if from_page < 1 or to_page > page_count or from_page > to_page:
        raise ProcessingError(
            f"Invalid page range: {from_page}-{to_page} (document has {page_count} pages)"
        )

    writer = PdfWriter()
    total = to_page - from_page + 1
    for done, index in enumerate(range(from_page - 1, to_page), start=1):
        writer.add_page(reader.pages[index])
        checkpoint(done, total)

    logger.info("Extracted pages %d-%d from PDF", from_page, to_page)
    return _write(writer)


def rotate_pages(
    data: bytes,
    params: RotateParameters,
    checkpoint: Optional[Checkpoint] = None,
) -> bytes:
    """Set each targeted page's rotation to ``(current + angle) mod 360``."""
    reader = _read(data)
    writer = PdfWriter(clone_from=reader)

    for number in _target_pages(params.page_numbers, len(writer.pages)):
        page = writer.pages[number - 1]
        page[NameObject("/Rotate")] = NumberObject((page.rotation + params.angle) % 360)

    logger.info("Rotated PDF pages by %d degrees", params.angle)
    return _write(writer)


def add_watermark(
    data: bytes,
    params: WatermarkParameters,
    checkpoint: Optional[Checkpoint] = None,
) -> bytes:
    """
    Draw semi-transparent text over the targeted pages.

    CENTER and DIAGONAL centre the text on the page; DIAGONAL ignores
    ``rotation`` and follows the page's bottom-left to top-right diagonal.
    Corner positions draw horizontal text inset from the page edges.
    """
    checkpoint = checkpoint or _noop
    reader = _read(data)
    writer = PdfWriter(clone_from=reader)
    color = parse_color(params.color)
    width = _estimate_width(params.text, params.font_size)

    targets = _target_pages(params.page_numbers, len(writer.pages))
    for done, number in enumerate(targets, start=1):
        page = writer.pages[number - 1]
        box = page.mediabox
        left, bottom = float(box.left), float(box.bottom)
        right, top = float(box.right), float(box.top)

        rotation = 0.0
        offset = (0.0, 0.0)
        if params.position in (WatermarkPosition.CENTER, WatermarkPosition.DIAGONAL):
            origin = ((left + right) / 2, (bottom + top) / 2)
            offset = (-width / 2, -params.font_size / 3)
            if params.position is WatermarkPosition.DIAGONAL:
                rotation = math.degrees(math.atan2(top - bottom, right - left))
            else:
                rotation = float(params.rotation)
        elif params.position is WatermarkPosition.TOP_LEFT:
            origin = (left + CORNER_MARGIN, top - CORNER_MARGIN - params.font_size)
        elif params.position is WatermarkPosition.TOP_RIGHT:
            origin = (right - CORNER_MARGIN - width, top - CORNER_MARGIN - params.font_size)
        elif params.position is WatermarkPosition.BOTTOM_LEFT:
            origin = (left + CORNER_MARGIN, bottom + CORNER_MARGIN)
        else:
            origin = (right - CORNER_MARGIN - width, bottom + CORNER_MARGIN)

        operations = _text_operations(
            params.text, params.font_size, color, origin, rotation, offset
        )
        _stamp(page, operations, "Helvetica-Bold", params.opacity)
        checkpoint(done, len(targets))

    logger.info("Added watermark to %d pages", len(targets))
    return _write(writer)


def add_text(
    data: bytes,
    params: AddTextParameters,
    checkpoint: Optional[Checkpoint] = None,
) -> bytes:
    """Write a line of text at ``(x, y)`` points from the page's lower-left corner."""
    reader = _read(data)
    writer = PdfWriter(clone_from=reader)
    page_count = len(writer.pages)
    if params.page_number < 1 or params.page_number > page_count:
        raise ProcessingError(f"Invalid page number: {params.page_number} (document has {page_count} pages)")

    page = writer.pages[params.page_number - 1]
    box = page.mediabox
    origin = (float(box.left) + params.x, float(box.bottom) + params.y)
    operations = _text_operations(params.text, params.font_size, parse_color(params.color), origin)
    _stamp(page, operations, params.font_name, 1.0)

    logger.info("Added text to PDF page %d", params.page_number)
    return _write(writer)


def protect_document(
    data: bytes,
    params: ProtectParameters,
    checkpoint: Optional[Checkpoint] = None,
) -> bytes:
    """Encrypt with AES-256; the owner password falls back to the user password."""
    reader = _read(data)
    writer = PdfWriter(clone_from=reader)

    permissions = UserAccessPermissions.FILL_FORM_FIELDS | UserAccessPermissions.ASSEMBLE_DOC
    if params.allow_printing:
        permissions |= UserAccessPermissions.PRINT | UserAccessPermissions.PRINT_TO_REPRESENTATION
    if params.allow_copying:
        permissions |= UserAccessPermissions.EXTRACT | UserAccessPermissions.EXTRACT_TEXT_AND_GRAPHICS
    if params.allow_editing:
        permissions |= UserAccessPermissions.MODIFY | UserAccessPermissions.ADD_OR_MODIFY

    try:
        writer.encrypt(
            user_password=params.user_password,
            owner_password=params.owner_password or params.user_password,
            permissions_flag=permissions,
            algorithm="AES-256",
        )
    except PyPdfError as exc:
        raise ProcessingError(f"Failed to protect PDF: {exc}") from exc

    logger.info("Protected PDF with password")
    return _write(writer)


def unlock_document(
    data: bytes,
    params: UnlockParameters,
    checkpoint: Optional[Checkpoint] = None,
) -> bytes:
    """
    Remove encryption.

    Raises:
        AuthorizationError: If ``password`` opens neither the user nor owner lock
    """
    reader = _read(data, password=params.password)
    writer = PdfWriter(clone_from=reader)
    logger.info("Unlocked protected PDF")
    return _write(writer)


def _metadata_date(meta, attribute: str) -> Optional[datetime]:
    if meta is None:
        return None
    try:
        return getattr(meta, attribute)
    except _READ_ERRORS:
        logger.debug("Ignoring unparsable %s in document metadata", attribute)
        return None


def document_info(data: bytes) -> DocumentInfo:
    """Read metadata without modifying the document."""
    reader = _read(data)
    try:
        meta = reader.metadata
        box = reader.pages[0].mediabox
        header = reader.pdf_header
    except _READ_ERRORS as exc:
        raise ProcessingError(f"Failed to extract PDF info: {exc}") from exc

    return DocumentInfo(
        page_count=len(reader.pages),
        author=meta.author if meta else None,
        title=meta.title if meta else None,
        subject=meta.subject if meta else None,
        creator=meta.creator if meta else None,
        producer=meta.producer if meta else None,
        created_date=_metadata_date(meta, "creation_date"),
        modified_date=_metadata_date(meta, "modification_date"),
        is_encrypted=reader.is_encrypted,
        pdf_version=header.replace("%PDF-", "") if header else None,
        dimensions=PageDimensions(width=float(box.width), height=float(box.height)),
        file_size_bytes=len(data),
    )
