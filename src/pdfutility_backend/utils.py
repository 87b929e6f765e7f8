"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided file names before they become storage keys
- Ensuring directory creation
- Recognizing PDF uploads
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable

# Pattern to match characters that are not safe for filesystem paths or object keys
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")
SUFFIX_PATTERN = re.compile(r"\.[a-z0-9]{1,8}")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Document!", "default-doc")
        'my-document'
        >>> sanitize_label("@#$", "default-doc")
        'default-doc'
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def sanitize_filename(filename: str, default_suffix: str = ".pdf") -> str:
    """
    Reduce an arbitrary (possibly path-like) file name to a safe single component.

    Example:
        >>> sanitize_filename("../../Quarterly Report.PDF")
        'quarterly-report.pdf'
    """
    path = Path(filename.replace("\\", "/"))
    stem = sanitize_label(path.stem, fallback="document")
    suffix = path.suffix.lower()
    if not SUFFIX_PATTERN.fullmatch(suffix):
        suffix = default_suffix
    return f"{stem}{suffix}"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def allowed_pdf_extensions() -> Iterable[str]:
    return [".pdf"]


def is_pdf_upload(filename: str, content_type: str | None) -> bool:
    """Accept uploads named *.pdf or declared as application/pdf."""
    return Path(filename).suffix.lower() in allowed_pdf_extensions() or (content_type or "") == "application/pdf"
