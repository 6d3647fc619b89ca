"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided strings for safe filesystem usage
- Ensuring directory creation with proper error handling
- Validating template file extensions
- Producing timezone-aware timestamps
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


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


def safe_template_name(name: str) -> str:
    """
    Reduce a template name to its final path component without a ``.tex`` suffix.

    Template names come straight from the client, so anything that looks like
    a path is collapsed to its basename before it is joined to a template
    directory.

    Example:
        >>> safe_template_name("../../etc/passwd")
        'passwd'
        >>> safe_template_name("novel-a5-layout.tex")
        'novel-a5-layout'
    """
    base = Path(name.replace("\\", "/")).name
    if base.lower().endswith(".tex"):
        base = base[:-4]
    return base


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def allowed_template_extensions() -> Iterable[str]:
    """Extensions accepted for uploaded LaTeX templates."""
    return [".tex"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
