"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided names and language codes for filesystem usage
- Ensuring directory creation
- Writing files atomically so retried attempts overwrite instead of duplicate
- Best-effort cleanup of files and directories
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

# LibreTranslate codes look like "es", "pt-BR", "zh-Hans"
LANGUAGE_CODE_PATTERN = re.compile(r"^[A-Za-z]{2,3}(?:[-_][A-Za-z0-9]{2,8})*$")


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Document!", "document")
        "My-Document"
        >>> sanitize_label("@#$", "document")
        "document"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.")
    return cleaned or fallback


def sanitize_filename(filename: str, fallback_stem: str = "document") -> str:
    """
    Reduce an uploaded filename to a safe basename, keeping its extension.

    Directory components are dropped, so a name such as ``../../etc/passwd.txt``
    becomes ``passwd.txt``.
    """
    base = Path(filename.replace("\\", "/")).name
    stem, suffix = split_extension(base)
    safe_stem = sanitize_label(stem, fallback=fallback_stem)
    safe_suffix = suffix.lower() if SANITIZE_PATTERN.search(suffix[1:]) is None else ""
    return f"{safe_stem}{safe_suffix}"


def normalize_language_code(code: str) -> str:
    """
    Validate a target language code.

    Raises:
        ValueError: If the code is blank or not shaped like a language tag
    """
    token = (code or "").strip()
    if not LANGUAGE_CODE_PATTERN.match(token):
        raise ValueError(f"Invalid target language code: {code!r}")
    return token


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and extension components.

    Example:
        >>> split_extension("document.pdf")
        ("document", ".pdf")
        >>> split_extension("/path/to/file.tar.gz")
        ("file.tar", ".gz")
    """
    path = Path(filename)
    return path.stem, path.suffix


def atomic_write_bytes(destination: Path, data: bytes) -> Path:
    """
    Write ``data`` to ``destination`` through a sibling temp file and rename.

    Readers never observe a half-written file and an existing file is replaced.
    """
    ensure_directory(destination.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=destination.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, destination)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return destination


def remove_file(path: Path | str | None) -> bool:
    """
    Delete a file if it exists. Failures are logged, never raised.

    Returns:
        True if a file was removed by this call
    """
    if not path:
        return False
    target = Path(path)
    try:
        target.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.error(f"Error removing file {target}: {e}")
        return False
    return True


def remove_tree(path: Path | str | None) -> bool:
    """
    Recursively delete a directory. Failures are logged, never raised.

    Returns:
        True if the directory is gone after this call
    """
    if not path:
        return True
    target = Path(path)
    if not target.exists():
        return True
    try:
        shutil.rmtree(target)
    except OSError as e:
        logger.error(f"Error removing directory {target}: {e}")
        return False
    return True
