"""
ZIP archive handling: unpack uploads into entries, pack translated outputs.
"""

from __future__ import annotations

import logging
import os
import tempfile
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Set, Tuple, Union

from .errors import EmptyArchive, InvalidArchive
from .formats import Format, detect_document_format
from .utils import ensure_directory, sanitize_label, split_extension

logger = logging.getLogger(__name__)

OUTPUT_PREFIX = "translated"

PackSource = Union[bytes, Path]


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    data: bytes
    format: Optional[Format]
    # Set when the member could not be decompressed; ``data`` is then empty.
    read_error: Optional[str] = None

    @property
    def eligible(self) -> bool:
        return self.format is not None


def _read_member(archive: zipfile.ZipFile, info: zipfile.ZipInfo) -> Tuple[bytes, Optional[str]]:
    try:
        return archive.read(info), None
    except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError, EOFError) as exc:
        logger.warning(f"Unreadable zip entry {info.filename}: {exc}")
        return b"", str(exc) or exc.__class__.__name__


def unpack(path: Path) -> List[ArchiveEntry]:
    """
    Read every file entry of a ZIP archive.

    Directory entries are skipped. Entries whose extension is not a
    translatable document get ``format=None`` and are not read.

    Raises:
        EmptyArchive: The file is zero bytes or holds no file entries
        InvalidArchive: The file is not a readable ZIP archive
    """
    if path.stat().st_size == 0:
        raise EmptyArchive("ZIP file is empty")

    try:
        with zipfile.ZipFile(path) as archive:
            entries = []
            for info in archive.infolist():
                if info.is_dir():
                    continue
                fmt = detect_document_format(info.filename)
                data, read_error = _read_member(archive, info) if fmt is not None else (b"", None)
                entries.append(ArchiveEntry(name=info.filename, data=data, format=fmt, read_error=read_error))
    except zipfile.BadZipFile as exc:
        raise InvalidArchive(f"Invalid ZIP file format. The file may be corrupted or not a valid ZIP file: {exc}") from exc

    if not entries:
        raise EmptyArchive("ZIP file is empty or contains only directories")
    return entries


def output_member_name(entry_name: str, target_language: str) -> str:
    """
    Archive path for the translated version of ``entry_name``.

    The entry's directory is kept under the ``translated/`` prefix; absolute
    and parent-directory components are dropped.

    Example:
        >>> output_member_name("docs/a.txt", "es")
        "translated/docs/a_translated_to_es.txt"
    """
    parts = [part for part in PurePosixPath(entry_name.replace("\\", "/")).parts if part not in ("", "/", ".", "..")]
    if not parts:
        parts = ["document"]
    stem, extension = split_extension(parts[-1])
    filename = f"{sanitize_label(stem, fallback='document')}_translated_to_{target_language}{extension.lower()}"
    return str(PurePosixPath(OUTPUT_PREFIX, *parts[:-1], filename))


def unique_member_name(arcname: str, taken: Set[str]) -> str:
    """
    Return ``arcname``, or ``<stem>_<n><ext>`` with the lowest free ``n >= 2``
    when the name is already in ``taken``. Names compare case-insensitively.
    The chosen name is added to ``taken``.
    """
    candidate = arcname
    path = PurePosixPath(arcname)
    stem, extension = split_extension(path.name)
    counter = 2
    while candidate.casefold() in taken:
        candidate = str(path.with_name(f"{stem}_{counter}{extension}"))
        counter += 1
    taken.add(candidate.casefold())
    return candidate


def pack(entries: Iterable[Tuple[str, PackSource]], destination: Path) -> Path:
    """
    Write a new ZIP archive at ``destination`` from ``(arcname, bytes | Path)`` pairs.

    The archive is built in a sibling temp file and renamed into place, so a
    repeated attempt replaces the previous result.
    """
    ensure_directory(destination.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=destination.parent)
    os.close(fd)
    try:
        with zipfile.ZipFile(tmp_name, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for arcname, source in entries:
                if isinstance(source, Path):
                    archive.write(source, arcname)
                else:
                    archive.writestr(arcname, source)
        os.replace(tmp_name, destination)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.info(f"Zip archive created: {destination}")
    return destination
