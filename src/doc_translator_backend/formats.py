"""
Per-format content extraction and rendering.

Formats are an explicit tagged enum; each document format has one entry in a
dispatch table holding its extractor (bytes -> text) and renderer
(text -> bytes). Archives are a container format handled by ``archive.py``
and have no entry here.
"""

from __future__ import annotations

import html
import io
import logging
import re
from enum import Enum
from typing import Callable, Dict, NamedTuple, Optional

import fitz  # PyMuPDF
from docx import Document

from .errors import ExtractionError, RenderError, UnsupportedFormatError
from .utils import split_extension

logger = logging.getLogger(__name__)

# Control characters XML 1.0 cannot carry; python-docx and the PDF story engine reject them.
XML_ILLEGAL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")


class Format(str, Enum):
    TEXT = ".txt"
    WORD = ".docx"
    PDF = ".pdf"
    ARCHIVE = ".zip"

    @property
    def extension(self) -> str:
        return self.value


def detect_format(filename: str) -> Format:
    """
    Map a filename to its Format by extension (case-insensitive).

    Raises:
        UnsupportedFormatError: naming the extension when it is not handled
    """
    _, extension = split_extension(filename)
    try:
        return Format(extension.lower())
    except ValueError:
        raise UnsupportedFormatError(extension.lower()) from None


def detect_document_format(filename: str) -> Optional[Format]:
    """Like detect_format, but returns None for anything that is not a translatable document."""
    try:
        fmt = detect_format(filename)
    except UnsupportedFormatError:
        return None
    return fmt if fmt in DOCUMENT_CODECS else None


# --- plain text ---------------------------------------------------------------

def _extract_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ExtractionError(f"Text file is not valid UTF-8: {exc}") from exc


def _render_text(text: str) -> bytes:
    return text.encode("utf-8")


# --- word documents -----------------------------------------------------------

def _extract_word(data: bytes) -> str:
    try:
        document = Document(io.BytesIO(data))
    except Exception as exc:  # noqa: BLE001
        raise ExtractionError(f"Failed to read DOCX file: {exc}") from exc

    lines = [paragraph.text for paragraph in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            for cell in row.cells:
                lines.extend(paragraph.text for paragraph in cell.paragraphs)

    content = "\n".join(lines)
    if not content.strip():
        raise ExtractionError("Failed to extract text from DOCX file")
    return content


def _render_word(text: str) -> bytes:
    try:
        document = Document()
        for line in text.split("\n"):
            document.add_paragraph(XML_ILLEGAL_CHARS.sub("", line))
        buffer = io.BytesIO()
        document.save(buffer)
    except Exception as exc:  # noqa: BLE001
        raise RenderError(f"Failed to write DOCX file: {exc}") from exc
    return buffer.getvalue()


# --- pdf ----------------------------------------------------------------------

PDF_PAPER = "a4"
PDF_MARGIN = 56
PDF_CSS = "body { font-family: sans-serif; font-size: 11pt; } p { margin: 0; }"


def _extract_pdf(data: bytes) -> str:
    try:
        with fitz.open(stream=data, filetype="pdf") as pdf:
            if pdf.needs_pass:
                raise ExtractionError("PDF file is password protected")
            pages = [page.get_text("text") for page in pdf]
    except ExtractionError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise ExtractionError(f"Failed to read PDF file: {exc}") from exc

    content = "\n".join(page.rstrip("\n") for page in pages)
    if not content.strip():
        raise ExtractionError("PDF file has no extractable text layer")
    return content


def _pdf_html(text: str) -> str:
    paragraphs = []
    for line in XML_ILLEGAL_CHARS.sub("", text).split("\n"):
        paragraphs.append(f"<p>{html.escape(line)}</p>" if line.strip() else "<p>&#160;</p>")
    return "".join(paragraphs)


def _render_pdf(text: str) -> bytes:
    """
    Lay ``text`` out on A4 pages, one paragraph per line.

    Layout goes through MuPDF's HTML story engine, which falls back to its
    bundled Noto fonts for scripts the base font lacks (Cyrillic, Greek, CJK,
    Arabic, ...).
    """
    mediabox = fitz.paper_rect(PDF_PAPER)
    where = mediabox + (PDF_MARGIN, PDF_MARGIN, -PDF_MARGIN, -PDF_MARGIN)
    buffer = io.BytesIO()
    try:
        story = fitz.Story(html=_pdf_html(text), user_css=PDF_CSS)
        writer = fitz.DocumentWriter(buffer)
        more = True
        while more:
            device = writer.begin_page(mediabox)
            more, _ = story.place(where)
            story.draw(device)
            writer.end_page()
        writer.close()
    except Exception as exc:  # noqa: BLE001
        raise RenderError(f"Failed to write PDF file: {exc}") from exc
    return buffer.getvalue()


# --- dispatch -----------------------------------------------------------------

class DocumentCodec(NamedTuple):
    extract: Callable[[bytes], str]
    render: Callable[[str], bytes]


DOCUMENT_CODECS: Dict[Format, DocumentCodec] = {
    Format.TEXT: DocumentCodec(_extract_text, _render_text),
    Format.WORD: DocumentCodec(_extract_word, _render_word),
    Format.PDF: DocumentCodec(_extract_pdf, _render_pdf),
}


def _codec(fmt: Format) -> DocumentCodec:
    try:
        return DOCUMENT_CODECS[fmt]
    except KeyError:
        raise UnsupportedFormatError(fmt.extension) from None


def extract(data: bytes, fmt: Format) -> str:
    """Extract the translatable text of a document."""
    return _codec(fmt).extract(data)


def render(text: str, fmt: Format) -> bytes:
    """Produce a document of the given format holding ``text``."""
    return _codec(fmt).render(text)
