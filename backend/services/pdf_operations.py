"""PDF operations – thin wrappers over pypdf and PyMuPDF.

Every function here is blocking; callers run them in a worker thread.
Library failures surface as ``ProcessingError``.
"""

from __future__ import annotations

import io
import logging
from typing import Iterable, Optional

import pymupdf
from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError

from services.errors import ProcessingError

logger = logging.getLogger("pdfbatch.pdf_operations")


# ---------------------------------------------------------------------------
# Loading / saving
# ---------------------------------------------------------------------------
def load_pdf(content: bytes, name: str = "document") -> PdfReader:
    """Parse PDF bytes, failing with ``ProcessingError`` on corrupt input."""
    try:
        reader = PdfReader(io.BytesIO(content))
        if reader.is_encrypted and not reader.decrypt(""):
            raise ProcessingError(f"{name} is password protected.")
        # Touch the page tree so broken xref tables fail here.
        len(reader.pages)
    except (PyPdfError, ValueError) as exc:
        raise ProcessingError(f"Failed to read {name}. Please ensure it's a valid PDF.") from exc
    return reader


def to_bytes(writer: PdfWriter) -> bytes:
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def _select(page_numbers: Optional[Iterable[int]], total: int) -> list[int]:
    if page_numbers is None:
        return list(range(1, total + 1))
    return [n for n in page_numbers if 1 <= n <= total]


# ---------------------------------------------------------------------------
# Structural operations (pypdf)
# ---------------------------------------------------------------------------
def copy_pages(reader: PdfReader, page_numbers: Optional[Iterable[int]] = None) -> tuple[PdfWriter, list[int]]:
    """Copy the given 1-based pages (all when ``None``) into a new document."""
    selected = _select(page_numbers, len(reader.pages))
    if not selected:
        raise ProcessingError(
            f"None of the requested pages exist (document has {len(reader.pages)} page(s))."
        )
    writer = PdfWriter()
    for number in selected:
        writer.add_page(reader.pages[number - 1])
    return writer, selected


def split_pages(reader: PdfReader, pages_per_chunk: int = 1) -> list[tuple[int, bytes]]:
    """Split into chunks of ``pages_per_chunk`` pages. Returns (first page, bytes) pairs."""
    total = len(reader.pages)
    if total == 0:
        raise ProcessingError("Document has no pages to split.")
    chunks: list[tuple[int, bytes]] = []
    for start in range(0, total, pages_per_chunk):
        writer = PdfWriter()
        for i in range(start, min(start + pages_per_chunk, total)):
            writer.add_page(reader.pages[i])
        chunks.append((start + 1, to_bytes(writer)))
    return chunks


def compress_document(reader: PdfReader, remove_duplicates: bool = True) -> PdfWriter:
    writer = PdfWriter(clone_from=reader)
    for page in writer.pages:
        page.compress_content_streams()
    if remove_duplicates:
        writer.compress_identical_objects(remove_identicals=True, remove_orphans=True)
    return writer


def rotate_document(reader: PdfReader, degrees: int) -> PdfWriter:
    writer = PdfWriter(clone_from=reader)
    for page in writer.pages:
        page.rotate(degrees)
    return writer


def merge_documents(parts: list[tuple[str, bytes, Optional[list[int]]]]) -> tuple[bytes, int]:
    """Concatenate documents in order. ``parts`` holds (name, bytes, pages or None)."""
    writer = PdfWriter()
    for name, content, page_numbers in parts:
        reader = load_pdf(content, name)
        selected = _select(page_numbers, len(reader.pages))
        for number in selected:
            writer.add_page(reader.pages[number - 1])
        logger.info("Copied %d page(s) from %s", len(selected), name)
    total_pages = len(writer.pages)
    if total_pages == 0:
        raise ProcessingError("No pages selected for the merged document.")
    return to_bytes(writer), total_pages


# ---------------------------------------------------------------------------
# Drawing / rendering (PyMuPDF)
# ---------------------------------------------------------------------------
def _open_document(content: bytes, name: str) -> pymupdf.Document:
    try:
        return pymupdf.open(stream=content, filetype="pdf")
    except (RuntimeError, ValueError) as exc:
        raise ProcessingError(f"Failed to read {name}. Please ensure it's a valid PDF.") from exc


def watermark_document(
    content: bytes,
    text: str,
    *,
    opacity: float = 0.3,
    font_size: int = 48,
    rotation: int = 45,
    color: tuple[float, float, float] = (0.5, 0.5, 0.5),
    name: str = "document",
) -> bytes:
    """Stamp ``text`` across the centre of every page."""
    doc = _open_document(content, name)
    try:
        text_width = pymupdf.get_text_length(text, fontname="helv", fontsize=font_size)
        for page in doc:
            centre = pymupdf.Point(page.rect.width / 2, page.rect.height / 2)
            origin = pymupdf.Point(centre.x - text_width / 2, centre.y + font_size / 3)
            page.insert_text(
                origin,
                text,
                fontsize=font_size,
                fontname="helv",
                color=color,
                fill_opacity=opacity,
                morph=(centre, pymupdf.Matrix(rotation)),
                overlay=True,
            )
        return doc.tobytes(garbage=3, deflate=True)
    finally:
        doc.close()


def render_pages(content: bytes, dpi: int = 200, name: str = "document") -> list[Image.Image]:
    """Rasterise every page for OCR."""
    doc = _open_document(content, name)
    try:
        images = []
        for page in doc:
            pix = page.get_pixmap(dpi=dpi)
            images.append(Image.frombytes("RGB", (pix.width, pix.height), pix.samples))
        if not images:
            raise ProcessingError(f"{name} has no pages to recognise.")
        return images
    finally:
        doc.close()


def load_image(content: bytes, name: str = "image") -> Image.Image:
    try:
        image = Image.open(io.BytesIO(content))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ProcessingError(f"Failed to read image {name}.") from exc
    return image.convert("RGB")
