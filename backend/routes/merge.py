"""API route for combining several PDFs into one document."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import Response

import config
from services import pdf_operations
from services.errors import ProcessingError
from workers.processor import PdfProcessor

logger = logging.getLogger("pdfbatch.routes.merge")

router = APIRouter()


def _processor(request: Request) -> PdfProcessor:
    return request.app.state.processor


def _parse_selections(raw: Optional[str], count: int) -> list[Optional[list[int]]]:
    """Per-file 1-based page lists. Anything unparseable means "all pages"."""
    selections: list[Optional[list[int]]] = [None] * count
    if not raw:
        return selections
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Ignoring unparseable page selections: %s", e)
        return selections
    if not isinstance(parsed, list):
        logger.warning("Ignoring page selections that are not a list")
        return selections
    for i, pages in enumerate(parsed[:count]):
        if isinstance(pages, list) and all(isinstance(p, int) for p in pages):
            selections[i] = pages
    return selections


def _attachment(file_name: str) -> str:
    """Content-Disposition with an ASCII fallback and the RFC 5987 UTF-8 name."""
    fallback = re.sub(r'[^A-Za-z0-9._ -]', "_", file_name).strip() or "merged.pdf"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(file_name, safe='')}"


# ---------------------------------------------------------------------------
# POST /api/merge
# ---------------------------------------------------------------------------
@router.post("/merge")
async def merge_pdfs(
    request: Request,
    files: Optional[list[UploadFile]] = File(None),
    file_name: str = Form("merged", alias="fileName"),
    page_selections: Optional[str] = Form(None, alias="pageSelections"),
):
    """Merge the uploaded PDFs, in upload order, into a single download."""
    if not files:
        raise HTTPException(400, "At least 1 PDF file is required for merging")

    logger.info("Merge request: %d file(s)", len(files))

    parts = []
    for upload in files:
        name = upload.filename or "document.pdf"
        is_pdf = upload.content_type == "application/pdf" or Path(name).suffix.lower() == ".pdf"
        if not is_pdf:
            raise HTTPException(400, f"File {name} is not a PDF")
        content = await upload.read()
        if len(content) > config.MAX_FILE_SIZE:
            raise HTTPException(400, f"File {name} exceeds maximum size of {config.MAX_FILE_SIZE_MB}MB")
        parts.append((name, content))

    selections = _parse_selections(page_selections, len(parts))
    try:
        merged, total_pages = await _processor(request).queue_operation(
            pdf_operations.merge_documents,
            [(name, content, pages) for (name, content), pages in zip(parts, selections)],
        )
    except ProcessingError as e:
        raise HTTPException(400, str(e))

    logger.info("Created merged PDF with %d page(s)", total_pages)
    return Response(
        content=merged,
        media_type="application/pdf",
        headers={
            "Content-Disposition": _attachment(f"{file_name}.pdf"),
            "X-Page-Count": str(total_pages),
        },
    )
