"""API routes for streaming batch processing."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError as BodyError
from starlette.datastructures import UploadFile

from models import BatchRequest, BatchResponse, ErrorEvent, InputFile
from services.batch_orchestrator import BatchOrchestrator, stream_batch, validate_job
from services.errors import ValidationError
from services.progress_channel import sse_frames
from workers.processor import PdfProcessor

logger = logging.getLogger("pdfbatch.routes.process")

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def _orchestrator(request: Request) -> BatchOrchestrator:
    return request.app.state.orchestrator


def _processor(request: Request) -> PdfProcessor:
    return request.app.state.processor


# ---------------------------------------------------------------------------
# POST /api/process-stream
# ---------------------------------------------------------------------------
@router.post("/process-stream")
async def process_stream(request: Request):
    """
    Multipart uploads get a server-sent-events stream of progress events.
    JSON bodies are processed in one go and answered with a single object.
    """
    content_type = request.headers.get("content-type", "")
    if "multipart/form-data" in content_type:
        return await _handle_upload_stream(request)
    return await _handle_json(request)


async def _handle_upload_stream(request: Request) -> StreamingResponse:
    form = await request.form()
    uploads = [item for item in form.getlist("files") if isinstance(item, UploadFile)]
    files = [
        InputFile(
            name=upload.filename or f"file_{i + 1}",
            content=await upload.read(),
            content_type=upload.content_type or "application/octet-stream",
        )
        for i, upload in enumerate(uploads)
    ]
    operation = form.get("operation")
    if not isinstance(operation, str):
        operation = None
    raw_options = form.get("options") or "{}"

    options = None
    options_error = None
    try:
        options = json.loads(raw_options)
    except (TypeError, json.JSONDecodeError):
        options_error = "Options must be valid JSON"

    logger.info("Stream request: operation=%s files=%d", operation, len(files))

    if options_error:
        events = _rejected(options_error)
    else:
        events = stream_batch(_orchestrator(request), operation, files, options)

    return StreamingResponse(sse_frames(events), media_type="text/event-stream", headers=SSE_HEADERS)


async def _rejected(message: str):
    logger.warning("Batch rejected: %s", message)
    yield ErrorEvent(error=message)


async def _handle_json(request: Request) -> JSONResponse:
    try:
        body = BatchRequest.model_validate(await request.json())
    except (ValueError, BodyError) as e:
        raise HTTPException(400, f"Invalid request body: {e}")

    try:
        files = [
            InputFile(
                name=f.name,
                content=base64.b64decode(f.content, validate=True),
                content_type=f.content_type,
            )
            for f in body.files
        ]
    except binascii.Error:
        raise HTTPException(400, "File content must be base64 encoded.")

    try:
        job = validate_job(body.operation, files, body.options)
    except ValidationError as e:
        raise HTTPException(400, str(e))

    results = await _processor(request).process_batch(job.files, job.operation, job.options)
    response = BatchResponse(
        success=True,
        results=results,
        processed_at=datetime.now(timezone.utc).isoformat(),
    )
    return JSONResponse(response.model_dump(by_alias=True))
