"""Stage pipeline – runs one operation on one file with checkpointed progress."""

from __future__ import annotations

import asyncio
import base64
import logging
from pathlib import Path
from statistics import mean
from typing import Any, Awaitable, Callable, Optional, Union

import config
from models import (
    CompressOptions,
    ExtractOptions,
    InputFile,
    MergeOptions,
    OcrOptions,
    Operation,
    OperationOptions,
    RotateOptions,
    SplitOptions,
    WATERMARK_COLORS,
    WatermarkOptions,
    parse_options,
)
from services import pdf_operations
from services.errors import BatchError, ProcessingError, UnsupportedOperation, ValidationError
from services.ocr_engine import OcrService, detect_file_type, extract_structured_data, search_text

logger = logging.getLogger("pdfbatch.pipeline")

ProgressCallback = Callable[[int], Awaitable[None]]

FILE_LOADED = 10
PROCESSING_STARTED = 30
DONE = 100

# Operation-specific checkpoints between PROCESSING_STARTED and DONE.
CHECKPOINTS: dict[Operation, tuple[int, ...]] = {
    Operation.MERGE: (50, 80),
    Operation.SPLIT: (60, 90),
    Operation.COMPRESS: (45, 70, 95),
    Operation.ROTATE: (70,),
    Operation.WATERMARK: (55, 85),
    Operation.EXTRACT: (40, 75),
    Operation.OCR: (),  # one checkpoint per page, scaled into OCR_PAGE_SPAN
}
OCR_PAGE_SPAN = (PROCESSING_STARTED, 90)


def stage_label(progress: int) -> str:
    if progress < 20:
        return "Loading file..."
    if progress < 40:
        return "Parsing document..."
    if progress < 60:
        return "Processing pages..."
    if progress < 80:
        return "Applying changes..."
    if progress < 95:
        return "Finalizing..."
    return "Complete"


class ProgressReporter:
    """Forward strictly increasing percentages and yield to the event loop after each."""

    def __init__(self, callback: Optional[ProgressCallback], delay: float) -> None:
        self._callback = callback
        self._delay = delay
        self.last = 0

    async def __call__(self, percent: int) -> None:
        percent = min(int(percent), DONE)
        if percent <= self.last:
            return
        self.last = percent
        if self._callback is not None:
            await self._callback(percent)
        await asyncio.sleep(self._delay)


class StagePipeline:
    """Executes a single operation against one file's bytes."""

    def __init__(self, ocr: OcrService, *, yield_delay: float = config.STAGE_YIELD_DELAY) -> None:
        self.ocr = ocr
        self.yield_delay = yield_delay
        self._handlers = {
            Operation.MERGE: self._merge,
            Operation.SPLIT: self._split,
            Operation.COMPRESS: self._compress,
            Operation.ROTATE: self._rotate,
            Operation.WATERMARK: self._watermark,
            Operation.EXTRACT: self._extract,
            Operation.OCR: self._ocr,
        }

    async def run(
        self,
        file: InputFile,
        operation: Union[Operation, str],
        options: Optional[OperationOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> dict[str, Any]:
        """
        Transform ``file`` and return its result record.

        Raises ``UnsupportedOperation`` for an unknown operation and
        ``ProcessingError`` for anything that goes wrong in the transform.
        """
        try:
            operation = Operation(operation)
        except ValueError:
            raise UnsupportedOperation(str(operation)) from None
        if options is None:
            options = parse_options(operation, None)
        elif options.kind != operation.value:
            raise ValidationError(f"Options of kind '{options.kind}' do not apply to {operation.value}")

        report = ProgressReporter(on_progress, self.yield_delay)
        logger.debug("Running %s on %s (%d bytes)", operation.value, file.name, file.size)
        try:
            await report(FILE_LOADED)
            await report(PROCESSING_STARTED)
            result = await self._handlers[operation](file, options, report)
        except BatchError:
            raise
        except Exception as e:
            raise ProcessingError(f"{operation.value} failed for {file.name}: {e}") from e

        await report(DONE)
        result.setdefault("operation", operation.value)
        result.setdefault("success", True)
        return result

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def _merge(self, file: InputFile, options: MergeOptions, report: ProgressReporter) -> dict:
        first, second = CHECKPOINTS[Operation.MERGE]
        reader = await asyncio.to_thread(pdf_operations.load_pdf, file.content, file.name)
        writer, pages = await asyncio.to_thread(pdf_operations.copy_pages, reader, options.page_selection)
        await report(first)
        data = await asyncio.to_thread(pdf_operations.to_bytes, writer)
        await report(second)
        return {
            "fileName": f"merged_{file.name}",
            "originalSize": file.size,
            "newSize": len(data),
            "pageCount": len(pages),
            "data": _b64(data),
        }

    async def _split(self, file: InputFile, options: SplitOptions, report: ProgressReporter) -> dict:
        first, second = CHECKPOINTS[Operation.SPLIT]
        reader = await asyncio.to_thread(pdf_operations.load_pdf, file.content, file.name)
        chunks = await asyncio.to_thread(pdf_operations.split_pages, reader, options.pages_per_chunk)
        await report(first)
        stem = Path(file.name).stem
        pages = [
            {
                "pageNumber": page_number,
                "fileName": f"{stem}_page_{page_number}.pdf",
                "size": len(chunk),
                "data": _b64(chunk),
            }
            for page_number, chunk in chunks
        ]
        await report(second)
        return {
            "fileName": file.name,
            "originalSize": file.size,
            "pageCount": len(reader.pages),
            "pages": pages,
        }

    async def _compress(self, file: InputFile, options: CompressOptions, report: ProgressReporter) -> dict:
        loaded, compressed, encoded = CHECKPOINTS[Operation.COMPRESS]
        reader = await asyncio.to_thread(pdf_operations.load_pdf, file.content, file.name)
        await report(loaded)
        writer = await asyncio.to_thread(pdf_operations.compress_document, reader, options.remove_duplicates)
        await report(compressed)
        data = await asyncio.to_thread(pdf_operations.to_bytes, writer)
        await report(encoded)
        saved = 1 - len(data) / file.size if file.size else 0.0
        return {
            "fileName": f"compressed_{file.name}",
            "originalSize": file.size,
            "newSize": len(data),
            "compressionRatio": max(0, round(saved * 100)),
            "data": _b64(data),
        }

    async def _rotate(self, file: InputFile, options: RotateOptions, report: ProgressReporter) -> dict:
        (rotated,) = CHECKPOINTS[Operation.ROTATE]
        reader = await asyncio.to_thread(pdf_operations.load_pdf, file.content, file.name)
        writer = await asyncio.to_thread(pdf_operations.rotate_document, reader, options.degrees)
        data = await asyncio.to_thread(pdf_operations.to_bytes, writer)
        await report(rotated)
        return {
            "fileName": f"rotated_{file.name}",
            "originalSize": file.size,
            "newSize": len(data),
            "rotation": options.degrees,
            "data": _b64(data),
        }

    async def _watermark(self, file: InputFile, options: WatermarkOptions, report: ProgressReporter) -> dict:
        stamped, encoded = CHECKPOINTS[Operation.WATERMARK]
        data = await asyncio.to_thread(
            pdf_operations.watermark_document,
            file.content,
            options.text,
            opacity=options.opacity,
            font_size=options.font_size,
            rotation=options.rotation,
            color=WATERMARK_COLORS[options.color],
            name=file.name,
        )
        await report(stamped)
        payload = _b64(data)
        await report(encoded)
        return {
            "fileName": f"watermarked_{file.name}",
            "originalSize": file.size,
            "newSize": len(data),
            "watermark": options.text,
            "data": payload,
        }

    async def _extract(self, file: InputFile, options: ExtractOptions, report: ProgressReporter) -> dict:
        loaded, selected = CHECKPOINTS[Operation.EXTRACT]
        reader = await asyncio.to_thread(pdf_operations.load_pdf, file.content, file.name)
        await report(loaded)
        writer, pages = await asyncio.to_thread(pdf_operations.copy_pages, reader, options.page_numbers)
        data = await asyncio.to_thread(pdf_operations.to_bytes, writer)
        await report(selected)
        return {
            "fileName": f"extracted_{file.name}",
            "originalSize": file.size,
            "extractedPages": pages,
            "newSize": len(data),
            "data": _b64(data),
        }

    async def _ocr(self, file: InputFile, options: OcrOptions, report: ProgressReporter) -> dict:
        kind = detect_file_type(file.name, file.content_type)
        if kind == "pdf":
            images = await asyncio.to_thread(pdf_operations.render_pages, file.content, options.dpi, file.name)
        elif kind == "image":
            images = [await asyncio.to_thread(pdf_operations.load_image, file.content, file.name)]
        else:
            raise ProcessingError(
                f"Unsupported file type for OCR: {file.name}. Upload a PDF or an image "
                "(JPG, PNG, GIF, BMP, TIFF, WebP)."
            )

        start, end = OCR_PAGE_SPAN

        async def on_page(done: int, total: int) -> None:
            await report(start + round(done / total * (end - start)))

        pages = await self.ocr.recognize_pages(
            images,
            language=options.language,
            concurrency=options.concurrency,
            on_page=on_page,
        )
        recognised = [p for p in pages if p.success]
        if not recognised:
            raise ProcessingError(f"OCR failed on every page of {file.name}: {pages[0].error}")

        text = "\n\n".join(p.text for p in recognised if p.text)
        result: dict[str, Any] = {
            "fileName": file.name,
            "originalSize": file.size,
            "extractedText": text,
            "confidence": round(mean(p.confidence for p in recognised), 2),
            "pagesProcessed": len(recognised),
            "totalCharacters": len(text),
            "pages": [p.to_dict(layout=options.layout) for p in pages],
        }
        if options.structured_data:
            result["structuredData"] = extract_structured_data(text)
        if options.search:
            result["matches"] = search_text(text, options.search, regex=options.search_regex)
        return result


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
