import base64
import io

import pytest
from pypdf import PdfReader

from models import InputFile, Operation, parse_options
from services.errors import ProcessingError, UnsupportedOperation, ValidationError
from services.ocr_engine import OcrService
from services.stage_pipeline import CHECKPOINTS, StagePipeline, stage_label

from conftest import FailingEngine


def _reader(result: dict) -> PdfReader:
    return PdfReader(io.BytesIO(base64.b64decode(result["data"])))


async def _run(pipeline, file, operation, options=None):
    seen = []

    async def on_progress(percent):
        seen.append(percent)

    parsed = parse_options(Operation(operation), options) if options is not None else None
    result = await pipeline.run(file, operation, parsed, on_progress)
    return result, seen


@pytest.mark.anyio
@pytest.mark.parametrize(
    "operation",
    [Operation.MERGE, Operation.SPLIT, Operation.COMPRESS, Operation.ROTATE, Operation.WATERMARK, Operation.EXTRACT],
)
async def test_checkpoints_follow_operation_schedule(pipeline, make_pdf, operation):
    result, seen = await _run(pipeline, make_pdf(pages=3), operation.value)

    assert seen == [10, 30, *CHECKPOINTS[operation], 100]
    assert result["success"] is True
    assert result["operation"] == operation.value
    assert result["originalSize"] > 0


@pytest.mark.anyio
async def test_merge_copies_selected_pages(pipeline, make_pdf):
    result, _ = await _run(pipeline, make_pdf("report.pdf", pages=4), "merge", {"pageSelection": [1, 3]})

    assert result["fileName"] == "merged_report.pdf"
    assert result["pageCount"] == 2
    assert len(_reader(result).pages) == 2
    assert result["newSize"] == len(base64.b64decode(result["data"]))


@pytest.mark.anyio
async def test_split_returns_one_file_per_page(pipeline, make_pdf):
    result, _ = await _run(pipeline, make_pdf("book.pdf", pages=3), "split")

    assert [p["pageNumber"] for p in result["pages"]] == [1, 2, 3]
    assert [p["fileName"] for p in result["pages"]] == ["book_page_1.pdf", "book_page_2.pdf", "book_page_3.pdf"]
    for page in result["pages"]:
        assert len(PdfReader(io.BytesIO(base64.b64decode(page["data"]))).pages) == 1


@pytest.mark.anyio
async def test_split_in_chunks(pipeline, make_pdf):
    result, _ = await _run(pipeline, make_pdf("book.pdf", pages=5), "split", {"pagesPerChunk": 2})

    assert [p["pageNumber"] for p in result["pages"]] == [1, 3, 5]


@pytest.mark.anyio
async def test_compress_reports_non_negative_ratio(pipeline, make_pdf):
    result, _ = await _run(pipeline, make_pdf(pages=2), "compress")

    assert result["fileName"] == "compressed_doc.pdf"
    assert 0 <= result["compressionRatio"] <= 100
    assert len(_reader(result).pages) == 2


@pytest.mark.anyio
async def test_rotate_applies_degrees(pipeline, make_pdf):
    result, _ = await _run(pipeline, make_pdf(pages=2), "rotate", {"degrees": 180})

    assert result["rotation"] == 180
    assert [page.rotation for page in _reader(result).pages] == [180, 180]


@pytest.mark.anyio
async def test_watermark_keeps_pages(pipeline, make_pdf):
    result, _ = await _run(pipeline, make_pdf(pages=2), "watermark", {"text": "DRAFT", "color": "red"})

    assert result["fileName"] == "watermarked_doc.pdf"
    assert result["watermark"] == "DRAFT"
    assert len(_reader(result).pages) == 2


@pytest.mark.anyio
async def test_extract_keeps_only_existing_pages(pipeline, make_pdf):
    result, _ = await _run(pipeline, make_pdf(pages=3), "extract", {"pageNumbers": [1, 3, 7]})

    assert result["extractedPages"] == [1, 3]
    assert len(_reader(result).pages) == 2


@pytest.mark.anyio
async def test_extract_without_any_valid_page_fails(pipeline, make_pdf):
    with pytest.raises(ProcessingError):
        await _run(pipeline, make_pdf(pages=2), "extract", {"pageNumbers": [5, 6]})


@pytest.mark.anyio
async def test_corrupt_file_raises_processing_error_after_monotonic_progress(pipeline, corrupt_pdf):
    seen = []

    async def on_progress(percent):
        seen.append(percent)

    with pytest.raises(ProcessingError) as excinfo:
        await pipeline.run(corrupt_pdf, "merge", None, on_progress)

    assert "broken.pdf" in str(excinfo.value)
    assert seen == [10, 30]


@pytest.mark.anyio
async def test_unknown_operation_is_rejected(pipeline, make_pdf):
    with pytest.raises(UnsupportedOperation):
        await pipeline.run(make_pdf(), "bogus")


@pytest.mark.anyio
async def test_options_for_another_operation_are_rejected(pipeline, make_pdf):
    with pytest.raises(ValidationError):
        await pipeline.run(make_pdf(), "merge", parse_options(Operation.ROTATE, {}))


@pytest.mark.anyio
async def test_ocr_on_pdf_reports_per_page_progress(pipeline, make_pdf):
    result, seen = await _run(pipeline, make_pdf("scan.pdf", pages=2), "ocr", {"dpi": 72})

    assert seen == [10, 30, 60, 90, 100]
    assert result["pagesProcessed"] == 2
    assert result["confidence"] == 85.0
    assert "Invoice 2024-001" in result["extractedText"]
    assert result["totalCharacters"] == len(result["extractedText"])
    assert [p["pageNumber"] for p in result["pages"]] == [1, 2]
    assert "lines" not in result["pages"][0]


@pytest.mark.anyio
async def test_ocr_on_image_with_layout_and_structured_data(pipeline, make_png):
    result, seen = await _run(
        pipeline,
        make_png(),
        "ocr",
        {"layout": True, "structuredData": True, "search": "invoice"},
    )

    assert seen == [10, 30, 90, 100]
    assert result["pages"][0]["lines"][0]["text"] == "Invoice 2024-001"
    assert result["structuredData"]["emails"][0]["value"] == "billing@example.com"
    assert [m["match"] for m in result["matches"]] == ["Invoice"]


@pytest.mark.anyio
async def test_ocr_rejects_unsupported_file_type(pipeline):
    notes = InputFile(name="notes.txt", content=b"hello", content_type="text/plain")

    with pytest.raises(ProcessingError, match="Unsupported file type"):
        await pipeline.run(notes, "ocr")


@pytest.mark.anyio
async def test_ocr_fails_when_no_page_is_recognised(make_png):
    pipeline = StagePipeline(OcrService(FailingEngine), yield_delay=0)

    with pytest.raises(ProcessingError, match="engine crashed"):
        await pipeline.run(make_png(), "ocr")


def test_stage_labels():
    assert stage_label(10) == "Loading file..."
    assert stage_label(30) == "Parsing document..."
    assert stage_label(50) == "Processing pages..."
    assert stage_label(70) == "Applying changes..."
    assert stage_label(90) == "Finalizing..."
    assert stage_label(100) == "Complete"
