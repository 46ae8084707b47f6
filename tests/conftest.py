import io

import pytest
from PIL import Image
from pypdf import PdfWriter

from models import InputFile
from services.ocr_engine import OcrLine, OcrService
from services.stage_pipeline import StagePipeline


@pytest.fixture
def anyio_backend():
    return "asyncio"


def pdf_bytes(pages: int = 1, width: float = 612, height: float = 792) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=width, height=height)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (120, 40), "white").save(buffer, format="PNG")
    return buffer.getvalue()


class FakeEngine:
    """Stands in for PaddleOCR: two fixed lines per image."""

    def __init__(self, language: str = "en") -> None:
        self.language = language
        self.closed = False
        self.calls = 0

    def recognize(self, image):
        self.calls += 1
        return [
            OcrLine(text="Invoice 2024-001", confidence=90.0, bbox=[[0, 0], [10, 0], [10, 5], [0, 5]]),
            OcrLine(text="Contact billing@example.com", confidence=80.0, bbox=[[0, 6], [10, 6], [10, 11], [0, 11]]),
        ]

    def close(self) -> None:
        self.closed = True


class FailingEngine(FakeEngine):
    def recognize(self, image):
        raise RuntimeError("engine crashed")


@pytest.fixture
def make_pdf():
    def _make(name: str = "doc.pdf", pages: int = 1) -> InputFile:
        return InputFile(name=name, content=pdf_bytes(pages))

    return _make


@pytest.fixture
def make_png():
    def _make(name: str = "scan.png") -> InputFile:
        return InputFile(name=name, content=png_bytes(), content_type="image/png")

    return _make


@pytest.fixture
def corrupt_pdf():
    return InputFile(name="broken.pdf", content=b"%PDF-1.7 this is not really a pdf")


@pytest.fixture
def ocr_service():
    return OcrService(FakeEngine)


@pytest.fixture
def pipeline(ocr_service):
    return StagePipeline(ocr_service, yield_delay=0)
