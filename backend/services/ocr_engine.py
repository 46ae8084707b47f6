"""OCR service – page recognition with bounded concurrency.

The recognition engine itself is PaddleOCR, loaded lazily on first use.
``OcrService`` is constructed explicitly and closed by its owner; tests pass
their own engine factory.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from statistics import mean
from typing import Any, Awaitable, Callable, Optional, Protocol

from PIL import Image

from workers.operation_queue import OperationQueue

logger = logging.getLogger("pdfbatch.ocr")

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".webp"}


@dataclass
class OcrLine:
    text: str
    confidence: float  # 0-100
    bbox: list[list[float]] = field(default_factory=list)


@dataclass
class OcrPage:
    page_number: int
    text: str = ""
    confidence: float = 0.0
    success: bool = True
    error: Optional[str] = None
    lines: list[OcrLine] = field(default_factory=list)

    def to_dict(self, layout: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "pageNumber": self.page_number,
            "text": self.text,
            "confidence": self.confidence,
            "success": self.success,
        }
        if self.error:
            data["error"] = self.error
        if layout:
            data["lines"] = [
                {"text": line.text, "confidence": line.confidence, "bbox": line.bbox}
                for line in self.lines
            ]
        return data


class OcrEngine(Protocol):
    def recognize(self, image: Image.Image) -> list[OcrLine]: ...

    def close(self) -> None: ...


class PaddleOcrEngine:
    """PaddleOCR recogniser. The model loads on first use."""

    def __init__(self, language: str = "en") -> None:
        self.language = language
        self._ocr = None
        # PaddleOCR predictors are not safe to share between threads.
        self._lock = threading.Lock()

    def load(self) -> None:
        if self._ocr is None:
            from paddleocr import PaddleOCR

            logger.info("Loading PaddleOCR model (lang=%s) …", self.language)
            self._ocr = PaddleOCR(lang=self.language, use_angle_cls=False, show_log=False)
            logger.info("PaddleOCR model loaded.")

    def recognize(self, image: Image.Image) -> list[OcrLine]:
        import numpy as np

        # PaddleOCR expects BGR arrays.
        array = np.asarray(image.convert("RGB"))[:, :, ::-1]
        with self._lock:
            self.load()
            result = self._ocr.ocr(array, cls=False)

        lines: list[OcrLine] = []
        if result and result[0]:
            for detection in result[0]:
                bbox = [[float(x), float(y)] for x, y in detection[0]]
                text, confidence = detection[1]
                lines.append(OcrLine(text=text, confidence=round(float(confidence) * 100, 2), bbox=bbox))
        return lines

    def close(self) -> None:
        self._ocr = None


EngineFactory = Callable[[str], OcrEngine]
PageCallback = Callable[[int, int], Awaitable[None]]


class OcrService:
    """Owns one engine per language. Use ``async with`` or call ``close``."""

    def __init__(
        self,
        engine_factory: EngineFactory = PaddleOcrEngine,
        language: str = "en",
    ) -> None:
        self._engine_factory = engine_factory
        self.language = language
        self._engines: dict[str, OcrEngine] = {}
        self._closed = False

    async def __aenter__(self) -> "OcrService":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def engine(self, language: Optional[str] = None) -> OcrEngine:
        if self._closed:
            raise RuntimeError("OCR service is closed")
        language = language or self.language
        if language not in self._engines:
            self._engines[language] = self._engine_factory(language)
        return self._engines[language]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for language, engine in self._engines.items():
            await asyncio.to_thread(engine.close)
            logger.info("OCR engine closed (lang=%s)", language)
        self._engines.clear()

    async def recognize_image(
        self,
        image: Image.Image,
        *,
        page_number: int = 1,
        language: Optional[str] = None,
    ) -> OcrPage:
        engine = self.engine(language)
        lines = await asyncio.to_thread(engine.recognize, image)
        text = "\n".join(line.text for line in lines).strip()
        confidence = round(mean(line.confidence for line in lines), 2) if lines else 0.0
        return OcrPage(page_number=page_number, text=text, confidence=confidence, lines=lines)

    async def recognize_pages(
        self,
        images: list[Image.Image],
        *,
        language: Optional[str] = None,
        concurrency: int = 3,
        on_page: Optional[PageCallback] = None,
    ) -> list[OcrPage]:
        """
        Recognise pages through a bounded queue. A page that fails is
        returned with ``success=False`` rather than failing the batch.
        Results keep page order.
        """
        queue = OperationQueue(max_concurrent=concurrency)
        total = len(images)
        done = 0

        async def _page(number: int, image: Image.Image) -> OcrPage:
            nonlocal done
            try:
                page = await queue.enqueue(
                    self.recognize_image, image, page_number=number, language=language
                )
            except Exception as exc:
                logger.warning("OCR failed on page %d: %s", number, exc)
                page = OcrPage(page_number=number, success=False, error=str(exc))
            done += 1
            if on_page:
                await on_page(done, total)
            return page

        pending = [asyncio.ensure_future(_page(n, img)) for n, img in enumerate(images, start=1)]
        try:
            return list(await asyncio.gather(*pending))
        except BaseException:
            # A progress callback failed (or we were cancelled): stop the other pages.
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise
        finally:
            queue.shutdown()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def detect_file_type(file_name: str, content_type: Optional[str] = None) -> str:
    """Return ``"pdf"``, ``"image"`` or ``"unsupported"``."""
    content_type = (content_type or "").lower()
    if content_type == "application/pdf":
        return "pdf"
    if content_type.startswith("image/"):
        return "image"

    suffix = Path(file_name).suffix.lower()
    if suffix == ".pdf":
        return "pdf"
    if suffix in IMAGE_EXTENSIONS:
        return "image"
    return "unsupported"


def search_text(
    text: str,
    pattern: str,
    *,
    regex: bool = False,
    case_sensitive: bool = False,
) -> list[dict[str, Any]]:
    """Find every occurrence of ``pattern`` in recognised text."""
    flags = 0 if case_sensitive else re.IGNORECASE
    expression = pattern if regex else re.escape(pattern)
    return [
        {"match": m.group(0), "index": m.start(), "groups": m.groupdict()}
        for m in re.finditer(expression, text, flags)
    ]


STRUCTURED_PATTERNS = {
    "emails": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phones": re.compile(r"(?:\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}"),
    "dates": re.compile(r"\b\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}\b"),
    "urls": re.compile(r"https?://[^\s]+"),
    "numbers": re.compile(r"\b\d+(?:\.\d+)?\b"),
}


def extract_structured_data(text: str) -> dict[str, list[dict[str, Any]]]:
    """Pull emails, phone numbers, dates, URLs and numbers out of text."""
    return {
        kind: [{"value": m.group(0), "index": m.start()} for m in pattern.finditer(text)]
        for kind, pattern in STRUCTURED_PATTERNS.items()
    }
