"""Pydantic models for API request/response schemas and progress events."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

import config


class Operation(str, Enum):
    MERGE = "merge"
    SPLIT = "split"
    COMPRESS = "compress"
    ROTATE = "rotate"
    WATERMARK = "watermark"
    EXTRACT = "extract"
    OCR = "ocr"


class FileStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CamelModel(BaseModel):
    """Base model exchanging camelCase keys with the browser client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Per-operation options (tagged by ``kind``)
# ---------------------------------------------------------------------------
PageNumber = Annotated[int, Field(ge=1)]


class MergeOptions(CamelModel):
    kind: Literal["merge"] = "merge"
    page_selection: Optional[list[PageNumber]] = None


class SplitOptions(CamelModel):
    kind: Literal["split"] = "split"
    pages_per_chunk: int = Field(default=1, ge=1)


class CompressOptions(CamelModel):
    kind: Literal["compress"] = "compress"
    remove_duplicates: bool = True


class RotateOptions(CamelModel):
    kind: Literal["rotate"] = "rotate"
    degrees: int = 90

    @field_validator("degrees")
    @classmethod
    def _right_angle(cls, value: int) -> int:
        if value % 90 != 0:
            raise ValueError("rotation must be a multiple of 90 degrees")
        return value


WATERMARK_COLORS = {
    "red": (1.0, 0.0, 0.0),
    "blue": (0.0, 0.0, 1.0),
    "green": (0.0, 1.0, 0.0),
    "black": (0.0, 0.0, 0.0),
    "gray": (0.5, 0.5, 0.5),
}


class WatermarkOptions(CamelModel):
    kind: Literal["watermark"] = "watermark"
    text: str = Field(default="CONFIDENTIAL", min_length=1)
    opacity: float = Field(default=0.3, gt=0.0, le=1.0)
    font_size: int = Field(default=48, ge=1)
    rotation: int = 45
    color: str = "gray"

    @field_validator("color")
    @classmethod
    def _known_color(cls, value: str) -> str:
        value = value.lower()
        if value not in WATERMARK_COLORS:
            raise ValueError(f"unknown color '{value}'. Allowed: {', '.join(sorted(WATERMARK_COLORS))}")
        return value


class ExtractOptions(CamelModel):
    kind: Literal["extract"] = "extract"
    page_numbers: list[PageNumber] = Field(default_factory=lambda: [1, 2, 3], min_length=1)


class OcrOptions(CamelModel):
    kind: Literal["ocr"] = "ocr"
    language: str = config.OCR_LANGUAGE
    dpi: int = Field(default=config.OCR_RENDER_DPI, ge=50, le=600)
    concurrency: int = Field(default=3, ge=1)
    layout: bool = False
    structured_data: bool = False
    search: Optional[str] = None
    search_regex: bool = False

    @model_validator(mode="after")
    def _compilable_search(self) -> "OcrOptions":
        if self.search and self.search_regex:
            try:
                re.compile(self.search)
            except re.error as e:
                raise ValueError(f"search is not a valid regular expression: {e}")
        return self


OperationOptions = Annotated[
    Union[
        MergeOptions,
        SplitOptions,
        CompressOptions,
        RotateOptions,
        WatermarkOptions,
        ExtractOptions,
        OcrOptions,
    ],
    Field(discriminator="kind"),
]

_options_adapter: TypeAdapter[OperationOptions] = TypeAdapter(OperationOptions)


def parse_options(operation: Operation, raw: Optional[dict[str, Any]]) -> OperationOptions:
    """Validate client options against the schema of ``operation``.

    Raises ``pydantic.ValidationError`` on bad input.
    """
    payload = dict(raw or {})
    payload["kind"] = operation.value
    return _options_adapter.validate_python(payload)


# ---------------------------------------------------------------------------
# Jobs (in-memory only, live for one request)
# ---------------------------------------------------------------------------
@dataclass
class InputFile:
    name: str
    content: bytes
    content_type: str = "application/pdf"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class Job:
    operation: Operation
    files: list[InputFile]
    options: OperationOptions


@dataclass
class FileTask:
    file: InputFile
    index: int
    progress: int = 0
    status: FileStatus = FileStatus.PENDING
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    stages: list[int] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------
class StartEvent(CamelModel):
    type: Literal["start"] = "start"
    total_files: int
    operation: Operation


class ProgressUpdateEvent(CamelModel):
    type: Literal["progress"] = "progress"
    current_file_index: int
    total_files: int
    file_name: str
    overall_progress_percent: int


class FileProgressEvent(CamelModel):
    type: Literal["file_progress"] = "file_progress"
    file_name: str
    progress: int
    stage_label: str


class FileCompleteEvent(CamelModel):
    type: Literal["file_complete"] = "file_complete"
    file_name: str
    success: bool = True
    result: dict[str, Any]


class FileErrorEvent(CamelModel):
    type: Literal["file_error"] = "file_error"
    file_name: str
    error: str


class CompleteEvent(CamelModel):
    type: Literal["complete"] = "complete"
    processed_count: int
    total_files: int
    succeeded_count: int
    failed_count: int
    results: list[dict[str, Any]]


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    error: str


ProgressEvent = Annotated[
    Union[
        StartEvent,
        ProgressUpdateEvent,
        FileProgressEvent,
        FileCompleteEvent,
        FileErrorEvent,
        CompleteEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# HTTP bodies
# ---------------------------------------------------------------------------
class JsonFile(CamelModel):
    name: str
    content: str  # base64
    content_type: str = "application/pdf"


class BatchRequest(CamelModel):
    operation: str
    files: list[JsonFile] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)


class BatchResponse(CamelModel):
    success: bool
    results: list[dict[str, Any]]
    processed_at: str
