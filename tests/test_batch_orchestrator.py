import asyncio

import pytest

from models import FileStatus, InputFile, Operation, parse_options
from services.batch_orchestrator import BatchOrchestrator, overall_percent, stream_batch, validate_job
from services.errors import UnsupportedOperation, ValidationError
from services.progress_channel import ProgressChannel

from conftest import pdf_bytes


class CountingPipeline:
    """Records which files reached the pipeline."""

    def __init__(self, delay: float = 0) -> None:
        self.calls = []
        self.delay = delay

    async def run(self, file, operation, options=None, on_progress=None):
        self.calls.append(file.name)
        await on_progress(10)
        await asyncio.sleep(self.delay)
        await on_progress(100)
        return {"fileName": file.name, "success": True, "operation": Operation(operation).value}


def _files(*names):
    return [InputFile(name=name, content=pdf_bytes(2)) for name in names]


async def _collect(orchestrator, operation, files, options=None, **kwargs):
    return [event async for event in stream_batch(orchestrator, operation, files, options, **kwargs)]


@pytest.mark.anyio
async def test_event_sequence_for_two_file_merge(pipeline):
    events = await _collect(BatchOrchestrator(pipeline), "merge", _files("a.pdf", "b.pdf"))
    types = [e.type for e in events]

    assert types[0] == "start"
    assert types[-1] == "complete"
    assert types.count("file_complete") == 2
    assert types.count("error") == 0

    updates = [e for e in events if e.type == "progress"]
    assert [(u.current_file_index, u.overall_progress_percent) for u in updates] == [(1, 0), (2, 50)]

    # each file's events sit between its progress_update and the next one
    second = types.index("progress", 2)
    first_file = [e for e in events[1:second] if e.type == "file_progress"]
    assert {e.file_name for e in first_file} == {"a.pdf"}
    assert [e.progress for e in first_file] == [10, 30, 50, 80, 100]
    assert first_file[-1].stage_label == "Complete"

    complete = events[-1]
    assert complete.processed_count == 2
    assert complete.succeeded_count == 2
    assert [r["fileName"] for r in complete.results] == ["merged_a.pdf", "merged_b.pdf"]


@pytest.mark.anyio
async def test_failing_file_does_not_stop_batch(pipeline, corrupt_pdf):
    files = [*_files("good1.pdf"), corrupt_pdf, *_files("good2.pdf")]
    events = await _collect(BatchOrchestrator(pipeline), "merge", files)

    errors = [e for e in events if e.type == "file_error"]
    assert len(errors) == 1
    assert errors[0].file_name == "broken.pdf"
    assert "broken.pdf" in errors[0].error

    completed = [e.file_name for e in events if e.type == "file_complete"]
    assert completed == ["good1.pdf", "good2.pdf"]

    complete = events[-1]
    assert complete.type == "complete"
    assert complete.processed_count == 3
    assert complete.succeeded_count == 2
    assert complete.failed_count == 1
    assert complete.results[1] == {"fileName": "broken.pdf", "success": False, "error": errors[0].error}


@pytest.mark.anyio
async def test_file_progress_is_monotonic_and_bounded(pipeline):
    events = await _collect(BatchOrchestrator(pipeline), "compress", _files("a.pdf", "b.pdf", "c.pdf"))

    per_file = {}
    for event in events:
        if event.type == "file_progress":
            per_file.setdefault(event.file_name, []).append(event.progress)

    for values in per_file.values():
        assert values == sorted(set(values))
        assert all(0 <= v <= 100 for v in values)
        assert values[-1] == 100


@pytest.mark.anyio
async def test_empty_job_yields_single_error(pipeline):
    events = await _collect(BatchOrchestrator(pipeline), "merge", [])

    assert [e.type for e in events] == ["error"]
    assert events[0].error == "No files provided"


@pytest.mark.anyio
async def test_invalid_options_yield_single_error(pipeline):
    events = await _collect(BatchOrchestrator(pipeline), "rotate", _files("a.pdf"), {"degrees": 45})

    assert [e.type for e in events] == ["error"]
    assert "Invalid options for rotate" in events[0].error


@pytest.mark.anyio
async def test_invalid_search_pattern_rejects_job_before_start(pipeline, make_png):
    events = await _collect(
        BatchOrchestrator(pipeline),
        "ocr",
        [make_png("a.png"), make_png("b.png")],
        {"search": "(", "searchRegex": True},
    )

    assert [e.type for e in events] == ["error"]
    assert "Invalid options for ocr" in events[0].error
    assert "not a valid regular expression" in events[0].error


@pytest.mark.anyio
async def test_unknown_operation_yields_single_error(pipeline):
    events = await _collect(BatchOrchestrator(pipeline), "bogus", _files("a.pdf"))

    assert len(events) == 1
    assert events[0].error == "Unknown operation: bogus"


@pytest.mark.anyio
async def test_consumer_disconnect_stops_remaining_files():
    stub = CountingPipeline()
    orchestrator = BatchOrchestrator(stub)
    job = validate_job("rotate", _files("a.pdf", "b.pdf", "c.pdf"))
    channel = ProgressChannel(maxsize=1)

    runner = asyncio.create_task(orchestrator.run(job, channel))
    events = channel.events()
    async for event in events:
        if event.type == "file_complete":
            break
    await events.aclose()

    tasks = await asyncio.wait_for(runner, timeout=1)

    assert stub.calls == ["a.pdf"]
    assert tasks[0].status is FileStatus.SUCCEEDED
    assert [t.status for t in tasks[1:]] == [FileStatus.PENDING, FileStatus.PENDING]
    assert all(t.file.content == b"" for t in tasks)
    assert all(t.result is None for t in tasks)


@pytest.mark.anyio
async def test_file_in_flight_at_disconnect_ends_failed():
    stub = CountingPipeline(delay=0.05)
    job = validate_job("rotate", _files("a.pdf", "b.pdf"))
    channel = ProgressChannel(maxsize=1)

    runner = asyncio.create_task(BatchOrchestrator(stub).run(job, channel))
    events = channel.events()
    async for event in events:
        if event.type == "file_progress":
            break
    await events.aclose()

    tasks = await asyncio.wait_for(runner, timeout=1)

    assert tasks[0].status is FileStatus.FAILED
    assert tasks[0].error == "Cancelled: client disconnected"
    assert tasks[1].status is FileStatus.PENDING


@pytest.mark.anyio
async def test_cancelled_job_leaves_no_file_running():
    stub = CountingPipeline(delay=1)
    job = validate_job("rotate", _files("a.pdf"))

    runner = asyncio.create_task(BatchOrchestrator(stub).run(job, ProgressChannel()))
    await asyncio.sleep(0.05)
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    assert job.files[0].content == b""


@pytest.mark.anyio
async def test_slow_reader_does_not_time_out_files():
    stub = CountingPipeline()
    orchestrator = BatchOrchestrator(stub, file_timeout=0.05)
    channel = ProgressChannel(maxsize=1)
    job = validate_job("rotate", _files("a.pdf", "b.pdf"))

    runner = asyncio.create_task(orchestrator.run(job, channel))
    events = []
    async for event in channel.events():
        events.append(event)
        await asyncio.sleep(0.08)
    tasks = await runner

    assert [e.type for e in events].count("file_error") == 0
    assert all(t.status is FileStatus.SUCCEEDED for t in tasks)


@pytest.mark.anyio
async def test_closing_stream_early_cancels_job():
    stub = CountingPipeline()
    stream = stream_batch(BatchOrchestrator(stub), "rotate", _files("a.pdf", "b.pdf"), buffer_size=1)

    async for event in stream:
        if event.type == "file_complete":
            break
    await stream.aclose()
    await asyncio.sleep(0.05)

    assert stub.calls == ["a.pdf"]


@pytest.mark.anyio
async def test_slow_file_times_out_and_batch_continues():
    stub = CountingPipeline(delay=0.5)
    orchestrator = BatchOrchestrator(stub, file_timeout=0.05)
    channel = ProgressChannel()
    job = validate_job("rotate", _files("slow1.pdf", "slow2.pdf"))

    runner = asyncio.create_task(orchestrator.run(job, channel))
    events = [e async for e in channel.events()]
    tasks = await runner

    errors = [e for e in events if e.type == "file_error"]
    assert [e.file_name for e in errors] == ["slow1.pdf", "slow2.pdf"]
    assert "timed out" in errors[0].error
    assert all(t.status is FileStatus.FAILED for t in tasks)
    assert events[-1].failed_count == 2


def test_overall_percent_rounds_half_up():
    assert [overall_percent(i, 3) for i in range(3)] == [0, 33, 67]
    assert overall_percent(1, 2) == 50
    assert overall_percent(1, 8) == 13


def test_validate_job_parses_options():
    job = validate_job("watermark", _files("a.pdf"), {"text": "DRAFT", "fontSize": 30})

    assert job.operation is Operation.WATERMARK
    assert job.options == parse_options(Operation.WATERMARK, {"text": "DRAFT", "font_size": 30})


@pytest.mark.parametrize(
    "operation, options, message",
    [
        (None, None, "No operation provided"),
        ("merge", ["not", "a", "dict"], "Options must be a JSON object"),
        ("ocr", {"dpi": 10}, "Invalid options for ocr: dpi"),
    ],
)
def test_validate_job_rejections(operation, options, message):
    with pytest.raises(ValidationError) as excinfo:
        validate_job(operation, _files("a.pdf"), options)

    assert message in str(excinfo.value)


def test_validate_job_rejects_unknown_operation():
    with pytest.raises(UnsupportedOperation):
        validate_job("shred", _files("a.pdf"))


def test_validate_job_rejects_oversized_file():
    big = InputFile(name="big.pdf", content=b"x" * (2 * 1024 * 1024))

    with pytest.raises(ValidationError, match="big.pdf exceeds maximum size of 1MB"):
        validate_job("merge", [big], max_file_size=1024 * 1024)
