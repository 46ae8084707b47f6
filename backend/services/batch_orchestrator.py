"""Batch orchestrator – drives a job file by file and reports through a progress channel."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Sequence

from pydantic import ValidationError as OptionsError

import config
from models import (
    CompleteEvent,
    ErrorEvent,
    FileCompleteEvent,
    FileErrorEvent,
    FileProgressEvent,
    FileStatus,
    FileTask,
    InputFile,
    Job,
    Operation,
    ProgressEvent,
    ProgressUpdateEvent,
    StartEvent,
    parse_options,
)
from services.errors import ChannelClosed, UnsupportedOperation, ValidationError
from services.progress_channel import ProgressChannel
from services.stage_pipeline import StagePipeline, stage_label

logger = logging.getLogger("pdfbatch.orchestrator")


def validate_job(
    operation: Optional[str],
    files: Sequence[InputFile],
    options: Optional[dict[str, Any]] = None,
    *,
    max_file_size: int = config.MAX_FILE_SIZE,
) -> Job:
    """Build a ``Job`` or raise ``ValidationError`` before anything runs."""
    if not files:
        raise ValidationError("No files provided")
    if not operation:
        raise ValidationError("No operation provided")
    try:
        op = Operation(operation)
    except ValueError:
        raise UnsupportedOperation(operation) from None

    for file in files:
        if file.size > max_file_size:
            raise ValidationError(
                f"File {file.name} exceeds maximum size of {max_file_size // (1024 * 1024)}MB"
            )

    if options is not None and not isinstance(options, dict):
        raise ValidationError("Options must be a JSON object")
    try:
        parsed = parse_options(op, options)
    except OptionsError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'options'}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Invalid options for {op.value}: {problems}") from exc
    return Job(operation=op, files=list(files), options=parsed)


def overall_percent(index: int, total: int) -> int:
    """Share of files finished before ``index``, rounded half up."""
    return int(index / total * 100 + 0.5)


class BatchOrchestrator:
    """
    Runs every file of a job through the stage pipeline in submission order.

    A failing file becomes a ``file_error`` event and the loop moves on; only
    a disconnected consumer stops the job early.
    """

    def __init__(
        self,
        pipeline: StagePipeline,
        *,
        file_timeout: float = config.FILE_TIMEOUT_SECONDS,
    ) -> None:
        self.pipeline = pipeline
        self.file_timeout = file_timeout

    async def run(self, job: Job, channel: ProgressChannel) -> list[FileTask]:
        tasks = [FileTask(file=f, index=i) for i, f in enumerate(job.files)]
        total = len(tasks)
        logger.info("Batch started: %s × %d file(s)", job.operation.value, total)

        try:
            await channel.emit(StartEvent(total_files=total, operation=job.operation))
            for task in tasks:
                await channel.emit(
                    ProgressUpdateEvent(
                        current_file_index=task.index + 1,
                        total_files=total,
                        file_name=task.file.name,
                        overall_progress_percent=overall_percent(task.index, total),
                    )
                )
                await self._process(task, job, channel)

            succeeded = sum(1 for t in tasks if t.status is FileStatus.SUCCEEDED)
            await channel.emit(
                CompleteEvent(
                    processed_count=total,
                    total_files=total,
                    succeeded_count=succeeded,
                    failed_count=total - succeeded,
                    results=[_result_of(t) for t in tasks],
                )
            )
            logger.info("Batch complete: %d/%d file(s) succeeded", succeeded, total)

        except ChannelClosed:
            remaining = sum(1 for t in tasks if t.status is FileStatus.PENDING)
            logger.info("Client disconnected – abandoning %d remaining file(s)", remaining)
            _release(tasks, "Cancelled: client disconnected")

        except asyncio.CancelledError:
            _release(tasks, "Cancelled")
            raise

        except Exception as e:
            logger.error("Batch failed unexpectedly: %s", e, exc_info=True)
            try:
                await channel.emit(ErrorEvent(error=str(e)))
            except ChannelClosed:
                pass
            _release(tasks, str(e))

        finally:
            await channel.close()

        return tasks

    async def _process(self, task: FileTask, job: Job, channel: ProgressChannel) -> None:
        name = task.file.name
        task.status = FileStatus.RUNNING
        loop = asyncio.get_running_loop()
        deadline = asyncio.timeout(self.file_timeout if self.file_timeout > 0 else None)

        async def on_progress(percent: int) -> None:
            task.progress = percent
            task.stages.append(percent)
            event = FileProgressEvent(file_name=name, progress=percent, stage_label=stage_label(percent))
            # Time spent waiting on a slow reader is not charged to the file.
            expires = deadline.when()
            if expires is None:
                await channel.emit(event)
                return
            left = max(expires - loop.time(), 0)
            deadline.reschedule(None)
            try:
                await channel.emit(event)
            finally:
                deadline.reschedule(loop.time() + left)

        try:
            async with deadline:
                result = await self.pipeline.run(task.file, job.operation, job.options, on_progress)
        except ChannelClosed:
            raise
        except TimeoutError:
            self._fail(task, f"Processing {name} timed out after {self.file_timeout:g}s")
        except Exception as e:
            self._fail(task, str(e))
        else:
            task.status = FileStatus.SUCCEEDED
            task.result = result
            logger.info("File %d done: %s", task.index + 1, name)
            await channel.emit(FileCompleteEvent(file_name=name, success=True, result=result))
            return

        await channel.emit(FileErrorEvent(file_name=name, error=task.error or "Processing failed"))

    def _fail(self, task: FileTask, message: str) -> None:
        task.status = FileStatus.FAILED
        task.error = message
        logger.warning("File %d failed: %s – %s", task.index + 1, task.file.name, message)


async def stream_batch(
    orchestrator: BatchOrchestrator,
    operation: Optional[str],
    files: Sequence[InputFile],
    options: Optional[dict[str, Any]] = None,
    *,
    buffer_size: int = config.CHANNEL_BUFFER_SIZE,
    max_file_size: int = config.MAX_FILE_SIZE,
) -> AsyncIterator[ProgressEvent]:
    """
    Lazy, finite event sequence for one job.

    A rejected job yields a single ``error`` event. Otherwise the job runs in
    a background task and its events are relayed as they are emitted; closing
    this generator early detaches the channel and cancels the job.
    """
    try:
        job = validate_job(operation, files, options, max_file_size=max_file_size)
    except ValidationError as exc:
        logger.warning("Batch rejected: %s", exc)
        yield ErrorEvent(error=str(exc))
        return

    channel = ProgressChannel(buffer_size)
    runner = asyncio.create_task(orchestrator.run(job, channel))
    try:
        async for event in channel.events():
            yield event
        await runner
    finally:
        channel.detach()
        if not runner.done():
            runner.cancel()


def _result_of(task: FileTask) -> dict[str, Any]:
    if task.status is FileStatus.SUCCEEDED and task.result is not None:
        return task.result
    return {"fileName": task.file.name, "success": False, "error": task.error}


def _release(tasks: list[FileTask], reason: str) -> None:
    """Drop file buffers; a file caught mid-run ends as failed with ``reason``."""
    for task in tasks:
        if task.status is FileStatus.RUNNING:
            task.status = FileStatus.FAILED
            task.error = reason
        task.result = None
        task.file.content = b""
