"""PDF processor – queue-backed execution of heavy PDF work."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Optional, Sequence

import config
from models import InputFile, Operation, OperationOptions
from services.stage_pipeline import StagePipeline
from workers.operation_queue import OperationQueue

logger = logging.getLogger("pdfbatch.worker")

BatchProgress = Callable[[dict[str, Any]], None]
BatchErrorHook = Callable[[Exception, str], None]


class PdfProcessor:
    """
    Runs pipeline work and blocking PDF calls through one bounded queue so
    that at most ``max_concurrent`` heavy operations overlap.
    """

    def __init__(
        self,
        pipeline: StagePipeline,
        max_concurrent: int = config.MAX_CONCURRENT_OPERATIONS,
    ) -> None:
        self.pipeline = pipeline
        self.queue = OperationQueue(max_concurrent)

    async def process_with_monitoring(self, operation: Callable[..., Any], *args: Any) -> Any:
        """Run ``operation`` (in a thread when it is blocking) and log its duration."""
        name = getattr(operation, "__name__", "operation")
        started = time.perf_counter()
        try:
            if inspect.iscoroutinefunction(operation):
                return await operation(*args)
            return await asyncio.to_thread(operation, *args)
        finally:
            elapsed = (time.perf_counter() - started) * 1000
            logger.info("%s finished in %.1f ms", name, elapsed)

    async def queue_operation(self, operation: Callable[..., Any], *args: Any) -> Any:
        return await self.queue.enqueue(self.process_with_monitoring, operation, *args)

    async def process_batch(
        self,
        files: Sequence[InputFile],
        operation: Operation,
        options: Optional[OperationOptions] = None,
        *,
        on_progress: Optional[BatchProgress] = None,
        on_error: Optional[BatchErrorHook] = None,
    ) -> list[dict[str, Any]]:
        """
        Process all files concurrently (bounded by the queue). One file
        failing does not affect the others; results keep submission order.
        """
        total = len(files)
        completed = 0

        async def _one(file: InputFile) -> dict[str, Any]:
            nonlocal completed
            try:
                result = await self.queue_operation(self.pipeline.run, file, operation, options)
            except Exception as e:
                logger.warning("Batch item failed: %s – %s", file.name, e)
                if on_error:
                    on_error(e, file.name)
                return {"fileName": file.name, "success": False, "error": str(e)}

            completed += 1
            if on_progress:
                on_progress(
                    {
                        "completed": completed,
                        "total": total,
                        "percentage": completed / total * 100,
                        "currentFile": file.name,
                    }
                )
            return result

        return list(await asyncio.gather(*(_one(f) for f in files)))

    async def close(self) -> None:
        self.queue.shutdown()
