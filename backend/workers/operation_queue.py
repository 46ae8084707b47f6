"""Bounded concurrency queue – FIFO admission for heavy async operations."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger("pdfbatch.queue")


@dataclass
class QueueSlot:
    operation: Callable[..., Any]
    args: tuple
    kwargs: dict
    future: asyncio.Future = field(repr=False)


class OperationQueue:
    """
    Admit at most ``max_concurrent`` operations at a time from an unbounded
    backlog, in strict FIFO order.

    ``enqueue`` returns a future that settles with the operation's result or
    exception. Cancelling that future before the slot is admitted skips the
    slot; admitted operations always run to settlement.

    All bookkeeping happens synchronously on the event loop, so the active
    count is never read and updated across an ``await``.
    """

    def __init__(self, max_concurrent: int = 3) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._backlog: deque[QueueSlot] = deque()
        self._active = 0
        self._tasks: set[asyncio.Task] = set()
        self.peak_active = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return len(self._backlog)

    def enqueue(self, operation: Callable[..., Any], *args: Any, **kwargs: Any) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        slot = QueueSlot(operation, args, kwargs, loop.create_future())
        self._backlog.append(slot)
        self._admit()
        return slot.future

    def shutdown(self) -> int:
        """Cancel every slot that has not been admitted yet. Returns how many."""
        cancelled = 0
        while self._backlog:
            slot = self._backlog.popleft()
            if slot.future.cancel():
                cancelled += 1
        if cancelled:
            logger.info("Queue shut down – %d pending operation(s) cancelled", cancelled)
        return cancelled

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _admit(self) -> None:
        while self._active < self.max_concurrent and self._backlog:
            slot = self._backlog.popleft()
            if slot.future.cancelled():
                continue
            self._active += 1
            self.peak_active = max(self.peak_active, self._active)
            task = asyncio.create_task(self._run(slot))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, slot: QueueSlot) -> None:
        try:
            result = slot.operation(*slot.args, **slot.kwargs)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            slot.future.cancel()
            raise
        except Exception as exc:
            if not slot.future.done():
                slot.future.set_exception(exc)
        else:
            if not slot.future.done():
                slot.future.set_result(result)
        finally:
            self._active -= 1
            self._admit()
