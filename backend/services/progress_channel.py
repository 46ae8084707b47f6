"""Progress channel – ordered server-push stream of progress events."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

from models import ProgressEvent
from services.errors import ChannelClosed

logger = logging.getLogger("pdfbatch.progress_channel")

_EOF = object()


class ProgressChannel:
    """
    Single-consumer, append-only event stream between a running job and the
    transport that delivers it to the client.

    The producer writes with ``emit`` and finishes with ``close``; the
    transport reads with ``events``. When the reader goes away before the
    end of the stream the channel is detached and the next ``emit`` raises
    ``ChannelClosed``.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = False
        self._detached = False
        self._consumed = False
        self.emitted = 0

    @property
    def closed(self) -> bool:
        return self._closed or self._detached

    async def emit(self, event: ProgressEvent) -> None:
        if self._closed or self._detached:
            raise ChannelClosed("progress channel is closed")
        await self._queue.put(event)
        # The reader may have left while we waited for room in the buffer.
        if self._detached:
            raise ChannelClosed("progress channel consumer disconnected")
        self.emitted += 1

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._detached:
            await self._queue.put(_EOF)

    def detach(self) -> None:
        """Mark the reader as gone and drop anything still buffered."""
        if not self._detached:
            self._detached = True
            logger.debug("Progress channel detached after %d event(s)", self.emitted)
        while not self._queue.empty():
            self._queue.get_nowait()

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in emission order until the channel is closed."""
        if self._consumed:
            raise RuntimeError("progress channel can only be consumed once")
        self._consumed = True
        try:
            while True:
                item = await self._queue.get()
                if item is _EOF:
                    return
                yield item
        finally:
            self.detach()


def encode_event(event: ProgressEvent) -> str:
    """Serialise one event as a server-sent-events ``data:`` frame."""
    payload = event.model_dump(mode="json", by_alias=True)
    return f"data: {json.dumps(payload)}\n\n"


async def sse_frames(events: AsyncIterator[ProgressEvent]) -> AsyncIterator[str]:
    """Adapt an event stream to SSE text frames."""
    async for event in events:
        yield encode_event(event)
