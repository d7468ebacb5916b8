"""Bounded handoff between upstream stream consumption and the caller.

The forwarding task pushes raw provider chunks in with ``send``; the HTTP
response drains them by iterating the bridge. The queue is bounded, so a slow
caller stalls the producer before it reads more from upstream.
"""

import asyncio
from typing import AsyncIterator, Optional

STREAM_ERROR_SENTINEL = "Error streaming response"
DEFAULT_CAPACITY = 32

_END = object()


class StreamBridge:
    """Single-producer, single-consumer ordered chunk channel."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._queue: "asyncio.Queue[object]" = asyncio.Queue(maxsize=capacity)
        self._cancelled = False
        self._closed = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def send(self, chunk: str) -> bool:
        """Deliver a chunk, waiting for capacity.

        Returns False, without blocking, once the consumer has gone away.
        """
        if self._cancelled or self._closed:
            return False
        await self._queue.put(chunk)
        return True

    async def close(self) -> None:
        """Signal the end of the stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if not self._cancelled:
            await self._queue.put(_END)

    async def fail(self) -> None:
        """End the stream with the error sentinel as its final chunk."""
        await self.send(STREAM_ERROR_SENTINEL)
        await self.close()

    def cancel(self) -> None:
        """Mark the consumer as gone and unblock a waiting producer."""
        self._cancelled = True
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break

    def __aiter__(self) -> AsyncIterator[str]:
        return self.chunks()

    async def chunks(self) -> AsyncIterator[str]:
        """Yield chunks in send order until the stream is closed."""
        finished = False
        try:
            while True:
                item: Optional[object] = await self._queue.get()
                if item is _END:
                    finished = True
                    return
                yield item  # type: ignore[misc]
        finally:
            if not finished:
                self.cancel()
