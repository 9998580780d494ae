import asyncio
from typing import AsyncIterator, Optional

from sitecheck.schemas.check import RunResult, StreamEvent


class StreamClosedError(Exception):
    """Raised when publishing to a stream that has already sent its final event."""


class UpdateStream:
    """Ordered delivery of run snapshots, ending with exactly one final event.

    The producer never waits on the consumer: every published snapshot is
    queued and handed out in order at the consumer's pace.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[StreamEvent]" = asyncio.Queue()
        self._closed = False
        self._drained = False
        self._final_event: Optional[StreamEvent] = None
        self._published = 0

    @property
    def closed(self) -> bool:
        """True once the final event has been published."""
        return self._closed

    @property
    def final_event(self) -> Optional[StreamEvent]:
        return self._final_event

    @property
    def published_count(self) -> int:
        return self._published

    def publish(self, result: RunResult) -> StreamEvent:
        if self._closed:
            raise StreamClosedError("Update stream already delivered its final event")
        if result.is_complete:
            raise ValueError("Complete runs must be published with close()")
        event = StreamEvent(type="update", data=result.snapshot())
        self._put(event)
        return event

    def close(self, result: RunResult) -> StreamEvent:
        if self._closed:
            raise StreamClosedError("Update stream already delivered its final event")
        if not result.is_complete:
            raise ValueError("Final event requires a complete run")
        event = StreamEvent(type="final", data=result.snapshot())
        self._closed = True
        self._final_event = event
        self._put(event)
        return event

    def _put(self, event: StreamEvent) -> None:
        self._published += 1
        self._queue.put_nowait(event)

    async def next_event(self) -> StreamEvent:
        if self._drained:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.is_final:
            self._drained = True
        return event

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self

    async def __anext__(self) -> StreamEvent:
        return await self.next_event()


__all__ = ["StreamClosedError", "UpdateStream"]
