import asyncio
import enum
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Union

from sitecheck.schemas.check import HistoryEntry, RunResult
from sitecheck.services.probe_executor import ProbeExecutor
from sitecheck.services.update_stream import UpdateStream

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[HistoryEntry], Union[None, Awaitable[None]]]


class SessionState(str, enum.Enum):
    """Lifecycle of one probe run inside a session."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CheckSession:
    """Drive one probe run at a time and guarantee it ends with one final event.

    The executor task owns the ``RunResult`` while it runs. ``stop()`` only
    touches the result after that task has fully finished, so there is never
    more than one writer.
    """

    def __init__(
        self,
        executor: ProbeExecutor,
        *,
        on_complete: Optional[CompletionCallback] = None,
    ) -> None:
        self._executor = executor
        self._on_complete = on_complete
        self._state = SessionState.IDLE
        self._url: Optional[str] = None
        self._result: Optional[RunResult] = None
        self._stream: Optional[UpdateStream] = None
        self._task: Optional[asyncio.Task] = None
        self._teardown: Optional[asyncio.Future] = None
        self._history: Optional[HistoryEntry] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def stream(self) -> Optional[UpdateStream]:
        return self._stream

    @property
    def history_entry(self) -> Optional[HistoryEntry]:
        """Summary of the last finished run, once its final event exists."""
        return self._history

    @property
    def is_running(self) -> bool:
        return self._state == SessionState.RUNNING

    async def start(self, url: str) -> UpdateStream:
        """Begin probing ``url``; any run still in flight is stopped first."""
        async with self._lock:
            if self._state == SessionState.RUNNING:
                logger.info("Stopping previous check of %s before starting %s", self._url, url)
                await self._stop_locked()

            self._url = url
            self._result = RunResult.new()
            self._stream = UpdateStream()
            self._history = None
            self._state = SessionState.RUNNING
            self._task = asyncio.create_task(
                self._execute(url, self._result, self._stream),
                name=f"sitecheck-probe:{url}",
            )
            return self._stream

    async def stop(self) -> bool:
        """Cancel the running probe. Returns False when there was nothing to cancel."""
        async with self._lock:
            return await self._stop_locked()

    async def wait(self) -> None:
        """Wait for the executor task, and any cancellation teardown, to finish."""
        pending = {job for job in (self._task, self._teardown) if job is not None}
        if pending:
            await asyncio.wait(pending)

    async def _stop_locked(self) -> bool:
        if self._state != SessionState.RUNNING:
            return False

        task, result, stream = self._task, self._result, self._stream
        if stream.closed:
            # The run already delivered its own final event
            await self.wait()
            return False

        self._state = SessionState.CANCELLED
        task.cancel()
        # Teardown runs to the end even if the caller of stop() is cancelled
        self._teardown = asyncio.ensure_future(self._finish_cancelled(self._url, task, result, stream))
        await asyncio.shield(self._teardown)
        return True

    async def _finish_cancelled(
        self,
        url: Optional[str],
        task: asyncio.Task,
        result: RunResult,
        stream: UpdateStream,
    ) -> None:
        await asyncio.wait({task})
        if not stream.closed:
            result.mark_cancelled()
            stream.close(result)
            await self._notify_complete(url, result)
        logger.info("Check of %s stopped by user", url)

    async def _execute(self, url: str, result: RunResult, stream: UpdateStream) -> None:
        await self._executor.run(url, result, stream)
        if stream.closed and self._state == SessionState.RUNNING and self._result is result:
            self._state = SessionState.COMPLETED
            await self._notify_complete(url, result)

    async def _notify_complete(self, url: Optional[str], result: RunResult) -> None:
        entry = result.to_history_entry(url or "")
        if self._result is result:
            self._history = entry
        if self._on_complete is None:
            return
        try:
            outcome: Any = self._on_complete(entry)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Check completion callback failed for %s", url)


async def check_website(
    url: str,
    executor: ProbeExecutor,
    *,
    on_complete: Optional[CompletionCallback] = None,
) -> Tuple[CheckSession, UpdateStream]:
    """Start a probe of ``url``; returns the session (``session.stop`` cancels) and its update stream."""
    session = CheckSession(executor, on_complete=on_complete)
    stream = await session.start(url)
    return session, stream


__all__ = [
    "CheckSession",
    "SessionState",
    "check_website",
]
