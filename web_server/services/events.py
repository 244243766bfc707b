import asyncio
import logging
from typing import Awaitable

logger = logging.getLogger(__name__)


class EventSink:
    """Destination for fire-and-forget side effects.

    `submit` must return immediately. Failures are logged, never raised to
    the submitter.
    """

    def submit(self, label: str, job: Awaitable) -> None:
        raise NotImplementedError


class BackgroundEventSink(EventSink):
    """Runs each job as a detached asyncio task on the current loop."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def submit(self, label: str, job: Awaitable) -> None:
        task = asyncio.ensure_future(job)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(label, t))

    def _finished(self, label: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background job %s was cancelled", label)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background job %s failed", label, exc_info=exc)

    async def drain(self) -> None:
        """Wait for in-flight jobs, e.g. on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
