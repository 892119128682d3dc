from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional


class BaseQueue:
    def enqueue(self, job_id: str) -> None: ...  # pragma: no cover


class LocalQueue(BaseQueue):
    """Runs the processor for each job id as a detached task on the running event loop.

    Nothing raised by the processor escapes the task; it is logged here so that a
    crashed job never surfaces as an unhandled task exception.
    """

    def __init__(
        self,
        processor: Callable[[str], Awaitable[None]],
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._processor = processor
        self._tasks: set[asyncio.Task[None]] = set()
        self.log = logger or logging.getLogger(__name__)

    def enqueue(self, job_id: str) -> None:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run(job_id), name=f"generation-job-{job_id}")
        # The loop only keeps weak references to tasks.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, job_id: str) -> None:
        try:
            await self._processor(job_id)
        except Exception:
            self.log.exception("detached job task crashed", extra={"job_id": job_id})
