"""
Bounded queue for detached post-insert work (embedding, indexing, entity linking).

Jobs are zero-argument coroutine functions. In "background" mode N worker
tasks consume an asyncio.Queue and submit() waits while the queue is full; in
"sync" mode submit() runs the job inline. Job failures are logged, never
raised to the submitter.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


class BackgroundQueue:
    def __init__(self, mode: str = "background", workers: int = 2, maxsize: int = 256):
        if mode not in ("background", "sync"):
            raise ValueError(f"Invalid background mode: {mode}")
        self.mode = mode
        self.workers = workers
        self.maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self.failed = 0

    def _ensure_started(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.maxsize)
        if not self._tasks:
            self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self.workers)]

    async def submit(self, job: Job, name: str = "job") -> None:
        if self.mode == "sync":
            await self._run(job, name)
            return
        self._ensure_started()
        await self._queue.put((job, name))

    async def _run(self, job: Job, name: str) -> None:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed += 1
            logger.warning(f"Background {name} failed: {e}", exc_info=True)

    async def _worker(self, index: int) -> None:
        while True:
            job, name = await self._queue.get()
            try:
                await self._run(job, name)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every submitted job has finished."""
        if self._queue is not None:
            await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def close(self) -> None:
        """Drain, then stop the workers."""
        await self.drain()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
