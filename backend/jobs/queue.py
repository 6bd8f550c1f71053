"""
Job queue feeding the single background worker.

Producers enqueue without waiting; the worker is the only consumer.
"""

import asyncio
import logging

from jobs.types import Job

logger = logging.getLogger(__name__)


class JobQueue:
    """Unbounded FIFO of jobs"""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    def enqueue(self, job: Job) -> None:
        self._queue.put_nowait(job)
        logger.debug(f"Enqueued {job.kind.value} job #{job.sequence}")

    async def get(self) -> Job:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        """Wait until every enqueued job has been taken and finished"""
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()
