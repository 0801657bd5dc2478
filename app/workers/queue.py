"""In-process job queue drained by a fixed pool of asyncio worker tasks."""

import asyncio
from collections.abc import Awaitable, Callable

from app.core.errors import EnqueueFailure
from app.core.models import JobPayload
from app.core.utils import get_logger

logger = get_logger("statement-importer.queue")

JobHandler = Callable[[JobPayload], Awaitable[None]]


class JobQueue:
    """asyncio.Queue of item jobs with N workers, started and stopped by the app lifespan."""

    def __init__(self, handler: JobHandler | None = None, workers: int = 4, max_size: int = 1000) -> None:
        """Initialize the queue; `handler` may be attached later, before `start`."""
        self.handler = handler
        self.worker_count = max(1, workers)
        self.max_size = max_size
        self._queue: asyncio.Queue[JobPayload] | None = None
        self._workers: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def size(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self) -> None:
        if self.is_running:
            return
        if self.handler is None:
            msg = "JobQueue needs a handler before it can start"
            raise RuntimeError(msg)
        self._queue = asyncio.Queue(maxsize=self.max_size)
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"import-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.info(f"Job queue started with {self.worker_count} workers")

    async def stop(self) -> None:
        """Cancel the workers; jobs still waiting are dropped, their items stay pending and resume at next start."""
        if not self.is_running:
            return
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        dropped = self.size
        self._workers = []
        self._queue = None
        logger.info(f"Job queue stopped ({dropped} jobs not processed)")

    async def join(self) -> None:
        """Wait until every submitted job has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def enqueue(self, payload: JobPayload) -> None:
        """Submit a job; raises EnqueueFailure when the queue is stopped or full."""
        if self._queue is None or not self.is_running:
            msg = "Job queue is not running"
            raise EnqueueFailure(msg, user_message="Processing is unavailable right now. Please try again.")
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull as exc:
            msg = f"Job queue is full ({self.max_size} jobs)"
            raise EnqueueFailure(msg, user_message="Too many files are waiting. Please try again later.") from exc
        logger.info(f"Enqueued item {payload.item_id} ({payload.file_name})")

    async def _worker(self, index: int) -> None:
        queue = self._queue
        while True:
            payload = await queue.get()
            try:
                await self.handler(payload)
            except Exception:
                logger.exception(f"Worker {index} failed on item {payload.item_id}")
            finally:
                queue.task_done()
