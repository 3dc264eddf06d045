"""
In-process webhook dispatcher.

Jobs are grouped into lanes keyed by (provider, subject). Within a lane jobs
run one at a time in submission order, so a later event for a repository is
never applied before an earlier one. Lanes run in parallel, bounded by one
global semaphore.

    dispatcher.submit(("github", "acme/api"), job)  -> Future
    dispatcher.submit(("github", "acme/web"), job)  -> runs concurrently
"""

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Hashable, Optional, Tuple

from skillsync.core.config import settings
from skillsync.core.logging_config import get_logger

logger = get_logger("skillsync.dispatcher")

Job = Callable[[], Awaitable[Any]]


class DispatcherClosedError(RuntimeError):
    """The dispatcher was stopped and accepts no more jobs."""


class WebhookDispatcher:

    def __init__(self, max_concurrency: Optional[int] = None, max_pending: Optional[int] = None):
        self.max_concurrency = max_concurrency or settings.WEBHOOK_MAX_CONCURRENCY
        self.max_pending = max_pending or settings.WEBHOOK_QUEUE_MAXSIZE
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._lanes: Dict[Hashable, Deque[Tuple[Job, asyncio.Future]]] = {}
        self._workers: Dict[Hashable, asyncio.Task] = {}
        self._pending = 0
        self._closed = False

    @property
    def pending(self) -> int:
        return self._pending

    def submit(self, key: Hashable, job: Job) -> asyncio.Future:
        """
        Queue ``job`` on the lane for ``key``. The returned future resolves
        with the job's result (or exception) once it has run.

        Raises:
            asyncio.QueueFull: If ``max_pending`` jobs are already waiting
            DispatcherClosedError: After stop()
        """
        if self._closed:
            raise DispatcherClosedError("Webhook dispatcher is stopped")
        if self._pending >= self.max_pending:
            raise asyncio.QueueFull(f"{self._pending} webhook jobs already pending")

        future = asyncio.get_running_loop().create_future()
        self._lanes.setdefault(key, deque()).append((job, future))
        self._pending += 1
        if key not in self._workers:
            self._workers[key] = asyncio.create_task(self._drain(key))
        return future

    async def _drain(self, key: Hashable) -> None:
        lane = self._lanes[key]
        try:
            while lane:
                job, future = lane.popleft()
                try:
                    async with self._semaphore:
                        result = await job()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as e:
                    logger.error(f"Webhook job failed on lane {key}: {type(e).__name__}: {e}")
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
                finally:
                    self._pending -= 1
        finally:
            self._workers.pop(key, None)
            if not lane:
                self._lanes.pop(key, None)

    async def join(self) -> None:
        """Wait until every queued job has run."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def stop(self) -> None:
        """Stop accepting jobs and cancel what is still queued or running."""
        self._closed = True
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        for lane in self._lanes.values():
            for _, future in lane:
                if not future.done():
                    future.cancel()
        self._lanes.clear()
        self._pending = 0
        if workers:
            logger.info(f"Webhook dispatcher stopped with {len(workers)} active lane(s)")
