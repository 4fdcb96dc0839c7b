"""Bounded worker pool.

Classic dispatcher layout on asyncio queues:

    submit() -> work queue (2W) -> dispatcher -> idle worker inbox -> worker

Every submitted task gets a future; the pool completes it exactly once, with
the task's value or with the exception the task raised. Tasks are not
cancelled individually: a caller that stops waiting cancels its future and
the worker discards the late result.
"""

import asyncio
from typing import Any, Awaitable, Callable

from rext_obs.logging import get_logger

from .exceptions import PoolClosedError

logger = get_logger(__name__)

Task = Callable[[], Awaitable[Any]]

_QUIT = object()


class WorkerPool:
    """Fixed number of asyncio workers draining a FIFO work queue."""

    def __init__(self, workers: int = 6):
        if workers < 1:
            raise ValueError("worker pool needs at least one worker")
        self.workers = workers
        self.running = False
        self._work: asyncio.Queue | None = None
        self._idle: asyncio.Queue | None = None
        self._inboxes: list[asyncio.Queue] = []
        self._worker_tasks: list[asyncio.Task] = []
        self._dispatcher: asyncio.Task | None = None

    def start(self) -> None:
        """Spawn the dispatcher and the workers on the running loop."""
        if self.running:
            return
        self._work = asyncio.Queue(maxsize=2 * self.workers)
        self._idle = asyncio.Queue()
        self._inboxes = [asyncio.Queue(maxsize=1) for _ in range(self.workers)]
        self._worker_tasks = [
            asyncio.create_task(self._worker(i, inbox), name=f"rext-worker-{i}")
            for i, inbox in enumerate(self._inboxes)
        ]
        self._dispatcher = asyncio.create_task(self._dispatch(), name="rext-dispatcher")
        self.running = True
        logger.info("worker_pool_started", workers=self.workers)

    async def submit(self, task: Task) -> asyncio.Future:
        """Queue `task` and return the future carrying its outcome.

        Suspends while the work queue is full.

        Raises:
            PoolClosedError: Pool is not running
        """
        if not self.running:
            raise PoolClosedError("worker pool is not running")
        future = asyncio.get_running_loop().create_future()
        await self._work.put((task, future))
        return future

    async def _dispatch(self) -> None:
        item = None
        try:
            while True:
                item = await self._work.get()
                inbox = await self._idle.get()
                inbox.put_nowait(item)
                item = None
        except asyncio.CancelledError:
            if item is not None:
                _fail(item[1], PoolClosedError("worker pool stopped before the task ran"))
            raise

    async def _worker(self, index: int, inbox: asyncio.Queue) -> None:
        while True:
            await self._idle.put(inbox)
            item = await inbox.get()
            if item is _QUIT:
                return
            task, future = item
            if future.done():
                # Abandoned by the caller before it started.
                continue
            try:
                value = await task()
            except Exception as e:
                logger.debug("worker_task_failed", worker=index, error=str(e), error_type=type(e).__name__)
                _fail(future, e)
            else:
                if not future.done():
                    future.set_result(value)

    async def stop(self) -> None:
        """Stop accepting work, fail queued tasks and let workers exit.

        Tasks already picked by a worker run to completion first.
        """
        if not self.running:
            return
        self.running = False
        self._dispatcher.cancel()
        await asyncio.gather(self._dispatcher, return_exceptions=True)

        dropped = 0
        while not self._work.empty():
            _task, future = self._work.get_nowait()
            _fail(future, PoolClosedError("worker pool stopped before the task ran"))
            dropped += 1

        for inbox in self._inboxes:
            await inbox.put(_QUIT)
        await self.wait()
        logger.info("worker_pool_stopped", dropped=dropped)

    async def wait(self) -> None:
        """Block until every worker has exited."""
        await asyncio.gather(*self._worker_tasks)


def _fail(future: asyncio.Future, error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)
