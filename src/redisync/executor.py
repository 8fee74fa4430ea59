"""Bounded background task pool.

Backs every ``*_async`` operation and fire-and-forget publish. Each submitted
coroutine runs in its own asyncio task, but at most ``max_concurrency`` of
them execute at once; the rest wait on a semaphore.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from redisync.errors import OperationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackgroundExecutor:
    """Run coroutines in tracked, concurrency-limited tasks."""

    def __init__(self, max_concurrency: int = 32, name: str = "redisync") -> None:
        self.name = name
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task[object]] = set()
        self._accepting = True

    @property
    def pending(self) -> int:
        """Number of submitted tasks that have not finished."""
        return len(self._tasks)

    @property
    def is_accepting(self) -> bool:
        return self._accepting

    def submit(
        self, factory: Callable[[], Awaitable[T]], name: str | None = None
    ) -> asyncio.Task[T]:
        """Schedule ``factory()`` and return its task.

        Raises:
            OperationError: If the executor has been shut down.
        """
        if not self._accepting:
            raise OperationError(f"Executor {self.name} is shut down", operation=name)

        async def run() -> T:
            async with self._semaphore:
                return await factory()

        task: asyncio.Task[T] = asyncio.create_task(run(), name=name)
        self._tasks.add(task)  # type: ignore[arg-type]
        task.add_done_callback(self._tasks.discard)  # type: ignore[arg-type]
        return task

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop accepting work and wait for in-flight tasks.

        Tasks still running after ``timeout`` seconds are cancelled.
        """
        self._accepting = False
        if not self._tasks:
            return

        pending = list(self._tasks)
        logger.debug(f"Draining {len(pending)} background tasks from {self.name}")
        _, still_running = await asyncio.wait(pending, timeout=timeout)

        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(
                f"Cancelled {len(still_running)} background tasks still running after {timeout}s"
            )
            await asyncio.gather(*still_running, return_exceptions=True)
