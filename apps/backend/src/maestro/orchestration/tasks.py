"""Supervised background tasks: failures are reported, never silently dropped."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from ..log import get_logger

logger = get_logger(__name__)

ErrorCallback = Callable[[str, BaseException], Awaitable[None]]


class BackgroundRunner:
    """Keeps one asyncio task per key and routes crashes to ``on_error``."""

    def __init__(self, on_error: ErrorCallback | None = None) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._on_error = on_error

    def set_error_handler(self, on_error: ErrorCallback) -> None:
        self._on_error = on_error

    def spawn(self, key: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._supervise(key, coro), name=key)
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._forget(key, t))
        return task

    async def _supervise(self, key: str, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.info("Background task %s cancelled", key)
            raise
        except Exception as e:
            logger.exception("Background task %s crashed", key)
            if self._on_error is not None:
                await self._on_error(key, e)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def is_running(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    async def join(self, key: str) -> None:
        """Wait for the task under ``key`` if there is one."""
        task = self._tasks.get(key)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
