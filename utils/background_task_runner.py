"""
BackgroundTaskRunner: tracked, keyed background tasks

Settlement and confirmation polling run off the request path. Every task is
registered under a key ("settlement:<id>", "poll:<id>", "swap:<id>") so that:
- spawning a key that is already running returns the existing task
- an exception escaping the task always reaches its on_failure callback
- shutdown and tests can wait for everything that is in flight
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

FailureCallback = Callable[[BaseException], Any]


class BackgroundTaskRunner:
    """Keyed registry of asyncio tasks with guaranteed failure handling"""

    def __init__(self):
        self._active_tasks: Dict[str, asyncio.Task] = {}

    def spawn(
        self,
        key: str,
        coro_factory: Callable[[], Awaitable[Any]],
        on_failure: Optional[FailureCallback] = None,
    ) -> asyncio.Task:
        """Start coro_factory() under key unless a task with that key is still running"""
        existing = self._active_tasks.get(key)
        if existing is not None and not existing.done():
            logger.debug(f"BackgroundTaskRunner: {key} already running, reusing task")
            return existing

        loop = asyncio.get_running_loop()
        task = loop.create_task(self._supervise(key, coro_factory, on_failure), name=key)
        self._active_tasks[key] = task
        task.add_done_callback(lambda finished, k=key: self._discard(k, finished))
        logger.debug(f"BackgroundTaskRunner: spawned {key}")
        return task

    async def _supervise(
        self,
        key: str,
        coro_factory: Callable[[], Awaitable[Any]],
        on_failure: Optional[FailureCallback],
    ) -> Any:
        try:
            return await coro_factory()
        except asyncio.CancelledError:
            logger.info(f"BackgroundTaskRunner: {key} cancelled")
            raise
        except Exception as e:
            logger.error(f"❌ BACKGROUND_TASK_FAILED: {key}: {type(e).__name__}: {e}", exc_info=True)
            if on_failure is None:
                raise
            try:
                result = on_failure(e)
                if inspect.isawaitable(result):
                    await result
            except Exception as callback_error:
                logger.critical(
                    f"🚨 FAILURE_HANDLER_FAILED: {key}: {type(callback_error).__name__}: {callback_error}",
                    exc_info=True,
                )
            return None

    def _discard(self, key: str, task: asyncio.Task) -> None:
        if self._active_tasks.get(key) is task:
            del self._active_tasks[key]
        if not task.cancelled() and task.exception() is not None:
            # Only reachable without an on_failure callback; already logged in _supervise
            logger.debug(f"BackgroundTaskRunner: {key} finished with {task.exception()!r}")

    def get(self, key: str) -> Optional[asyncio.Task]:
        return self._active_tasks.get(key)

    def is_running(self, key: str) -> bool:
        task = self._active_tasks.get(key)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._active_tasks.values() if not task.done())

    async def wait_all(self, timeout: Optional[float] = None) -> None:
        """Wait until no tracked task is left, including tasks spawned by other tasks"""

        async def _drain():
            while self._active_tasks:
                await asyncio.gather(*list(self._active_tasks.values()), return_exceptions=True)

        if timeout is None:
            await _drain()
        else:
            await asyncio.wait_for(_drain(), timeout=timeout)

    async def cleanup(self) -> None:
        """Cancel every tracked task and wait for them to unwind"""
        tasks = [task for task in self._active_tasks.values() if not task.done()]
        if not tasks:
            return
        logger.info(f"Cancelling {len(tasks)} background tasks")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._active_tasks.clear()
