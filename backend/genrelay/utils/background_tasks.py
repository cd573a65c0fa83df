"""Background task utilities for async fire-and-forget and delayed operations."""

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class BackgroundTasks:
    """Owns fire-and-forget asyncio tasks so they can be drained or cancelled together.

    Usage:
        bg = BackgroundTasks()
        bg.run(refresh_variations())
        bg.later(0.5, select_image, image_id)   # delayed sync or async callable
        await bg.wait(timeout=30)               # wait for everything scheduled so far
        bg.cancel_all()                          # on shutdown

    Exceptions raised by tasks are logged, never propagated to the scheduler.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._counters: dict[str, int] = defaultdict(int)

    def _task_key(self, target: Any) -> str:
        """Generate a human-readable key for the task."""
        name = getattr(target, "__qualname__", None)
        if name:
            return str(name)

        code = getattr(target, "cr_code", None)
        if code:
            return str(code.co_name)

        return "task"

    def _spawn(self, coro: Awaitable[Any], key: str) -> asyncio.Task[Any]:
        self._counters[key] += 1
        name = f"bg:{key}:{self._counters[key]}"
        task: asyncio.Task[Any] = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background task failed", task_name=task.get_name(), error=str(exc))

    def run(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        """Schedule a coroutine as a background task."""
        return self._spawn(coro, self._task_key(coro))

    def later(self, delay: float, fn: Callable[..., Any], *args: Any) -> asyncio.Task[Any]:
        """Call `fn(*args)` after `delay` seconds. Awaits the result if `fn` is async."""

        async def _delayed() -> None:
            if delay > 0:
                await asyncio.sleep(delay)
            result = fn(*args)
            if inspect.isawaitable(result):
                await result

        return self._spawn(_delayed(), self._task_key(fn))

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def wait(self, *, timeout: float) -> None:
        """Wait until no task is pending, including tasks spawned while waiting.

        If timeout is exceeded, remaining tasks are cancelled.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("Background tasks timed out, cancelling", timeout=timeout, pending=len(pending))
                self.cancel_all()
                await asyncio.gather(*pending, return_exceptions=True)
                return
            await asyncio.wait(pending, timeout=remaining)

    def cancel_all(self) -> None:
        """Cancel every pending task."""
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
