"""Background execution of engine follow-up work."""

from __future__ import annotations

import asyncio
import contextvars
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Optional, Set, TypeVar

from .config import RunnerConfig
from .context import CorrelationContext, bind_context, current_context, reset_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AsyncRunner:
    """Worker pool for advance tasks.

    Tasks are scheduled on the running event loop and gated by a semaphore;
    blocking calls are pushed onto a thread pool. The correlation context
    active at submission time is installed around each task and cleared
    afterwards.
    """

    def __init__(
        self, max_concurrency: int = 16, max_workers: int = 8
    ) -> None:
        self._max_concurrency = max_concurrency
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._threads = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="flowgate-worker"
        )
        self._tasks: Set[asyncio.Task] = set()
        self._idle: Optional[asyncio.Event] = None
        self._closed = False

    @classmethod
    def from_config(cls, config: RunnerConfig) -> AsyncRunner:
        return cls(max_concurrency=config.max_concurrency, max_workers=config.max_workers)

    # ------------------------------------------------------------------
    def _ensure_primitives(self) -> None:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)
            self._idle = asyncio.Event()
            self._idle.set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        work: Callable[[], Awaitable[Any]],
        context: Optional[CorrelationContext] = None,
        name: Optional[str] = None,
    ) -> asyncio.Task:
        """Schedule ``work`` on the event loop.

        ``context`` defaults to the correlation context of the caller.
        """
        if self._closed:
            raise RuntimeError("Runner has been shut down")
        self._ensure_primitives()
        ctx = context if context is not None else current_context()
        loop = asyncio.get_running_loop()
        # fresh contextvars snapshot so the caller's scope cannot leak in
        task = loop.create_task(self._run(work, ctx), name=name, context=contextvars.Context())
        self._tasks.add(task)
        self._idle.clear()
        task.add_done_callback(self._on_done)
        return task

    async def _run(
        self, work: Callable[[], Awaitable[Any]], ctx: Optional[CorrelationContext]
    ) -> None:
        async with self._semaphore:
            token = bind_context(ctx)
            try:
                await work()
            except Exception:
                logger.exception("Background task failed")
            finally:
                reset_context(token)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not self._tasks and self._idle is not None:
            self._idle.set()

    async def run_blocking(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking callable on the thread pool with the current context."""
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        call = functools.partial(ctx.run, func, *args)
        return await loop.run_in_executor(self._threads, call)

    async def drain(self) -> None:
        """Wait until no task is queued or running, including spawned ones."""
        self._ensure_primitives()
        while self._tasks:
            await self._idle.wait()

    async def shutdown(self) -> None:
        await self.drain()
        self._closed = True
        self._threads.shutdown(wait=True)
