"""Concurrency management for batch execution."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from siteaudit.config.settings import get_config

logger = logging.getLogger(__name__)


@dataclass
class ConcurrencyStats:
    """Current concurrency statistics."""

    active_batches: int
    max_concurrent_batches: int
    scheduled_tasks: int


class ConcurrencyManager:
    """
    Caps the number of batches executing at once across all audits.

    Batches beyond the limit wait on an asyncio semaphore rather than
    being rejected.
    """

    _instance: ConcurrencyManager | None = None
    _lock = threading.Lock()

    def __init__(self, max_concurrent: int):
        self.max_concurrent = max_concurrent
        self._semaphore: asyncio.Semaphore | None = None
        self._active_count = 0
        self._count_lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> ConcurrencyManager:
        """Get or create the singleton concurrency manager."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls(max_concurrent=get_config().max_concurrent_batches)
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        with cls._lock:
            cls._instance = None

    def _get_semaphore(self) -> asyncio.Semaphore:
        """Get or create the semaphore for the current event loop."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
        return self._semaphore

    async def acquire(self) -> None:
        """Acquire a slot for a batch (blocking until available)."""
        await self._get_semaphore().acquire()
        with self._count_lock:
            self._active_count += 1

    async def release_async(self) -> None:
        """Release a slot taken with acquire()."""
        self._get_semaphore().release()
        with self._count_lock:
            if self._active_count > 0:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        with self._count_lock:
            return self._active_count


BatchRunner = Callable[[str], Awaitable[None]]


class BatchExecutor:
    """
    Hands batches off to background tasks.

    ``submit`` returns immediately. Tasks are kept referenced until they
    finish, and each one holds a ConcurrencyManager slot while running.
    """

    def __init__(self, runner: BatchRunner, manager: ConcurrencyManager | None = None):
        self.runner = runner
        self.manager = manager or ConcurrencyManager.get_instance()
        self._tasks: set[asyncio.Task[None]] = set()

    def submit(self, audit_id: str, job: BatchRunner | None = None) -> asyncio.Task[None]:
        """Schedule ``job`` (the batch runner by default) for an audit."""
        task = asyncio.create_task(
            self._run(audit_id, job or self.runner), name=f"audit-batch-{audit_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, audit_id: str, job: BatchRunner) -> None:
        await self.manager.acquire()
        try:
            await job(audit_id)
        except Exception:
            logger.exception(f"Background batch for audit {audit_id} crashed")
        finally:
            await self.manager.release_async()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled batch (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_stats(self) -> ConcurrencyStats:
        return ConcurrencyStats(
            active_batches=self.manager.active_count,
            max_concurrent_batches=self.manager.max_concurrent,
            scheduled_tasks=self.pending,
        )
