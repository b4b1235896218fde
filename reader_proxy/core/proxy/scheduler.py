# core/proxy/scheduler.py
"""Detached background jobs (cache revalidation)"""

import asyncio
import logging
from typing import Coroutine, Set

logger = logging.getLogger(__name__)


class BackgroundScheduler:
    """
    Runs fire-and-forget coroutines as asyncio tasks nobody awaits.

    Each job runs under a semaphore and a timeout. When max_pending jobs are
    already queued or running, new jobs are dropped.
    """

    def __init__(self, max_concurrent: int = 8, max_pending: int = 256, timeout: float = 30.0):
        """
        Args:
            max_concurrent: Jobs allowed to run at the same time
            max_pending: Jobs allowed to exist (running + waiting)
            timeout: Per-job timeout in seconds (None = no timeout)
        """
        self.max_concurrent = max_concurrent
        self.max_pending = max_pending
        self.timeout = timeout
        self._semaphore = None
        self._tasks: Set[asyncio.Task] = set()

        self.stats = {
            'submitted': 0,
            'completed': 0,
            'failed': 0,
            'timed_out': 0,
            'dropped': 0
        }

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine, name: str = "background") -> bool:
        """
        Schedules coro without awaiting it

        Returns:
            bool: False if the job was dropped
        """
        if len(self._tasks) >= self.max_pending:
            self.stats['dropped'] += 1
            logger.debug(f"Background job dropped ({self.pending} pending): {name}")
            coro.close()
            return False

        # The semaphore is bound to the running loop, so it is created lazily
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)

        task = asyncio.get_running_loop().create_task(self._run(coro, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.stats['submitted'] += 1
        return True

    async def _run(self, coro: Coroutine, name: str):
        async with self._semaphore:
            try:
                if self.timeout:
                    await asyncio.wait_for(coro, timeout=self.timeout)
                else:
                    await coro
                self.stats['completed'] += 1
            except asyncio.TimeoutError:
                self.stats['timed_out'] += 1
                logger.warning(f"⚠️ Background job timed out after {self.timeout}s: {name}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats['failed'] += 1
                logger.error(f"❌ Background job failed: {name}: {e}", exc_info=True)

    async def drain(self):
        """Waits until every job submitted so far has finished"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self):
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
