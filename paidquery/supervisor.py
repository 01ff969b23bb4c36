import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from . import metrics
from .models import Job, utc_now
from .store import JobStore
from .watcher import JobWatcher

logger = logging.getLogger(__name__)


class WatcherSupervisor:
    """Tracks one watcher task per job.

    Tasks are kept until they finish so they can be cancelled on shutdown,
    and any exception that escapes a watcher is logged instead of vanishing
    with the task.
    """

    def __init__(self, watcher: JobWatcher, max_active: int = 1000):
        self.watcher = watcher
        self.max_active = max_active
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def has_capacity(self) -> bool:
        return len(self._tasks) < self.max_active

    def start(self, job: Job) -> asyncio.Task:
        if job.secret in self._tasks:
            return self._tasks[job.secret]
        task = asyncio.create_task(self.watcher.watch(job), name=f"watch-{job.secret[:8]}")
        self._tasks[job.secret] = task
        task.add_done_callback(lambda t, secret=job.secret: self._on_done(secret, t))
        metrics.active_watchers.set(len(self._tasks))
        return task

    def _on_done(self, secret: str, task: asyncio.Task) -> None:
        self._tasks.pop(secret, None)
        metrics.active_watchers.set(len(self._tasks))
        if task.cancelled():
            logger.info("supervisor: watcher %s cancelled", secret[:8])
            return
        exc = task.exception()
        if exc is not None:
            metrics.error_count.inc()
            logger.error("supervisor: watcher %s crashed", secret[:8], exc_info=exc)

    def get_task(self, secret: str) -> Optional[asyncio.Task]:
        return self._tasks.get(secret)

    async def cancel(self, secret: str) -> bool:
        task = self._tasks.get(secret)
        if task is None:
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        # a task cancelled before its first step never ran its own cleanup
        await self.watcher.mark_cancelled(secret)
        return True

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("supervisor: cancelling %d watchers", len(tasks))
        secrets = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for secret in secrets:
            await self.watcher.mark_cancelled(secret)


async def evict_expired(store: JobStore, retention_seconds: float) -> int:
    cutoff = utc_now() - timedelta(seconds=retention_seconds)
    evicted = await store.evict_terminal(cutoff)
    if evicted:
        metrics.jobs_evicted_total.inc(evicted)
        logger.info("reaper: evicted %d finished jobs", evicted)
    return evicted


async def run_reaper(store: JobStore, retention_seconds: float, interval: float):
    """Periodically drop terminal jobs older than the retention window."""
    try:
        while True:
            try:
                await evict_expired(store, retention_seconds)
            except Exception:
                metrics.error_count.inc()
                logger.exception("reaper: eviction failed")
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        pass
