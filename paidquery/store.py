import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from .config import Settings
from .models import Job, JobState

logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = "paidquery:job:"


class JobStore(Protocol):
    """Registry of jobs keyed by secret. Writes replace the whole record."""

    async def create(self, job: Job) -> bool:
        """Insert `job`; False if its secret is already taken."""

    async def get(self, secret: str) -> Optional[Job]:
        ...

    async def compare_and_set(self, expected_state: JobState, job: Job) -> bool:
        """Replace the stored job only if it is still in `expected_state`."""

    async def evict_terminal(self, older_than: datetime) -> int:
        """Drop terminal jobs last updated before `older_than`."""

    async def count(self) -> int:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class InMemoryJobStore:
    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: Job) -> bool:
        async with self._lock:
            if job.secret in self._jobs:
                return False
            self._jobs[job.secret] = job
            return True

    async def get(self, secret: str) -> Optional[Job]:
        # records are immutable and replaced whole
        return self._jobs.get(secret)

    async def compare_and_set(self, expected_state: JobState, job: Job) -> bool:
        async with self._lock:
            current = self._jobs.get(job.secret)
            if current is None or current.state != expected_state:
                return False
            self._jobs[job.secret] = job
            return True

    async def evict_terminal(self, older_than: datetime) -> int:
        async with self._lock:
            stale = [s for s, j in self._jobs.items() if j.is_terminal and j.updated_at < older_than]
            for secret in stale:
                del self._jobs[secret]
            return len(stale)

    async def count(self) -> int:
        return len(self._jobs)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class RedisJobStore:
    """Jobs as JSON strings under one key each.

    Live jobs expire after `live_ttl` seconds, terminal ones after
    `retention` seconds, so Redis expiry does the eviction.
    """

    def __init__(self, redis_client, live_ttl: float, retention: float):
        self._redis = redis_client
        self._live_ttl = max(1, int(live_ttl))
        self._retention = max(1, int(retention))

    @staticmethod
    def _key(secret: str) -> str:
        return f"{JOB_KEY_PREFIX}{secret}"

    def _ttl_for(self, job: Job) -> int:
        return self._retention if job.is_terminal else self._live_ttl

    async def create(self, job: Job) -> bool:
        created = await self._redis.set(
            self._key(job.secret), job.model_dump_json(), nx=True, ex=self._ttl_for(job)
        )
        return bool(created)

    async def get(self, secret: str) -> Optional[Job]:
        raw = await self._redis.get(self._key(secret))
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    async def compare_and_set(self, expected_state: JobState, job: Job) -> bool:
        key = self._key(job.secret)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None or Job.model_validate_json(raw).state != expected_state:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, job.model_dump_json(), ex=self._ttl_for(job))
                await pipe.execute()
                return True
            except WatchError:
                logger.warning("store: concurrent write on %s, update dropped", key)
                return False

    async def evict_terminal(self, older_than: datetime) -> int:
        # key TTLs handle expiry
        return 0

    async def count(self) -> int:
        n = 0
        async for _ in self._redis.scan_iter(match=f"{JOB_KEY_PREFIX}*"):
            n += 1
        return n

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as exc:
            logger.warning("store: redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._redis.aclose()


def create_store(settings: Settings) -> JobStore:
    if settings.job_store_backend == "redis":
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        live_ttl = settings.payment_timeout_seconds + settings.job_retention_seconds
        return RedisJobStore(client, live_ttl=live_ttl, retention=settings.job_retention_seconds)
    return InMemoryJobStore()
