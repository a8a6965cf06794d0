from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.asyncio import Redis
from redis.exceptions import LockError

from app.core.exceptions import ConflictError
from app.utils.redis_client import redis_key

logger = logging.getLogger(__name__)


class ApplicationLocks(ABC):
    """Serializes stage and signing-job changes for one application."""

    @abstractmethod
    def hold(self, application_id) -> AsyncIterator[None]:
        raise NotImplementedError


class LocalApplicationLocks(ApplicationLocks):
    """One ``asyncio.Lock`` per application within this process."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, application_id) -> AsyncIterator[None]:
        key = str(application_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def held_keys(self) -> list[str]:
        return sorted(self._locks)


class RedisApplicationLocks(ApplicationLocks):
    """Cross-process locks for deployments running several API workers."""

    def __init__(self, redis: Redis, *, timeout_seconds: float, blocking_timeout_seconds: float | None = None) -> None:
        self._redis = redis
        self._timeout = timeout_seconds
        self._blocking_timeout = blocking_timeout_seconds if blocking_timeout_seconds is not None else timeout_seconds

    @asynccontextmanager
    async def hold(self, application_id) -> AsyncIterator[None]:
        lock = self._redis.lock(
            redis_key("locks", "application", application_id),
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise ConflictError(
                "Application is busy, retry shortly",
                details={"application_id": str(application_id)},
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as exc:
                # Lease expired while held; the work itself already finished.
                logger.warning("Application lock for %s expired before release: %s", application_id, exc)
