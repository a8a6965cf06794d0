from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from app.services.signing.orchestrator import SigningJobOrchestrator

logger = logging.getLogger(__name__)


class SigningWorker:
    """Background consumer for due signing jobs.

    Polls for queued jobs whose ``not_before`` has passed and processes up
    to ``concurrency`` of them at once. ``wake`` cuts the poll wait short
    when a job is queued. Every ``maintenance_seconds`` it requeues stalled
    submissions and runs the ``maintenance`` hooks (the webhook
    reconciliation sweep).
    """

    def __init__(
        self,
        orchestrator: SigningJobOrchestrator,
        *,
        concurrency: int = 4,
        poll_seconds: float = 2.0,
        maintenance_seconds: float = 60.0,
        maintenance: tuple[Callable[[], Awaitable[object]], ...] = (),
    ) -> None:
        self.orchestrator = orchestrator
        self.concurrency = max(concurrency, 1)
        self.poll_seconds = poll_seconds
        self.maintenance_seconds = maintenance_seconds
        self.maintenance = maintenance
        self._wake_event = asyncio.Event()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._in_flight: dict[object, asyncio.Task] = {}
        self._last_maintenance: float | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self.orchestrator.wakeup = self.wake
        self._task = asyncio.create_task(self.run(), name="signing-worker")
        logger.info("Signing worker started (concurrency=%s)", self.concurrency)

    def wake(self) -> None:
        self._wake_event.set()

    async def stop(self, timeout: float = 10.0) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._wake_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Signing worker did not stop within %.1fs, cancelling", timeout)
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)
        self._task = None
        if self.orchestrator.wakeup == self.wake:
            self.orchestrator.wakeup = None
        logger.info("Signing worker stopped")

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stopping.is_set():
            try:
                if self._last_maintenance is None or loop.time() - self._last_maintenance >= self.maintenance_seconds:
                    self._last_maintenance = loop.time()
                    await self.run_maintenance()
                self._wake_event.clear()
                await self.run_once()
            except Exception:
                logger.exception("Signing worker iteration failed")
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> int:
        """Dispatch due jobs into free slots; returns how many were started."""
        free = self.concurrency - len(self._in_flight)
        if free <= 0:
            return 0
        due = await self.orchestrator.jobs.list_due(self.orchestrator.clock(), limit=free + len(self._in_flight))
        started = 0
        for job in due:
            if job.id in self._in_flight or started >= free:
                continue
            self._in_flight[job.id] = asyncio.create_task(self._process(job))
            started += 1
        return started

    async def drain(self) -> None:
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def _process(self, job) -> None:
        try:
            await self.orchestrator.process(job)
        except Exception:
            logger.exception("Processing signing job %s failed", job.id)
        finally:
            self._in_flight.pop(job.id, None)
            self._wake_event.set()

    async def run_maintenance(self) -> None:
        try:
            await self.orchestrator.recover_stalled()
        except Exception:
            logger.exception("Stalled job recovery failed")
        for hook in self.maintenance:
            try:
                await hook()
            except Exception:
                logger.exception("Worker maintenance hook failed")
