import asyncio

import pytest

from conftest import ScriptedSigningProvider, build_harness

from app.services.signing.worker import SigningWorker


async def _queue_jobs(harness, count):
    jobs = []
    for _ in range(count):
        application = await harness.ready_for_signing()
        jobs.append(await harness.orchestrator.start(application.id))
    return jobs


@pytest.mark.asyncio
async def test_run_once_processes_due_jobs(harness):
    [job] = await _queue_jobs(harness, 1)
    worker = SigningWorker(harness.orchestrator, concurrency=2)

    started = await worker.run_once()
    await worker.drain()

    assert started == 1
    assert harness.job(job.id).status == "awaiting_callback"


@pytest.mark.asyncio
async def test_run_once_respects_concurrency():
    harness = build_harness(provider=ScriptedSigningProvider(delay=0.05))
    jobs = await _queue_jobs(harness, 3)
    worker = SigningWorker(harness.orchestrator, concurrency=2)

    assert await worker.run_once() == 2
    assert await worker.run_once() == 0
    await worker.drain()
    assert await worker.run_once() == 1
    await worker.drain()

    assert {harness.job(job.id).status for job in jobs} == {"awaiting_callback"}


@pytest.mark.asyncio
async def test_started_worker_picks_up_new_jobs_and_stops(harness):
    worker = SigningWorker(harness.orchestrator, concurrency=1, poll_seconds=0.01, maintenance_seconds=60)
    worker.start()
    assert worker.running
    assert harness.orchestrator.wakeup == worker.wake

    [job] = await _queue_jobs(harness, 1)
    for _ in range(100):
        if harness.job(job.id).status == "awaiting_callback":
            break
        await asyncio.sleep(0.01)

    await worker.stop()

    assert harness.job(job.id).status == "awaiting_callback"
    assert not worker.running
    assert harness.orchestrator.wakeup is None


@pytest.mark.asyncio
async def test_maintenance_hooks_run_and_failures_are_contained(harness):
    calls = []

    async def broken_hook():
        calls.append("broken")
        raise RuntimeError("boom")

    async def reconcile_hook():
        calls.append("reconcile")

    worker = SigningWorker(harness.orchestrator, maintenance=(broken_hook, reconcile_hook))

    await worker.run_maintenance()

    assert calls == ["broken", "reconcile"]


@pytest.mark.asyncio
async def test_maintenance_recovers_stalled_jobs(harness):
    [job] = await _queue_jobs(harness, 1)
    await harness.jobs.claim(job.id, now=harness.clock())
    harness.clock.advance(minutes=10)
    worker = SigningWorker(harness.orchestrator)

    await worker.run_maintenance()

    assert harness.job(job.id).status == "queued"


@pytest.mark.asyncio
async def test_failed_processing_frees_its_slot(harness, monkeypatch):
    jobs = await _queue_jobs(harness, 2)
    worker = SigningWorker(harness.orchestrator, concurrency=1)
    real_process = harness.orchestrator.process
    calls = []

    async def flaky(job):
        calls.append(job.id)
        if len(calls) == 1:
            raise RuntimeError("database went away")
        return await real_process(job)

    monkeypatch.setattr(harness.orchestrator, "process", flaky)

    assert await worker.run_once() == 1
    await worker.drain()
    assert await worker.run_once() == 1
    await worker.drain()

    assert len(calls) == 2
    assert worker._in_flight == {}
    assert "awaiting_callback" in {harness.job(job.id).status for job in jobs}
