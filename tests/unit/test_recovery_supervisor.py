"""
Tests for the recovery supervisor: startup rehydration, stale job respawn
and resumption of rate-limited pauses.
"""

import asyncio
from datetime import timedelta

import pytest
from fakes import live_session

from crm_enricher.features.enrichment.domain import JobStatus, PauseReason
from crm_enricher.features.enrichment.jobs import start_recovery_scheduler

QUOTA = "acme.crm.dynamics.com"


async def processing_job(engine, crm):
    await engine.sessions.save_session(live_session("user-1"))
    job = await engine.lifecycle.create_or_attach(QUOTA, "user-1", crm.items)
    return await engine.lifecycle.transition_to_processing(job.job_id)


@pytest.mark.asyncio
async def test_startup_rehydrates_orphaned_processing_jobs(engine, crm):
    job = await processing_job(engine, crm)

    metrics = await engine.supervisor.recover_on_startup()

    assert metrics["respawned"] == 1
    result = await engine.pool.wait(job.job_id)
    assert result.stop_reason == "completed"


@pytest.mark.asyncio
async def test_startup_skips_jobs_with_a_live_lease(engine, crm):
    job = await processing_job(engine, crm)
    await engine.store.acquire_lease(job.job_id, "other-process", 60)

    metrics = await engine.supervisor.recover_on_startup()

    assert metrics["respawned"] == 0
    assert engine.pool.is_running(job.job_id) is False


@pytest.mark.asyncio
async def test_fresh_processing_job_is_left_alone(engine, crm, clock):
    await processing_job(engine, crm)
    clock.advance(minutes=10)

    metrics = await engine.supervisor.scan_once()

    assert metrics["respawned"] == 0
    assert metrics["jobs_scanned"] == 1


@pytest.mark.asyncio
async def test_stale_job_is_respawned(engine, crm, clock):
    job = await processing_job(engine, crm)
    clock.advance(minutes=31)

    metrics = await engine.supervisor.scan_once()

    assert metrics["respawned"] == 1
    await engine.pool.wait(job.job_id)
    job = await engine.lifecycle.get_job(job.job_id)
    assert job.status == JobStatus.COMPLETED
    # Progress resets the respawn counter
    assert job.respawn_attempts == 0


@pytest.mark.asyncio
async def test_job_orphaned_too_often_is_failed(engine, crm, clock):
    job = await processing_job(engine, crm)
    for _ in range(engine.supervisor.max_respawn_attempts):
        await engine.lifecycle.record_respawn(job.job_id)
    clock.advance(minutes=31)

    metrics = await engine.supervisor.scan_once()

    assert metrics["failed"] == 1
    job = await engine.lifecycle.get_job(job.job_id)
    assert job.status == JobStatus.FAILED
    assert engine.pool.is_running(job.job_id) is False


@pytest.mark.asyncio
async def test_rate_paused_job_resumes_when_due(engine, crm, clock):
    job = await processing_job(engine, crm)
    await engine.lifecycle.transition_to_paused(
        job.job_id, PauseReason.HOURLY_LIMIT_REACHED, clock.now + timedelta(minutes=20)
    )

    clock.advance(minutes=10)
    assert (await engine.supervisor.scan_once())["resumed"] == 0

    clock.advance(minutes=15)
    assert (await engine.supervisor.scan_once())["resumed"] == 1

    await engine.pool.wait(job.job_id)
    assert (await engine.lifecycle.get_job(job.job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_credential_pause_waits_for_the_caller(engine, crm, clock):
    job = await processing_job(engine, crm)
    await engine.lifecycle.transition_to_paused(job.job_id, PauseReason.SESSION_INVALID)
    clock.advance(days=1)

    metrics = await engine.supervisor.scan_once()

    assert metrics["resumed"] == 0
    assert (await engine.lifecycle.get_job(job.job_id)).status == JobStatus.PAUSED


@pytest.mark.asyncio
async def test_overlapping_scan_is_skipped(engine):
    engine.supervisor.is_running = True

    result = await engine.supervisor.scan_once()

    assert result == {"skipped": True, "reason": "already_running"}


@pytest.mark.asyncio
async def test_status_reports_last_run(engine):
    assert engine.supervisor.get_status()["last_run_time"] is None

    await engine.supervisor.scan_once()

    status = engine.supervisor.get_status()
    assert status["job_name"] == "recovery_supervisor"
    assert status["last_run_time"] is not None
    assert status["last_run_metrics"]["jobs_scanned"] == 0


@pytest.mark.asyncio
async def test_scheduler_exits_on_cancel(engine):
    engine.supervisor.interval_seconds = 3600
    task = asyncio.create_task(start_recovery_scheduler(engine.supervisor))
    await asyncio.sleep(0)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
