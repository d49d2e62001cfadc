"""
Tests for the batch worker loop against in-memory collaborators.
"""

import asyncio
import random
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest
from fakes import FakeClock, FakeCrm, FakeFetcher, FakeRedis, RecordingSleep, live_session, make_items

from crm_enricher.features.enrichment.domain import HumanPattern, ItemStatus, JobStatus, PauseReason
from crm_enricher.features.enrichment.engine import build_engine
from crm_enricher.features.enrichment.services import (
    CollaboratorError,
    CredentialRefreshError,
    HumanPatternTable,
    ItemNotFoundError,
    QuotaExceededError,
    SessionInvalidError,
)
from crm_enricher.features.enrichment.services.human_patterns import DEFAULT_FALLBACK
from crm_enricher.services.profile_transform import ProfileTransform

QUOTA = "acme.crm.dynamics.com"


async def start_job(engine, items, callers=("user-1",)):
    for caller_id in callers:
        await engine.sessions.save_session(live_session(caller_id))
    job = None
    for caller_id in callers:
        job = await engine.lifecycle.create_or_attach(QUOTA, caller_id, items)
    return job


@pytest.mark.asyncio
async def test_all_items_succeed_and_job_completes(engine, crm):
    job = await start_job(engine, crm.items)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "completed"
    assert result.items_processed == 3
    job = await engine.lifecycle.get_job(job.job_id)
    assert job.status == JobStatus.COMPLETED
    assert (job.success_count, job.failure_count, job.processed_count) == (3, 0, 3)
    assert sorted(crm.updates) == ["contact-1", "contact-2", "contact-3"]
    assert crm.updates["contact-1"]["jobtitle"] == "Engineer"
    assert await engine.cooldown.is_blocked(QUOTA)
    assert await engine.store.lease_holder(job.job_id) is None


@pytest.mark.asyncio
async def test_worker_waits_the_sampled_delay_before_each_item(engine, crm):
    job = await start_job(engine, crm.items)

    await engine.worker.run(job.job_id)

    delays = engine.worker.sleep.delays
    assert len(delays) == 3
    assert all(45 <= delay <= 150 for delay in delays)
    job = await engine.lifecycle.get_job(job.job_id)
    assert [h.pattern_name for h in job.pattern_history] == ["afternoon_work"]
    assert job.pattern_history[0].items_processed == 3


@pytest.mark.asyncio
async def test_pattern_limit_pauses_job_mid_run():
    clock = FakeClock()
    capped = HumanPattern(name="work", hour_start=0, hour_end=23, max_items_per_occurrence=2)
    crm = FakeCrm(make_items(5))
    engine = build_engine(
        redis=FakeRedis(),
        patterns=HumanPatternTable([capped], DEFAULT_FALLBACK, ZoneInfo("UTC")),
        fetcher=FakeFetcher(),
        transformer=ProfileTransform(),
        crm=crm,
        now_fn=clock,
        sleep=RecordingSleep(clock),
        rng=random.Random(1),
    )
    job = await start_job(engine, crm.items)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "pattern_limit_reached"
    job = await engine.lifecycle.get_job(job.job_id)
    assert job.status == JobStatus.PAUSED
    assert job.pause_reason == PauseReason.PATTERN_LIMIT_REACHED
    assert job.processed_count == 2
    assert job.estimated_resume_time == datetime(2025, 1, 16, 0, 0, tzinfo=UTC)
    assert job.pattern_history[-1].exited_at is not None


@pytest.mark.asyncio
async def test_non_fatal_write_failure_moves_on(engine, crm):
    crm.errors["contact-2"] = CollaboratorError("Dataverse update_contact failed (HTTP 400)", 400)
    job = await start_job(engine, crm.items)

    await engine.worker.run(job.job_id)

    job = await engine.lifecycle.get_job(job.job_id)
    assert job.find_item("contact-2").status == ItemStatus.FAILED
    assert job.find_item("contact-2").last_error.startswith("Dataverse update_contact failed")
    assert job.find_item("contact-3").status == ItemStatus.COMPLETED
    assert "contact-3" in crm.updates
    assert (job.success_count, job.failure_count) == (2, 1)
    assert [entry.item_id for entry in job.errors] == ["contact-2"]
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_profile_is_an_item_failure(engine, crm, fetcher):
    fetcher.errors[crm.items[0].source_ref] = ItemNotFoundError("Profile contact-1 not found", 404)
    job = await start_job(engine, crm.items)

    await engine.worker.run(job.job_id)

    job = await engine.lifecycle.get_job(job.job_id)
    assert job.find_item("contact-1").status == ItemStatus.FAILED
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_rejected_session_pauses_job(engine, crm, fetcher):
    fetcher.errors[crm.items[1].source_ref] = SessionInvalidError("Profile source rejected", 401)
    job = await start_job(engine, crm.items)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "session_invalid"
    job = await engine.lifecycle.get_job(job.job_id)
    assert job.status == JobStatus.PAUSED
    assert job.pause_reason == PauseReason.SESSION_INVALID
    assert job.find_item("contact-2").status == ItemStatus.FAILED
    assert job.find_item("contact-3").status == ItemStatus.PENDING


@pytest.mark.asyncio
async def test_upstream_quota_pauses_until_tomorrow(engine, crm):
    crm.errors["contact-1"] = QuotaExceededError("CRM API limit reached", 429)
    job = await start_job(engine, crm.items)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "daily_limit_reached"
    job = await engine.lifecycle.get_job(job.job_id)
    assert job.pause_reason == PauseReason.DAILY_LIMIT_REACHED
    assert job.estimated_resume_time == datetime(2025, 1, 16, 8, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_credential_failures_escalate_to_failed(engine, crm, fetcher):
    for item in crm.items:
        fetcher.errors[item.source_ref] = CredentialRefreshError("CRM token refresh failed", 401)
    job = await start_job(engine, crm.items)

    for _ in range(2):
        result = await engine.worker.run(job.job_id)
        assert result.stop_reason == "token_refresh_failed"

    result = await engine.worker.run(job.job_id)

    job = await engine.lifecycle.get_job(job.job_id)
    assert job.status == JobStatus.FAILED
    assert job.credential_failures == 3
    assert job.failure_count == 3


@pytest.mark.asyncio
async def test_no_live_session_pauses_before_any_work(engine, crm):
    job = await engine.lifecycle.create_or_attach(QUOTA, "user-1", crm.items)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "session_invalid"
    assert result.items_processed == 0
    status = await engine.rate_limiter.limit_status(QUOTA)
    assert status["daily_count"] == 0


@pytest.mark.asyncio
async def test_any_participant_session_can_carry_the_job(engine, crm):
    await engine.sessions.save_session(live_session("user-2"))
    await engine.lifecycle.create_or_attach(QUOTA, "user-1", crm.items)
    job = await engine.lifecycle.create_or_attach(QUOTA, "user-2", [])

    await engine.worker.run(job.job_id)

    assert (await engine.lifecycle.get_job(job.job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_pause_window_pauses_with_resume_time(engine, crm, clock):
    clock.now = datetime(2025, 1, 15, 12, 30, tzinfo=UTC)
    job = await start_job(engine, crm.items)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "pause_period"
    job = await engine.lifecycle.get_job(job.job_id)
    assert job.estimated_resume_time == datetime(2025, 1, 15, 13, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_cancel_during_delay_stops_before_the_item(engine, crm):
    job = await start_job(engine, crm.items)

    async def cancel_while_waiting(seconds):
        await engine.lifecycle.cancel(job.job_id, "Cancelled by user")

    engine.worker.sleep = cancel_while_waiting

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "cancelled"
    assert result.items_processed == 0
    assert crm.updates == {}
    # The reservation made before the delay stays counted
    assert (await engine.rate_limiter.limit_status(QUOTA))["daily_count"] == 1


@pytest.mark.asyncio
async def test_second_worker_backs_off_while_lease_is_held(engine, crm):
    job = await start_job(engine, crm.items)
    await engine.store.acquire_lease(job.job_id, "other-worker", 60)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "lease_held"
    assert (await engine.lifecycle.get_job(job.job_id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_unexpected_error_fails_the_job(engine, crm):
    crm.errors["contact-1"] = RuntimeError("writer exploded")
    job = await start_job(engine, crm.items)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "failed"
    job = await engine.lifecycle.get_job(job.job_id)
    assert job.status == JobStatus.FAILED
    assert "writer exploded" in job.error
    assert await engine.store.lease_holder(job.job_id) is None


@pytest.mark.asyncio
async def test_malformed_profile_fails_only_that_item(engine, crm, fetcher):
    fetcher.profiles[crm.items[0].source_ref] = {"birthDate": {"month": "June", "day": 3}}
    job = await start_job(engine, crm.items)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "completed"
    job = await engine.lifecycle.get_job(job.job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.find_item("contact-1").status == ItemStatus.FAILED
    assert "birthDate.month" in job.find_item("contact-1").last_error
    assert (job.success_count, job.failure_count) == (2, 1)
    assert sorted(crm.updates) == ["contact-2", "contact-3"]


@pytest.mark.asyncio
async def test_transform_crash_is_an_item_failure(engine, crm):
    class BrokenTransform:
        async def transform(self, profile):
            raise RuntimeError("mapping exploded")

    engine.worker.transformer = BrokenTransform()
    job = await start_job(engine, crm.items)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "completed"
    job = await engine.lifecycle.get_job(job.job_id)
    assert job.failure_count == 3
    assert "mapping exploded" in job.find_item("contact-2").last_error
    assert crm.updates == {}


@pytest.mark.asyncio
async def test_worker_stops_when_its_lease_is_taken_over(engine, crm):
    job = await start_job(engine, crm.items)

    async def lose_lease_while_waiting(seconds):
        await engine.store.redis.delete(engine.store.lease_key(job.job_id))
        await engine.store.acquire_lease(job.job_id, "other-worker", 60)

    engine.worker.sleep = lose_lease_while_waiting

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "lease_lost"
    assert result.items_processed == 0
    assert crm.updates == {}
    assert await engine.store.lease_holder(job.job_id) == "other-worker"
    job = await engine.lifecycle.get_job(job.job_id)
    assert [item.status for item in job.items] == [ItemStatus.PENDING] * 3


@pytest.mark.asyncio
async def test_item_claimed_elsewhere_is_skipped(engine, crm, monkeypatch):
    job = await start_job(engine, crm.items)
    claim = engine.lifecycle.mark_item_processing
    raced: list[str] = []

    async def claim_after_someone_else(job_id, item_id):
        if not raced:
            raced.append(item_id)
            await claim(job_id, item_id)
        return await claim(job_id, item_id)

    monkeypatch.setattr(engine.lifecycle, "mark_item_processing", claim_after_someone_else)

    result = await engine.worker.run(job.job_id)

    assert raced == ["contact-1"]
    assert "contact-1" not in crm.updates
    assert sorted(crm.updates) == ["contact-2", "contact-3"]
    assert result.items_processed == 2
    job = await engine.lifecycle.get_job(job.job_id)
    assert job.find_item("contact-1").status == ItemStatus.PROCESSING
    assert job.status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_items_left_in_flight_are_retried(engine, crm):
    job = await start_job(engine, crm.items)
    await engine.lifecycle.mark_item_processing(job.job_id, "contact-1")

    await engine.worker.run(job.job_id)

    job = await engine.lifecycle.get_job(job.job_id)
    assert job.find_item("contact-1").status == ItemStatus.COMPLETED
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_terminal_job_is_not_touched(engine, crm):
    job = await start_job(engine, crm.items)
    await engine.lifecycle.cancel(job.job_id)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "cancelled"
    assert crm.updates == {}


@pytest.mark.asyncio
async def test_pool_runs_one_task_per_job(engine, crm):
    job = await start_job(engine, crm.items)

    assert engine.pool.spawn(job.job_id) is True
    assert engine.pool.spawn(job.job_id) is False
    assert engine.pool.running_job_ids() == [job.job_id]

    result = await engine.pool.wait(job.job_id)

    assert result.stop_reason == "completed"
    assert engine.pool.is_running(job.job_id) is False


class CrashingFetcher(FakeFetcher):
    """Hangs on the first `crashes` fetches so the test can kill the worker mid-item."""

    def __init__(self, crashes: int):
        super().__init__()
        self.crashes = crashes
        self.in_flight = asyncio.Event()

    async def fetch_profile(self, session, source_ref):
        if self.crashes > 0:
            self.crashes -= 1
            self.in_flight.set()
            await asyncio.Event().wait()
        return await super().fetch_profile(session, source_ref)


def job_counters(job):
    return (
        job.status,
        job.processed_count,
        job.success_count,
        job.failure_count,
        [(item.item_id, item.status) for item in job.items],
        [(h.pattern_name, h.items_processed) for h in job.pattern_history],
        job.daily_stats,
        job.errors,
    )


@pytest.mark.asyncio
async def test_repeated_crashes_end_like_a_single_run(engine, crm):
    baseline_clock = FakeClock()
    baseline_crm = FakeCrm(make_items(3))
    baseline = build_engine(
        redis=FakeRedis(),
        patterns=engine.patterns,
        fetcher=FakeFetcher(),
        transformer=ProfileTransform(),
        crm=baseline_crm,
        now_fn=baseline_clock,
        sleep=RecordingSleep(baseline_clock),
        rng=random.Random(7),
    )
    baseline_job = await start_job(baseline, baseline_crm.items)
    await baseline.worker.run(baseline_job.job_id)

    fetcher = CrashingFetcher(crashes=3)
    engine.worker.fetcher = fetcher
    job = await start_job(engine, crm.items)
    for _ in range(3):
        fetcher.in_flight.clear()
        task = asyncio.create_task(engine.worker.run(job.job_id))
        await fetcher.in_flight.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        crashed = await engine.lifecycle.get_job(job.job_id)
        assert crashed.find_item("contact-1").status == ItemStatus.PROCESSING
        await engine.lifecycle.record_respawn(job.job_id)

    result = await engine.worker.run(job.job_id)

    assert result.stop_reason == "completed"
    job = await engine.lifecycle.get_job(job.job_id)
    expected = await baseline.lifecycle.get_job(baseline_job.job_id)
    assert job_counters(job) == job_counters(expected)
    assert job.respawn_attempts == 0
    assert crm.updates == baseline_crm.updates
