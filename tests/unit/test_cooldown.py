from datetime import timedelta

import pytest

from crm_enricher.features.enrichment.domain import CooldownNotFoundError, Job, JobStatus
from crm_enricher.features.enrichment.services import CooldownManager

QUOTA = "acme.crm.dynamics.com"


@pytest.fixture
def cooldown(store, clock):
    return CooldownManager(store, cooldown_days=30, now_fn=clock)


def completed_job(clock) -> Job:
    return Job(
        job_id="job-1",
        quota_key=QUOTA,
        status=JobStatus.COMPLETED,
        created_at=clock.now - timedelta(hours=5),
        completed_at=clock.now,
    )


@pytest.mark.asyncio
async def test_no_record_means_no_cooldown(cooldown):
    status = await cooldown.status(QUOTA)

    assert status["has_cooldown"] is False
    assert status["days_remaining"] == 0
    assert await cooldown.is_blocked(QUOTA) is False


@pytest.mark.asyncio
async def test_days_remaining_rounds_up(cooldown, clock):
    await cooldown.on_completed(completed_job(clock))

    clock.advance(days=10, hours=1)

    assert await cooldown.days_remaining(QUOTA) == 20
    status = await cooldown.status(QUOTA)
    assert status["has_cooldown"] is True
    assert status["cooldown_end_date"] == status["completed_at"] + timedelta(days=30)


@pytest.mark.asyncio
async def test_cooldown_expires(cooldown, clock):
    await cooldown.on_completed(completed_job(clock))

    clock.advance(days=30)

    assert await cooldown.is_blocked(QUOTA) is False
    assert await cooldown.days_remaining(QUOTA) == 0


@pytest.mark.asyncio
async def test_override_keeps_history(cooldown, clock):
    await cooldown.on_completed(completed_job(clock))

    record = await cooldown.override(QUOTA, "urgent refresh", caller_id="user-9")

    assert record.overridden is True
    assert record.override_reason == "urgent refresh"
    assert record.overridden_by == "user-9"
    assert record.job_id == "job-1"
    assert await cooldown.is_blocked(QUOTA) is False
    assert (await cooldown.status(QUOTA))["overridden"] is True


@pytest.mark.asyncio
async def test_override_without_record(cooldown):
    with pytest.raises(CooldownNotFoundError):
        await cooldown.override(QUOTA, "nothing to override")


@pytest.mark.asyncio
async def test_reset_all_deletes_record(cooldown, clock):
    await cooldown.on_completed(completed_job(clock))

    assert await cooldown.reset_all(QUOTA) is True
    assert await cooldown.get_record(QUOTA) is None
    assert await cooldown.reset_all(QUOTA) is False
