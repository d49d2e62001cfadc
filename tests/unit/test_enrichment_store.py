import pytest
from fakes import WEDNESDAY_AFTERNOON, FakeRedis, make_items

from crm_enricher.features.enrichment.domain import Job, JobStatus
from crm_enricher.features.enrichment.repository import (
    EnrichmentStore,
    StoreConflictError,
    StoreError,
)


class RacingRedis(FakeRedis):
    """Loses the next `losses` compare-and-set calls to a simulated writer."""

    def __init__(self, losses: int):
        super().__init__()
        self.losses = losses

    async def compare_and_set(self, key, expected, value, ttl_s=None):
        if expected is not None and self.losses > 0:
            self.losses -= 1
            return False
        return await super().compare_and_set(key, expected, value, ttl_s)


def new_job(job_id: str = "job-1") -> Job:
    return Job(
        job_id=job_id,
        quota_key="acme.crm.dynamics.com",
        participant_ids=["user-1"],
        items=make_items(2),
        created_at=WEDNESDAY_AFTERNOON,
    )


def to_processing(job: Job) -> bool:
    job.status = JobStatus.PROCESSING
    return True


@pytest.mark.asyncio
async def test_update_job_retries_lost_races():
    store = EnrichmentStore(RacingRedis(losses=2), prefix="t")
    await store.create_job(new_job())

    job = await store.update_job("job-1", to_processing)

    assert job.status == JobStatus.PROCESSING
    assert [j.job_id for j in await store.list_jobs(JobStatus.PROCESSING)] == ["job-1"]
    assert await store.list_jobs(JobStatus.PENDING) == []


@pytest.mark.asyncio
async def test_update_job_gives_up_eventually():
    store = EnrichmentStore(RacingRedis(losses=100), prefix="t")
    await store.create_job(new_job())

    with pytest.raises(StoreConflictError):
        await store.update_job("job-1", to_processing)


@pytest.mark.asyncio
async def test_update_without_change_does_not_write(store):
    await store.create_job(new_job())
    before = await store.redis.get(store.job_key("job-1"))

    job = await store.update_job("job-1", lambda job: False)

    assert job.status == JobStatus.PENDING
    assert await store.redis.get(store.job_key("job-1")) == before


@pytest.mark.asyncio
async def test_update_missing_job_returns_none(store):
    assert await store.update_job("missing", to_processing) is None


@pytest.mark.asyncio
async def test_job_ids_are_never_reused(store):
    await store.create_job(new_job())

    with pytest.raises(StoreError):
        await store.create_job(new_job())


@pytest.mark.asyncio
async def test_corrupt_record_is_reported(store):
    await store.redis.set_with_ttl(store.job_key("job-1"), '{"job_id": 1}')

    with pytest.raises(StoreError) as exc_info:
        await store.get_job("job-1")
    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_lease_is_exclusive_and_owned(store):
    assert await store.acquire_lease("job-1", "worker-a", 60) is True
    assert await store.acquire_lease("job-1", "worker-b", 60) is False
    assert await store.release_lease("job-1", "worker-b") is False
    assert await store.lease_holder("job-1") == "worker-a"

    assert await store.release_lease("job-1", "worker-a") is True
    assert await store.lease_holder("job-1") is None
