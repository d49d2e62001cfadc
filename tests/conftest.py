import random
from zoneinfo import ZoneInfo

import pytest
from fakes import FakeClock, FakeCrm, FakeFetcher, FakeRedis, RecordingSleep, make_items

from crm_enricher.auth.verify import auth_dependency
from crm_enricher.features.enrichment.engine import build_engine
from crm_enricher.features.enrichment.repository import EnrichmentStore
from crm_enricher.features.enrichment.services.human_patterns import (
    DEFAULT_FALLBACK,
    DEFAULT_PATTERNS,
    HumanPatternTable,
)
from crm_enricher.services.profile_transform import ProfileTransform


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(fake_redis):
    return EnrichmentStore(fake_redis, prefix="test")


@pytest.fixture
def pattern_table():
    return HumanPatternTable(DEFAULT_PATTERNS, DEFAULT_FALLBACK, ZoneInfo("UTC"))


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def crm():
    return FakeCrm(make_items(3))


@pytest.fixture
def engine(fake_redis, pattern_table, fetcher, crm, clock):
    return build_engine(
        redis=fake_redis,
        patterns=pattern_table,
        fetcher=fetcher,
        transformer=ProfileTransform(),
        crm=crm,
        now_fn=clock,
        sleep=RecordingSleep(clock),
        rng=random.Random(7),
    )
