"""Tests for population statistics and risk profile aggregation."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from riskengine.domains.sessions.aggregator import LiveAggregator, sort_profiles
from riskengine.domains.sessions.config import EngineConfig
from riskengine.domains.sessions.errors import StoreUnavailable
from riskengine.domains.sessions.models import RiskProfile
from riskengine.domains.sessions.registry import SessionRegistry
from tests.conftest import NOW, fixed_clock, make_session


@pytest.fixture
def aggregator(session_store) -> LiveAggregator:
    config = EngineConfig()
    return LiveAggregator(
        SessionRegistry(session_store, config, clock=fixed_clock), config=config, clock=fixed_clock
    )


def _populate(store):
    store.add_session(make_session("a1", is_suspicious=True))
    store.add_session(make_session("a2", is_suspicious=True))
    store.add_session(make_session("a3", created_at=NOW - timedelta(minutes=10)))
    store.add_session(make_session("b1", user_id="user-2", created_at=NOW - timedelta(hours=3)))
    store.add_session(make_session("c1", user_id="user-3", expires_at=NOW - timedelta(minutes=5)))


class TestCompute:
    @pytest.mark.asyncio
    async def test_population_totals(self, aggregator, session_store):
        _populate(session_store)
        snapshot = await aggregator.compute()
        stats = snapshot.stats
        assert stats.active_sessions == 4
        assert stats.suspicious_sessions == 2
        assert stats.distinct_active_users == 2
        # created within the last hour: a1, a2, a3 (created exactly an hour ago), c1
        assert stats.recent_logins == 4
        assert stats.computed_at == NOW

    @pytest.mark.asyncio
    async def test_profiles_ranked_by_risk_with_identity(self, aggregator, session_store):
        _populate(session_store)
        profiles = (await aggregator.compute()).profiles
        assert [p.user_id for p in profiles] == ["user-1", "user-2"]
        assert profiles[0].risk_score == 40
        assert profiles[0].email == "ada@example.com"
        assert profiles[1].risk_score == 0
        assert profiles[1].name == "Grace Hopper"

    @pytest.mark.asyncio
    async def test_empty_population(self, aggregator):
        snapshot = await aggregator.compute()
        assert snapshot.stats.active_sessions == 0
        assert snapshot.profiles == []


class TestSnapshot:
    @pytest.mark.asyncio
    async def test_outage_after_tick_keeps_last_stats(self, aggregator, session_store):
        _populate(session_store)
        await aggregator.tick()
        session_store.list_sessions = AsyncMock(side_effect=StoreUnavailable("list_sessions"))

        assert await aggregator.tick() is None
        snapshot = await aggregator.snapshot()
        assert snapshot.stats.active_sessions == 4

    @pytest.mark.asyncio
    async def test_outage_before_first_tick_is_raised(self, aggregator, session_store):
        session_store.list_sessions = AsyncMock(side_effect=StoreUnavailable("list_sessions"))
        with pytest.raises(StoreUnavailable):
            await aggregator.snapshot()


class TestSortProfiles:
    def _profiles(self):
        return [
            RiskProfile(user_id="u1", name="zed", active_sessions=1, risk_score=60),
            RiskProfile(user_id="u2", name="Amy", active_sessions=5, risk_score=0),
            RiskProfile(user_id="u3", email="mo@example.com", active_sessions=3, risk_score=20),
        ]

    def test_by_name_ascending(self):
        result = sort_profiles(self._profiles(), sort="name", descending=False)
        assert [p.user_id for p in result] == ["u2", "u3", "u1"]

    def test_by_sessions_descending(self):
        result = sort_profiles(self._profiles(), sort="sessions")
        assert [p.user_id for p in result] == ["u2", "u3", "u1"]

    def test_by_risk_descending(self):
        result = sort_profiles(self._profiles())
        assert [p.user_id for p in result] == ["u1", "u3", "u2"]

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown sort key"):
            sort_profiles(self._profiles(), sort="age")
