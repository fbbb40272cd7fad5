"""Tests for single and bulk session revocation."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from riskengine.domains.sessions.aggregator import LiveAggregator
from riskengine.domains.sessions.config import EngineConfig
from riskengine.domains.sessions.errors import (
    OperationTimeout,
    SessionNotFound,
    StoreUnavailable,
)
from riskengine.domains.sessions.registry import SessionRegistry
from riskengine.domains.sessions.revocation import RevocationCoordinator
from riskengine.domains.sessions.store import MemorySessionStore
from riskengine.shared.idempotency import IdempotencyCache
from tests.conftest import NOW, fixed_clock, make_session


class _PartiallyFailingStore(MemorySessionStore):
    """Memory store whose revoke fails for chosen session ids."""

    def __init__(self, failing: set[str]):
        super().__init__()
        self._failing = failing

    async def revoke_session(self, session_id, now):
        if session_id in self._failing:
            raise StoreUnavailable("revoke_session", session_id=session_id)
        return await super().revoke_session(session_id, now)


class _SlowStore(MemorySessionStore):
    async def revoke_session(self, session_id, now):
        await asyncio.sleep(1)
        return await super().revoke_session(session_id, now)


def _coordinator(store, **kwargs) -> RevocationCoordinator:
    return RevocationCoordinator(store, EngineConfig(), clock=fixed_clock, **kwargs)


class TestSingleRevoke:
    @pytest.mark.asyncio
    async def test_revoke_then_revoke_again(self, session_store):
        session_store.add_session(make_session("s1"))
        coordinator = _coordinator(session_store)

        first = await coordinator.revoke("s1")
        second = await coordinator.revoke("s1")

        assert first.revoked
        assert not second.revoked
        assert second.already_revoked
        stored = await session_store.get_session("s1")
        assert stored.expires_at == NOW
        assert not stored.is_active(NOW)

    @pytest.mark.asyncio
    async def test_unknown_session(self, session_store):
        with pytest.raises(SessionNotFound):
            await _coordinator(session_store).revoke("missing")

    @pytest.mark.asyncio
    async def test_bounded_execution(self):
        store = _SlowStore([make_session("s1")])
        coordinator = _coordinator(store, operation_timeout_seconds=0.05)
        with pytest.raises(OperationTimeout) as exc_info:
            await coordinator.revoke("s1")
        assert exc_info.value.operation == "revoke_session"


class TestBulkRevoke:
    @pytest.mark.asyncio
    async def test_revoke_all_reports_missing_sessions(self, session_store):
        session_store.add_session(make_session("s1"))
        result = await _coordinator(session_store).revoke_all(["s1", "missing", "s1"])
        assert result.succeeded == ["s1"]
        assert [(f.session_id, f.reason) for f in result.failed] == [("missing", "not_found")]

    @pytest.mark.asyncio
    async def test_ten_suspicious_with_two_failures(self):
        store = _PartiallyFailingStore(failing={"s3", "s7"})
        for i in range(10):
            store.add_session(make_session(f"s{i}", user_id=f"user-{i % 4}", is_suspicious=True))
        store.add_session(make_session("clean"))
        config = EngineConfig()
        aggregator = LiveAggregator(
            SessionRegistry(store, config, clock=fixed_clock), config=config, clock=fixed_clock
        )
        before = await aggregator.compute()

        result = await _coordinator(store).revoke_suspicious()

        assert result.succeeded_count == 8
        assert result.failed_count == 2
        assert {f.session_id for f in result.failed} == {"s3", "s7"}
        assert all("session store unavailable" in f.reason for f in result.failed)
        assert result.affected_users == 3

        after = await aggregator.compute()
        assert before.stats.suspicious_sessions == 10
        assert before.stats.suspicious_sessions - after.stats.suspicious_sessions == 8
        assert not (await store.get_session("clean")).is_revoked

    @pytest.mark.asyncio
    async def test_only_active_suspicious_sessions(self, session_store):
        session_store.add_session(make_session("live", is_suspicious=True))
        session_store.add_session(
            make_session("expired", is_suspicious=True, expires_at=NOW - timedelta(minutes=1))
        )
        session_store.add_session(make_session("clean"))
        result = await _coordinator(session_store).revoke_suspicious()
        assert result.succeeded == ["live"]

    @pytest.mark.asyncio
    async def test_limited_to_identities(self, session_store):
        session_store.add_session(make_session("a", is_suspicious=True))
        session_store.add_session(make_session("b", user_id="user-2", is_suspicious=True))
        result = await _coordinator(session_store).revoke_suspicious(user_ids=["user-2"])
        assert result.succeeded == ["b"]

    @pytest.mark.asyncio
    async def test_nothing_to_revoke(self, session_store):
        result = await _coordinator(session_store).revoke_suspicious()
        assert result.succeeded == []
        assert result.failed == []
        assert not result.duplicate

    @pytest.mark.asyncio
    async def test_notifies_each_affected_user(self, session_store):
        session_store.add_session(make_session("a", is_suspicious=True))
        session_store.add_session(make_session("b", is_suspicious=True))
        coordinator = _coordinator(session_store)
        coordinator.notify_affected_users = AsyncMock()
        await coordinator.revoke_suspicious()
        coordinator.notify_affected_users.assert_awaited_once_with({"user-1"})


class TestIdempotencyKey:
    @pytest.mark.asyncio
    async def test_repeated_key_is_duplicate(self, session_store):
        session_store.add_session(make_session("a", is_suspicious=True))
        redis = AsyncMock()
        redis.set.side_effect = [True, None]
        coordinator = _coordinator(session_store, idempotency=IdempotencyCache(redis))

        first = await coordinator.revoke_suspicious(idempotency_key="req-1")
        second = await coordinator.revoke_suspicious(idempotency_key="req-1")

        assert first.succeeded == ["a"]
        assert second.duplicate
        assert second.succeeded == []
        redis.set.assert_awaited_with("idemp:bulk-revoke:req-1", "1", nx=True, ex=300)

    @pytest.mark.asyncio
    async def test_redis_failure_still_revokes(self, session_store):
        session_store.add_session(make_session("a", is_suspicious=True))
        redis = AsyncMock()
        redis.set.side_effect = RedisConnectionError("connection refused")
        coordinator = _coordinator(session_store, idempotency=IdempotencyCache(redis))

        result = await coordinator.revoke_suspicious(idempotency_key="req-1")

        assert result.succeeded == ["a"]
        assert not result.duplicate

    @pytest.mark.asyncio
    async def test_no_key_skips_claim(self, session_store):
        redis = AsyncMock()
        coordinator = _coordinator(session_store, idempotency=IdempotencyCache(redis))
        await coordinator.revoke_suspicious()
        redis.set.assert_not_called()
