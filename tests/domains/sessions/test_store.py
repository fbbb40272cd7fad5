"""Tests for the in-process session and alert stores and the SQL error wrapper."""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from riskengine.db.models import SessionRecord
from riskengine.domains.sessions.errors import SessionNotFound, StoreUnavailable
from riskengine.domains.sessions.models import (
    Threat,
    ThreatCategory,
    ThreatSeverity,
    ThreatStatus,
    TravelAlertStatus,
)
from riskengine.domains.sessions.store import SessionFilter, SqlSessionStore
from tests.conftest import NOW, make_session


class TestSessionFilter:
    def test_active_excludes_expired_and_revoked(self):
        live = make_session("live")
        expired = make_session("expired", expires_at=NOW - timedelta(minutes=1))
        revoked = make_session("revoked", revoked_at=NOW - timedelta(minutes=5))
        f = SessionFilter(active_at=NOW)
        assert f.matches(live)
        assert not f.matches(expired)
        assert not f.matches(revoked)

    def test_conjunction(self):
        f = SessionFilter(user_ids=("user-1",), suspicious=True, with_ip_only=True)
        assert f.matches(make_session("a", is_suspicious=True))
        assert not f.matches(make_session("b", is_suspicious=False))
        assert not f.matches(make_session("c", user_id="user-2", is_suspicious=True))
        assert not f.matches(make_session("d", is_suspicious=True, ip_address=None))


class TestMemorySessionStore:
    @pytest.mark.asyncio
    async def test_revoke_forces_expiry_to_now(self, session_store):
        session_store.add_session(make_session("s1"))
        result = await session_store.revoke_session("s1", NOW)
        assert result.revoked
        stored = await session_store.get_session("s1")
        assert stored.expires_at == NOW
        assert stored.revoked_at == NOW
        assert not stored.is_active(NOW)

    @pytest.mark.asyncio
    async def test_revoke_keeps_earlier_natural_expiry(self, session_store):
        session_store.add_session(
            make_session(
                "s1",
                created_at=NOW - timedelta(days=2),
                expires_at=NOW - timedelta(days=1),
            )
        )
        await session_store.revoke_session("s1", NOW)
        stored = await session_store.get_session("s1")
        assert stored.expires_at == NOW - timedelta(days=1)

    @pytest.mark.asyncio
    async def test_second_revoke_is_noop(self, session_store):
        session_store.add_session(make_session("s1"))
        await session_store.revoke_session("s1", NOW)
        again = await session_store.revoke_session("s1", NOW + timedelta(minutes=5))
        assert not again.revoked
        assert again.already_revoked
        assert again.revoked_at == NOW

    @pytest.mark.asyncio
    async def test_revoke_unknown_session(self, session_store):
        with pytest.raises(SessionNotFound):
            await session_store.revoke_session("missing", NOW)

    @pytest.mark.asyncio
    async def test_concurrent_revokes_apply_once(self, session_store):
        session_store.add_session(make_session("s1"))
        results = await asyncio.gather(
            *(session_store.revoke_session("s1", NOW) for _ in range(5))
        )
        assert sum(r.revoked for r in results) == 1

    @pytest.mark.asyncio
    async def test_flag_suspicious(self, session_store):
        session_store.add_session(make_session("s1"))
        assert await session_store.flag_suspicious("s1") is True
        assert await session_store.flag_suspicious("s1") is False
        assert (await session_store.get_session("s1")).is_suspicious

    @pytest.mark.asyncio
    async def test_flag_unknown_session_is_noop(self, session_store):
        assert await session_store.flag_suspicious("missing") is False
        assert await session_store.get_session("missing") is None

    @pytest.mark.asyncio
    async def test_previous_login_skips_sessions_without_address(self, session_store):
        session_store.add_session(make_session("old", created_at=NOW - timedelta(hours=3)))
        session_store.add_session(
            make_session("no-ip", created_at=NOW - timedelta(hours=2), ip_address=None)
        )
        current = make_session("new", created_at=NOW)
        session_store.add_session(current)
        previous = await session_store.previous_login(current)
        assert previous.session_id == "old"

    @pytest.mark.asyncio
    async def test_list_newest_first_with_limit(self, session_store):
        for i in range(5):
            session_store.add_session(
                make_session(f"s{i}", created_at=NOW - timedelta(minutes=10 - i))
            )
        newest = await session_store.list_sessions(limit=2, newest_first=True)
        assert [s.session_id for s in newest] == ["s4", "s3"]
        assert await session_store.count_sessions() == 5

    @pytest.mark.asyncio
    async def test_get_identities(self, session_store):
        identities = await session_store.get_identities(["user-1", "ghost"])
        assert set(identities) == {"user-1"}
        assert identities["user-1"].email == "ada@example.com"


def _threat(threat_id: str, status: ThreatStatus = ThreatStatus.ACTIVE) -> Threat:
    return Threat(
        threat_id=threat_id,
        category=ThreatCategory.EXCESSIVE_SESSIONS,
        label="Excessive Concurrent Sessions",
        severity=ThreatSeverity.MEDIUM,
        description="1 user(s) with unusually high number of active sessions",
        affected_users=1,
        affected_user_ids=["user-1"],
        status=status,
        detected_at=NOW,
        updated_at=NOW,
    )


class TestMemoryAlertStore:
    @pytest.mark.asyncio
    async def test_threat_status_compare_and_set(self, alert_store):
        await alert_store.save_threat(_threat("t1"))
        assert await alert_store.update_threat_status(
            "t1", [ThreatStatus.ACTIVE], ThreatStatus.RESOLVED, NOW
        )
        assert not await alert_store.update_threat_status(
            "t1", [ThreatStatus.ACTIVE], ThreatStatus.INVESTIGATING, NOW
        )
        stored = await alert_store.get_threat("t1")
        assert stored.status == ThreatStatus.RESOLVED
        assert stored.resolved_at == NOW

    @pytest.mark.asyncio
    async def test_save_threat_never_changes_status(self, alert_store):
        await alert_store.save_threat(_threat("t1"))
        await alert_store.update_threat_status(
            "t1", [ThreatStatus.ACTIVE], ThreatStatus.INVESTIGATING, NOW
        )
        refreshed = _threat("t1").model_copy(update={"affected_users": 4})
        await alert_store.save_threat(refreshed)
        stored = await alert_store.get_threat("t1")
        assert stored.status == ThreatStatus.INVESTIGATING
        assert stored.affected_users == 4

    @pytest.mark.asyncio
    async def test_open_threat_ignores_resolved(self, alert_store):
        await alert_store.save_threat(_threat("t1", status=ThreatStatus.RESOLVED))
        assert await alert_store.get_open_threat(ThreatCategory.EXCESSIVE_SESSIONS) is None
        await alert_store.save_threat(_threat("t2"))
        open_threat = await alert_store.get_open_threat(ThreatCategory.EXCESSIVE_SESSIONS)
        assert open_threat.threat_id == "t2"

    @pytest.mark.asyncio
    async def test_list_travel_alerts_empty(self, alert_store):
        assert await alert_store.list_travel_alerts(TravelAlertStatus.PENDING) == []


class _FailingDb:
    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    async def __aexit__(self, *exc):
        return False


class TestSqlStoreErrors:
    @pytest.mark.asyncio
    async def test_driver_errors_become_store_unavailable(self):
        store = SqlSessionStore(MagicMock(return_value=_FailingDb()))
        with pytest.raises(StoreUnavailable) as exc_info:
            await store.count_sessions()
        assert exc_info.value.operation == "count_sessions"
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_revoke_reports_session_context(self):
        store = SqlSessionStore(MagicMock(return_value=_FailingDb()))
        with pytest.raises(StoreUnavailable) as exc_info:
            await store.revoke_session("s1", NOW)
        assert exc_info.value.context == {"session_id": "s1"}


class _RowsDb:
    def __init__(self, rows):
        self._rows = rows

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, stmt):
        result = MagicMock()
        result.scalars.return_value.all.return_value = self._rows
        return result


def _row(session_id: str, **overrides) -> SessionRecord:
    values = {
        "id": session_id,
        "user_id": "user-1",
        "created_at": NOW - timedelta(hours=1),
        "expires_at": NOW + timedelta(hours=1),
        "is_suspicious": False,
    }
    values.update(overrides)
    return SessionRecord(**values)


class TestSqlRowConversion:
    @pytest.mark.asyncio
    async def test_malformed_row_is_skipped(self):
        rows = [
            _row("good"),
            _row("inverted", expires_at=NOW - timedelta(hours=2)),
            _row("also-good", is_suspicious=True),
        ]
        store = SqlSessionStore(MagicMock(return_value=_RowsDb(rows)))

        sessions = await store.list_sessions(SessionFilter(active_at=NOW))

        assert [s.session_id for s in sessions] == ["good", "also-good"]
        assert sessions[1].is_suspicious
