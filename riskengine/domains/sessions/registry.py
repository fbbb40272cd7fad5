"""Read-mostly view over the session population."""

from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

import structlog

from .config import EngineConfig, default_config
from .models import (
    Identity,
    Session,
    SessionHealth,
    TimelineEvent,
    TimelineEventKind,
)
from .store import SessionFilter, SessionStore

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(UTC)


def group_by_identity(sessions: Iterable[Session]) -> dict[str, list[Session]]:
    grouped: dict[str, list[Session]] = defaultdict(list)
    for session in sessions:
        grouped[session.user_id].append(session)
    return dict(grouped)


def classify_timeline_event(session: Session, now: datetime) -> tuple[TimelineEventKind, datetime, str]:
    """Pick the event kind, timestamp and detail text one session projects to."""
    if session.is_suspicious:
        return TimelineEventKind.SUSPICIOUS, session.created_at, "Suspicious activity detected"
    if session.revoked_at is not None:
        return TimelineEventKind.REVOKED, session.revoked_at, "Session revoked"
    if session.expires_at <= now:
        return TimelineEventKind.LOGOUT, session.expires_at, "Session expired"
    if session.last_activity_at is not None and session.last_activity_at > session.created_at:
        return TimelineEventKind.ACTIVITY, session.last_activity_at, "Session activity"
    return TimelineEventKind.LOGIN, session.created_at, "New session started"


class SessionRegistry:
    """Session counts, per-identity grouping and operator projections."""

    def __init__(
        self,
        store: SessionStore,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._config = config or default_config
        self._clock = clock

    @property
    def store(self) -> SessionStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    async def active_sessions(self, now: datetime | None = None) -> list[Session]:
        return await self._store.list_sessions(SessionFilter(active_at=now or self.now()))

    async def active_by_identity(self, now: datetime | None = None) -> dict[str, list[Session]]:
        return group_by_identity(await self.active_sessions(now))

    async def sessions_for_identity(self, user_id: str) -> list[Session]:
        return await self._store.list_sessions(SessionFilter(user_id=user_id), newest_first=True)

    async def active_suspicious(
        self, user_ids: Iterable[str] | None = None, now: datetime | None = None
    ) -> list[Session]:
        session_filter = SessionFilter(
            active_at=now or self.now(),
            suspicious=True,
            user_ids=tuple(sorted(set(user_ids))) if user_ids is not None else None,
        )
        return await self._store.list_sessions(session_filter)

    async def recent_logins(self, window: timedelta, now: datetime | None = None) -> list[Session]:
        since = (now or self.now()) - window
        return await self._store.list_sessions(SessionFilter(created_since=since), newest_first=True)

    async def identities(self, user_ids: Iterable[str]) -> dict[str, Identity]:
        return await self._store.get_identities(user_ids)

    async def timeline(self, now: datetime | None = None) -> list[TimelineEvent]:
        """Most recent session events first, limited to the configured window."""
        now = now or self.now()
        polling = self._config.polling
        sessions = await self._store.list_sessions(
            SessionFilter(created_since=now - timedelta(hours=polling.timeline_window_hours)),
            limit=polling.timeline_limit,
            newest_first=True,
        )
        identities = await self._store.get_identities(s.user_id for s in sessions)

        events = []
        for session in sessions:
            kind, timestamp, details = classify_timeline_event(session, now)
            identity = identities.get(session.user_id)
            label = (identity and (identity.email or identity.name)) or "Unknown User"
            events.append(
                TimelineEvent(
                    event_id=session.session_id,
                    user_id=session.user_id,
                    user_label=label,
                    kind=kind,
                    timestamp=timestamp,
                    details=details,
                    location=session.country or None,
                    device=session.user_agent or None,
                )
            )
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events

    async def health(self, now: datetime | None = None) -> SessionHealth:
        now = now or self.now()
        hour_ago = now - timedelta(hours=1)

        total = await self._store.count_sessions()
        active = await self._store.count_sessions(SessionFilter(active_at=now))
        created_last_hour = await self._store.count_sessions(SessionFilter(created_since=hour_ago))
        terminated_last_hour = await self._store.count_sessions(
            SessionFilter(expired_at=now, expired_since=hour_ago)
        )
        ended = await self._store.list_sessions(
            SessionFilter(expired_at=now, created_since=now - timedelta(days=7)),
            limit=1000,
            newest_first=True,
        )

        avg_minutes = 0.0
        if ended:
            total_seconds = sum((s.expires_at - s.created_at).total_seconds() for s in ended)
            avg_minutes = total_seconds / len(ended) / 60

        return SessionHealth(
            total_sessions=total,
            active_sessions=active,
            expired_sessions=total - active,
            created_last_hour=created_last_hour,
            terminated_last_hour=terminated_last_hour,
            avg_session_duration_minutes=round(avg_minutes, 1),
        )
