"""Session and alert storage collaborators.

The engine reads sessions and identities from the application's relational
store and writes back revocations, suspicious flags, travel alerts and
threats. ``SqlSessionStore``/``SqlAlertStore`` talk to PostgreSQL through
SQLAlchemy; ``MemorySessionStore``/``MemoryAlertStore`` keep everything
in-process for local runs and tests.

Every per-record mutation is atomic: a conditional UPDATE in SQL, a lock
in memory.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy import and_, case, desc, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from riskengine.db.models import Alert as AlertDB
from riskengine.db.models import SessionRecord, ThreatRecord, UserRecord

from .errors import SessionNotFound, StoreUnavailable
from .models import (
    Identity,
    RevocationResult,
    Session,
    Threat,
    ThreatCategory,
    ThreatStatus,
    TravelAlert,
    TravelAlertStatus,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class SessionFilter:
    """Conjunctive filter over session records. ``None`` means "any"."""

    user_id: str | None = None
    user_ids: tuple[str, ...] | None = None
    # Not expired and not revoked at this instant
    active_at: datetime | None = None
    # expires_at <= expired_at (natural expiry or revocation)
    expired_at: datetime | None = None
    # expires_at >= expired_since
    expired_since: datetime | None = None
    suspicious: bool | None = None
    created_since: datetime | None = None
    with_ip_only: bool = False

    def matches(self, session: Session) -> bool:
        if self.user_id is not None and session.user_id != self.user_id:
            return False
        if self.user_ids is not None and session.user_id not in self.user_ids:
            return False
        if self.active_at is not None and not session.is_active(self.active_at):
            return False
        if self.expired_at is not None and session.expires_at > self.expired_at:
            return False
        if self.expired_since is not None and session.expires_at < self.expired_since:
            return False
        if self.suspicious is not None and session.is_suspicious != self.suspicious:
            return False
        if self.created_since is not None and session.created_at < self.created_since:
            return False
        if self.with_ip_only and not session.ip_address:
            return False
        return True


def _revoked_expiry(created_at: datetime, expires_at: datetime, now: datetime) -> datetime:
    """Expiration forced by revocation: never later than now, never before creation."""
    if expires_at <= now:
        return expires_at
    return max(created_at, now)


# --- Interfaces ---


class SessionStore(ABC):
    """Read/write access to session records and the identity directory."""

    @abstractmethod
    async def list_sessions(
        self,
        session_filter: SessionFilter | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[Session]: ...

    @abstractmethod
    async def count_sessions(self, session_filter: SessionFilter | None = None) -> int: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None: ...

    @abstractmethod
    async def previous_login(self, session: Session) -> Session | None:
        """Most recent earlier login by the same identity with a known address."""

    @abstractmethod
    async def revoke_session(self, session_id: str, now: datetime) -> RevocationResult:
        """Force expiration to ``now``. A second call is a no-op.

        Raises SessionNotFound for unknown ids.
        """

    @abstractmethod
    async def flag_suspicious(self, session_id: str) -> bool:
        """Mark a session suspicious. Returns False if it was already flagged or is unknown."""

    @abstractmethod
    async def get_identities(self, user_ids: Iterable[str]) -> dict[str, Identity]: ...


class AlertStore(ABC):
    """Persistence for travel alerts and threats."""

    @abstractmethod
    async def insert_travel_alert(self, alert: TravelAlert) -> tuple[TravelAlert, bool]:
        """Insert unless an alert with the same dedup key exists.

        Returns the stored alert and whether this call created it.
        """

    @abstractmethod
    async def get_travel_alert(self, alert_id: str) -> TravelAlert | None: ...

    @abstractmethod
    async def list_travel_alerts(
        self, status: TravelAlertStatus | None = None
    ) -> list[TravelAlert]: ...

    @abstractmethod
    async def update_travel_alert_status(
        self,
        alert_id: str,
        expected: Iterable[TravelAlertStatus],
        new_status: TravelAlertStatus,
        now: datetime,
    ) -> bool:
        """Compare-and-set. Returns False if the current status is not expected."""

    @abstractmethod
    async def get_open_threat(self, category: ThreatCategory) -> Threat | None:
        """The category's threat that is still active or investigating, if any."""

    @abstractmethod
    async def save_threat(self, threat: Threat) -> None:
        """Insert a new threat or refresh an existing one's detection fields.

        Status is never changed here; use ``update_threat_status``.
        """

    @abstractmethod
    async def get_threat(self, threat_id: str) -> Threat | None: ...

    @abstractmethod
    async def list_threats(self, status: ThreatStatus | None = None) -> list[Threat]: ...

    @abstractmethod
    async def update_threat_status(
        self,
        threat_id: str,
        expected: Iterable[ThreatStatus],
        new_status: ThreatStatus,
        now: datetime,
    ) -> bool:
        """Compare-and-set. Returns False if the current status is not expected."""


# --- SQL implementations ---


@asynccontextmanager
async def _store_errors(operation: str, **context: Any) -> AsyncIterator[None]:
    try:
        yield
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("session_store_error", operation=operation, error=str(exc), **context)
        raise StoreUnavailable(operation, cause=exc, **context) from exc


def _session_from_row(row: SessionRecord) -> Session:
    return Session(
        session_id=row.id,
        user_id=row.user_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_activity_at=row.last_activity_at,
        ip_address=row.ip_address,
        city=row.city,
        country=row.country,
        user_agent=row.user_agent,
        is_suspicious=bool(row.is_suspicious),
        revoked_at=row.revoked_at,
    )


def _sessions_from_rows(rows: Iterable[SessionRecord]) -> list[Session]:
    """Convert rows one at a time; a malformed row is logged and skipped."""
    sessions = []
    for row in rows:
        try:
            sessions.append(_session_from_row(row))
        except ValidationError as exc:
            logger.warning(
                "session_row_invalid",
                session_id=row.id,
                user_id=row.user_id,
                error=str(exc),
            )
    return sessions


def _session_conditions(session_filter: SessionFilter) -> list[Any]:
    conditions: list[Any] = []
    f = session_filter
    if f.user_id is not None:
        conditions.append(SessionRecord.user_id == f.user_id)
    if f.user_ids is not None:
        conditions.append(SessionRecord.user_id.in_(f.user_ids))
    if f.active_at is not None:
        conditions.append(SessionRecord.expires_at > f.active_at)
        conditions.append(SessionRecord.revoked_at.is_(None))
    if f.expired_at is not None:
        conditions.append(SessionRecord.expires_at <= f.expired_at)
    if f.expired_since is not None:
        conditions.append(SessionRecord.expires_at >= f.expired_since)
    if f.suspicious is not None:
        conditions.append(SessionRecord.is_suspicious.is_(f.suspicious))
    if f.created_since is not None:
        conditions.append(SessionRecord.created_at >= f.created_since)
    if f.with_ip_only:
        conditions.append(SessionRecord.ip_address.is_not(None))
    return conditions


class SqlSessionStore(SessionStore):
    """Session store backed by the ``sessions`` and ``users`` tables."""

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_sessions(
        self,
        session_filter: SessionFilter | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[Session]:
        stmt = select(SessionRecord).where(*_session_conditions(session_filter or SessionFilter()))
        if newest_first:
            stmt = stmt.order_by(desc(SessionRecord.created_at))
        else:
            stmt = stmt.order_by(SessionRecord.created_at)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with _store_errors("list_sessions"):
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                rows = result.scalars().all()
        return _sessions_from_rows(rows)

    async def count_sessions(self, session_filter: SessionFilter | None = None) -> int:
        stmt = select(func.count()).select_from(SessionRecord).where(
            *_session_conditions(session_filter or SessionFilter())
        )
        async with _store_errors("count_sessions"):
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                return int(result.scalar_one())

    async def get_session(self, session_id: str) -> Session | None:
        async with _store_errors("get_session", session_id=session_id):
            async with self._session_factory() as db:
                row = await db.get(SessionRecord, session_id)
        return _session_from_row(row) if row is not None else None

    async def previous_login(self, session: Session) -> Session | None:
        stmt = (
            select(SessionRecord)
            .where(
                SessionRecord.user_id == session.user_id,
                SessionRecord.id != session.session_id,
                SessionRecord.created_at <= session.created_at,
                SessionRecord.ip_address.is_not(None),
            )
            .order_by(desc(SessionRecord.created_at), desc(SessionRecord.id))
            .limit(1)
        )
        async with _store_errors(
            "previous_login", user_id=session.user_id, session_id=session.session_id
        ):
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                row = result.scalar_one_or_none()
        return _session_from_row(row) if row is not None else None

    async def revoke_session(self, session_id: str, now: datetime) -> RevocationResult:
        forced_expiry = case(
            (SessionRecord.expires_at <= now, SessionRecord.expires_at),
            (SessionRecord.created_at > now, SessionRecord.created_at),
            else_=now,
        )
        stmt = (
            update(SessionRecord)
            .where(SessionRecord.id == session_id, SessionRecord.revoked_at.is_(None))
            .values(expires_at=forced_expiry, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        async with _store_errors("revoke_session", session_id=session_id):
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                await db.commit()
                if result.rowcount == 1:
                    return RevocationResult(session_id=session_id, revoked=True, revoked_at=now)

                row = await db.get(SessionRecord, session_id)
        if row is None:
            raise SessionNotFound(session_id)
        return RevocationResult(
            session_id=session_id,
            revoked=False,
            already_revoked=True,
            revoked_at=row.revoked_at,
        )

    async def flag_suspicious(self, session_id: str) -> bool:
        stmt = (
            update(SessionRecord)
            .where(SessionRecord.id == session_id, SessionRecord.is_suspicious.is_(False))
            .values(is_suspicious=True)
            .execution_options(synchronize_session=False)
        )
        async with _store_errors("flag_suspicious", session_id=session_id):
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                changed = result.rowcount == 1
                await db.commit()
        return changed

    async def get_identities(self, user_ids: Iterable[str]) -> dict[str, Identity]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        stmt = select(UserRecord).where(UserRecord.id.in_(ids))
        async with _store_errors("get_identities", count=len(ids)):
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                rows = result.scalars().all()
        return {
            r.id: Identity(user_id=r.id, name=r.name, email=r.email, role=r.role) for r in rows
        }


def _alert_to_row(alert: TravelAlert) -> AlertDB:
    return AlertDB(
        alert_id=alert.alert_id,
        dedup_key=alert.dedup_key,
        user_id=alert.user_id,
        alert_type="impossible_travel",
        severity=alert.severity.value,
        required_speed_kmh=alert.required_speed_kmh,
        details={
            "previous_session_id": alert.previous_session_id,
            "session_id": alert.session_id,
            "previous_location": alert.previous_location.model_dump(),
            "current_location": alert.current_location.model_dump(),
            "distance_km": alert.distance_km,
            "hours_elapsed": alert.hours_elapsed,
            "login_at": alert.login_at.isoformat(),
        },
        status=alert.status.value,
        created_at=alert.detected_at,
        resolved_at=alert.resolved_at,
    )


def _alert_from_row(row: AlertDB) -> TravelAlert:
    details = row.details or {}
    return TravelAlert(
        alert_id=row.alert_id,
        dedup_key=row.dedup_key,
        user_id=row.user_id,
        previous_session_id=details.get("previous_session_id", ""),
        session_id=details.get("session_id", ""),
        previous_location=details.get("previous_location", {}),
        current_location=details.get("current_location", {}),
        distance_km=details.get("distance_km", 0.0),
        hours_elapsed=details.get("hours_elapsed", 0.0),
        required_speed_kmh=row.required_speed_kmh,
        severity=row.severity,
        status=row.status,
        login_at=details.get("login_at") or row.created_at,
        detected_at=row.created_at,
        resolved_at=row.resolved_at,
    )


def _threat_from_row(row: ThreatRecord) -> Threat:
    return Threat(
        threat_id=row.threat_id,
        category=row.category,
        label=row.label,
        severity=row.severity,
        description=row.description,
        affected_users=row.affected_users,
        affected_user_ids=list(row.affected_user_ids or []),
        status=row.status,
        detected_at=row.detected_at,
        updated_at=row.updated_at,
        resolved_at=row.resolved_at,
    )


class SqlAlertStore(AlertStore):
    """Alert store backed by the ``alerts`` and ``threats`` tables."""

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _get_alert_by_dedup_key(self, db: AsyncSession, dedup_key: str) -> AlertDB | None:
        result = await db.execute(select(AlertDB).where(AlertDB.dedup_key == dedup_key))
        return result.scalar_one_or_none()

    async def insert_travel_alert(self, alert: TravelAlert) -> tuple[TravelAlert, bool]:
        async with _store_errors("insert_travel_alert", dedup_key=alert.dedup_key):
            async with self._session_factory() as db:
                existing = await self._get_alert_by_dedup_key(db, alert.dedup_key)
                if existing is not None:
                    return _alert_from_row(existing), False
                db.add(_alert_to_row(alert))
                try:
                    await db.commit()
                except IntegrityError:
                    # Concurrent insert of the same pair won the race
                    await db.rollback()
                    existing = await self._get_alert_by_dedup_key(db, alert.dedup_key)
                    if existing is None:
                        raise
                    logger.debug("travel_alert_insert_raced", dedup_key=alert.dedup_key)
                    return _alert_from_row(existing), False
        return alert, True

    async def get_travel_alert(self, alert_id: str) -> TravelAlert | None:
        async with _store_errors("get_travel_alert", alert_id=alert_id):
            async with self._session_factory() as db:
                result = await db.execute(select(AlertDB).where(AlertDB.alert_id == alert_id))
                row = result.scalar_one_or_none()
        return _alert_from_row(row) if row is not None else None

    async def list_travel_alerts(
        self, status: TravelAlertStatus | None = None
    ) -> list[TravelAlert]:
        stmt = select(AlertDB).where(AlertDB.alert_type == "impossible_travel")
        if status is not None:
            stmt = stmt.where(AlertDB.status == status.value)
        stmt = stmt.order_by(desc(AlertDB.required_speed_kmh))
        async with _store_errors("list_travel_alerts"):
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                rows = result.scalars().all()
        return [_alert_from_row(r) for r in rows]

    async def update_travel_alert_status(
        self,
        alert_id: str,
        expected: Iterable[TravelAlertStatus],
        new_status: TravelAlertStatus,
        now: datetime,
    ) -> bool:
        stmt = (
            update(AlertDB)
            .where(
                AlertDB.alert_id == alert_id,
                AlertDB.status.in_([s.value for s in expected]),
            )
            .values(status=new_status.value, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        async with _store_errors("update_travel_alert_status", alert_id=alert_id):
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                changed = result.rowcount == 1
                await db.commit()
        return changed

    async def get_open_threat(self, category: ThreatCategory) -> Threat | None:
        stmt = (
            select(ThreatRecord)
            .where(
                ThreatRecord.category == category.value,
                ThreatRecord.status.in_(
                    [ThreatStatus.ACTIVE.value, ThreatStatus.INVESTIGATING.value]
                ),
            )
            .order_by(desc(ThreatRecord.detected_at))
            .limit(1)
        )
        async with _store_errors("get_open_threat", category=category.value):
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                row = result.scalar_one_or_none()
        return _threat_from_row(row) if row is not None else None

    async def save_threat(self, threat: Threat) -> None:
        async with _store_errors("save_threat", threat_id=threat.threat_id):
            async with self._session_factory() as db:
                result = await db.execute(
                    select(ThreatRecord).where(ThreatRecord.threat_id == threat.threat_id)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    db.add(
                        ThreatRecord(
                            threat_id=threat.threat_id,
                            category=threat.category.value,
                            label=threat.label,
                            severity=threat.severity.value,
                            description=threat.description,
                            affected_users=threat.affected_users,
                            affected_user_ids=list(threat.affected_user_ids),
                            status=threat.status.value,
                            detected_at=threat.detected_at,
                            updated_at=threat.updated_at,
                            resolved_at=threat.resolved_at,
                        )
                    )
                else:
                    row.severity = threat.severity.value
                    row.description = threat.description
                    row.affected_users = threat.affected_users
                    row.affected_user_ids = list(threat.affected_user_ids)
                    row.updated_at = threat.updated_at
                await db.commit()

    async def get_threat(self, threat_id: str) -> Threat | None:
        async with _store_errors("get_threat", threat_id=threat_id):
            async with self._session_factory() as db:
                result = await db.execute(
                    select(ThreatRecord).where(ThreatRecord.threat_id == threat_id)
                )
                row = result.scalar_one_or_none()
        return _threat_from_row(row) if row is not None else None

    async def list_threats(self, status: ThreatStatus | None = None) -> list[Threat]:
        stmt = select(ThreatRecord)
        if status is not None:
            stmt = stmt.where(ThreatRecord.status == status.value)
        stmt = stmt.order_by(desc(ThreatRecord.detected_at))
        async with _store_errors("list_threats"):
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                rows = result.scalars().all()
        return [_threat_from_row(r) for r in rows]

    async def update_threat_status(
        self,
        threat_id: str,
        expected: Iterable[ThreatStatus],
        new_status: ThreatStatus,
        now: datetime,
    ) -> bool:
        values: dict[str, Any] = {"status": new_status.value, "updated_at": now}
        if new_status == ThreatStatus.RESOLVED:
            values["resolved_at"] = now
        stmt = (
            update(ThreatRecord)
            .where(
                and_(
                    ThreatRecord.threat_id == threat_id,
                    ThreatRecord.status.in_([s.value for s in expected]),
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with _store_errors("update_threat_status", threat_id=threat_id):
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                changed = result.rowcount == 1
                await db.commit()
        return changed


# --- In-process implementations ---


class MemorySessionStore(SessionStore):
    """Session store kept in a dict. Mutations are serialized by one lock."""

    def __init__(
        self,
        sessions: Iterable[Session] = (),
        identities: Iterable[Identity] = (),
    ) -> None:
        self._sessions: dict[str, Session] = {s.session_id: s for s in sessions}
        self._identities: dict[str, Identity] = {i.user_id: i for i in identities}
        self._lock = asyncio.Lock()

    def add_session(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    def add_identity(self, identity: Identity) -> None:
        self._identities[identity.user_id] = identity

    async def list_sessions(
        self,
        session_filter: SessionFilter | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[Session]:
        f = session_filter or SessionFilter()
        matched = sorted(
            (s for s in self._sessions.values() if f.matches(s)),
            key=lambda s: (s.created_at, s.session_id),
            reverse=newest_first,
        )
        return matched[:limit] if limit is not None else matched

    async def count_sessions(self, session_filter: SessionFilter | None = None) -> int:
        f = session_filter or SessionFilter()
        return sum(1 for s in self._sessions.values() if f.matches(s))

    async def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def previous_login(self, session: Session) -> Session | None:
        candidates = [
            s
            for s in self._sessions.values()
            if s.user_id == session.user_id
            and s.session_id != session.session_id
            and s.created_at <= session.created_at
            and s.ip_address
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: (s.created_at, s.session_id))

    async def revoke_session(self, session_id: str, now: datetime) -> RevocationResult:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise SessionNotFound(session_id)
            if current.revoked_at is not None:
                return RevocationResult(
                    session_id=session_id,
                    revoked=False,
                    already_revoked=True,
                    revoked_at=current.revoked_at,
                )
            self._sessions[session_id] = current.model_copy(
                update={
                    "expires_at": _revoked_expiry(current.created_at, current.expires_at, now),
                    "revoked_at": now,
                }
            )
        return RevocationResult(session_id=session_id, revoked=True, revoked_at=now)

    async def flag_suspicious(self, session_id: str) -> bool:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                return False
            if current.is_suspicious:
                return False
            self._sessions[session_id] = current.model_copy(update={"is_suspicious": True})
        return True

    async def get_identities(self, user_ids: Iterable[str]) -> dict[str, Identity]:
        return {uid: self._identities[uid] for uid in set(user_ids) if uid in self._identities}


class MemoryAlertStore(AlertStore):
    """Alert and threat store kept in dicts."""

    def __init__(self) -> None:
        self._alerts: dict[str, TravelAlert] = {}
        self._alert_ids_by_key: dict[str, str] = {}
        self._threats: dict[str, Threat] = {}
        self._lock = asyncio.Lock()

    async def insert_travel_alert(self, alert: TravelAlert) -> tuple[TravelAlert, bool]:
        async with self._lock:
            existing_id = self._alert_ids_by_key.get(alert.dedup_key)
            if existing_id is not None:
                return self._alerts[existing_id], False
            self._alerts[alert.alert_id] = alert
            self._alert_ids_by_key[alert.dedup_key] = alert.alert_id
        return alert, True

    async def get_travel_alert(self, alert_id: str) -> TravelAlert | None:
        return self._alerts.get(alert_id)

    async def list_travel_alerts(
        self, status: TravelAlertStatus | None = None
    ) -> list[TravelAlert]:
        alerts = [a for a in self._alerts.values() if status is None or a.status == status]
        return sorted(alerts, key=lambda a: a.required_speed_kmh, reverse=True)

    async def update_travel_alert_status(
        self,
        alert_id: str,
        expected: Iterable[TravelAlertStatus],
        new_status: TravelAlertStatus,
        now: datetime,
    ) -> bool:
        async with self._lock:
            current = self._alerts.get(alert_id)
            if current is None or current.status not in set(expected):
                return False
            self._alerts[alert_id] = current.model_copy(
                update={"status": new_status, "resolved_at": now}
            )
        return True

    async def get_open_threat(self, category: ThreatCategory) -> Threat | None:
        open_threats = [
            t
            for t in self._threats.values()
            if t.category == category and t.status != ThreatStatus.RESOLVED
        ]
        if not open_threats:
            return None
        return max(open_threats, key=lambda t: t.detected_at)

    async def save_threat(self, threat: Threat) -> None:
        async with self._lock:
            current = self._threats.get(threat.threat_id)
            if current is None:
                self._threats[threat.threat_id] = threat
                return
            self._threats[threat.threat_id] = current.model_copy(
                update={
                    "severity": threat.severity,
                    "description": threat.description,
                    "affected_users": threat.affected_users,
                    "affected_user_ids": list(threat.affected_user_ids),
                    "updated_at": threat.updated_at,
                }
            )

    async def get_threat(self, threat_id: str) -> Threat | None:
        return self._threats.get(threat_id)

    async def list_threats(self, status: ThreatStatus | None = None) -> list[Threat]:
        threats = [t for t in self._threats.values() if status is None or t.status == status]
        return sorted(threats, key=lambda t: t.detected_at, reverse=True)

    async def update_threat_status(
        self,
        threat_id: str,
        expected: Iterable[ThreatStatus],
        new_status: ThreatStatus,
        now: datetime,
    ) -> bool:
        async with self._lock:
            current = self._threats.get(threat_id)
            if current is None or current.status not in set(expected):
                return False
            update_fields: dict[str, Any] = {"status": new_status, "updated_at": now}
            if new_status == ThreatStatus.RESOLVED:
                update_fields["resolved_at"] = now
            self._threats[threat_id] = current.model_copy(update=update_fields)
        return True
