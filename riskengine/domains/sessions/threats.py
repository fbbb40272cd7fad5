"""Population-level threat rules.

Each rule inspects a recent slice of the session population and, when it
fires, opens a Threat for its category or refreshes the one already open.
A category has at most one open (active or investigating) threat at a time.
"""

import asyncio
import uuid
from collections import Counter, defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from .config import EngineConfig, default_config
from .models import Threat, ThreatCategory, ThreatSeverity
from .registry import utcnow
from .store import AlertStore, SessionFilter, SessionStore

logger = structlog.get_logger()


@dataclass
class RuleFinding:
    category: ThreatCategory
    label: str
    severity: ThreatSeverity
    description: str
    affected_user_ids: list[str]


class ThreatDetector:
    """Runs the threat rules and records their findings."""

    def __init__(
        self,
        session_store: SessionStore,
        alert_store: AlertStore,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_store
        self._alerts = alert_store
        self._config = config or default_config
        self._clock = clock

    async def detect(self, now: datetime | None = None) -> list[Threat]:
        """Evaluate all rules and return the threats opened or refreshed."""
        now = now or self._clock()
        findings = await asyncio.gather(
            self._suspicious_burst(now),
            self._location_anomaly(now),
            self._excessive_sessions(now),
        )

        threats = []
        for finding in findings:
            if finding is not None:
                threats.append(await self._record(finding, now))

        logger.info("threat_rules_evaluated", threats=len(threats))
        return threats

    async def _suspicious_burst(self, now: datetime) -> RuleFinding | None:
        rules = self._config.threats
        sessions = await self._sessions.list_sessions(
            SessionFilter(
                created_since=now - timedelta(minutes=rules.burst_window_minutes),
                suspicious=True,
                with_ip_only=True,
            )
        )
        by_ip: dict[str, set[str]] = defaultdict(set)
        counts: Counter[str] = Counter()
        for s in sessions:
            counts[s.ip_address] += 1
            by_ip[s.ip_address].add(s.user_id)

        hot_ips = [ip for ip, n in counts.items() if n > rules.burst_per_ip_threshold]
        if not hot_ips:
            return None

        users = sorted({uid for ip in hot_ips for uid in by_ip[ip]})
        return RuleFinding(
            category=ThreatCategory.SUSPICIOUS_BURST,
            label="Multiple Suspicious Sessions",
            severity=ThreatSeverity.HIGH,
            description=(
                f"{len(hot_ips)} IP(s) with multiple suspicious sessions "
                f"in last {rules.burst_window_minutes} minutes"
            ),
            affected_user_ids=users,
        )

    async def _location_anomaly(self, now: datetime) -> RuleFinding | None:
        rules = self._config.threats
        sessions = await self._sessions.list_sessions(
            SessionFilter(
                created_since=now - timedelta(minutes=rules.travel_window_minutes),
                suspicious=True,
            )
        )
        counts = Counter(s.user_id for s in sessions)
        users = sorted(uid for uid, n in counts.items() if n > rules.travel_per_user_threshold)
        if not users:
            return None

        return RuleFinding(
            category=ThreatCategory.LOCATION_ANOMALY,
            label="Location Anomaly",
            severity=ThreatSeverity.CRITICAL,
            description=f"{len(users)} user(s) with impossible travel patterns detected",
            affected_user_ids=users,
        )

    async def _excessive_sessions(self, now: datetime) -> RuleFinding | None:
        rules = self._config.threats
        sessions = await self._sessions.list_sessions(SessionFilter(active_at=now))
        counts = Counter(s.user_id for s in sessions)
        users = sorted(uid for uid, n in counts.items() if n > rules.excessive_sessions_threshold)
        if not users:
            return None

        return RuleFinding(
            category=ThreatCategory.EXCESSIVE_SESSIONS,
            label="Excessive Concurrent Sessions",
            severity=ThreatSeverity.MEDIUM,
            description=f"{len(users)} user(s) with unusually high number of active sessions",
            affected_user_ids=users,
        )

    async def _record(self, finding: RuleFinding, now: datetime) -> Threat:
        existing = await self._alerts.get_open_threat(finding.category)
        if existing is not None:
            refreshed = existing.model_copy(
                update={
                    "severity": finding.severity,
                    "description": finding.description,
                    "affected_users": len(finding.affected_user_ids),
                    "affected_user_ids": finding.affected_user_ids,
                    "updated_at": now,
                }
            )
            await self._alerts.save_threat(refreshed)
            logger.debug(
                "threat_refreshed",
                threat_id=refreshed.threat_id,
                category=finding.category.value,
                affected_users=refreshed.affected_users,
            )
            return refreshed

        threat = Threat(
            threat_id=str(uuid.uuid4()),
            category=finding.category,
            label=finding.label,
            severity=finding.severity,
            description=finding.description,
            affected_users=len(finding.affected_user_ids),
            affected_user_ids=finding.affected_user_ids,
            detected_at=now,
            updated_at=now,
        )
        await self._alerts.save_threat(threat)
        logger.warning(
            "threat_opened",
            threat_id=threat.threat_id,
            category=threat.category.value,
            severity=threat.severity.value,
            affected_users=threat.affected_users,
        )
        return threat
