"""Population statistics and per-identity risk profiles."""

from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from .config import EngineConfig, default_config
from .models import PopulationSnapshot, PopulationStats, RiskProfile
from .polling import LivePoller
from .registry import SessionRegistry, group_by_identity, utcnow
from .scoring import RiskScorer
from .store import SessionFilter

logger = structlog.get_logger()

PROFILE_SORT_KEYS: dict[str, Callable[[RiskProfile], object]] = {
    "name": lambda p: (p.name or p.email or p.user_id).lower(),
    "sessions": lambda p: p.active_sessions,
    "risk": lambda p: p.risk_score,
}


def sort_profiles(
    profiles: list[RiskProfile], sort: str = "risk", descending: bool = True
) -> list[RiskProfile]:
    key = PROFILE_SORT_KEYS.get(sort)
    if key is None:
        raise ValueError(f"Unknown sort key {sort!r}; expected one of {sorted(PROFILE_SORT_KEYS)}")
    return sorted(profiles, key=key, reverse=descending)


class LiveAggregator:
    """Folds the active population into stats and risk profiles on each tick."""

    def __init__(
        self,
        registry: SessionRegistry,
        scorer: RiskScorer | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._config = config or default_config
        self._scorer = scorer or RiskScorer(self._config.scoring)
        self._clock = clock
        self.poller: LivePoller[PopulationSnapshot] = LivePoller(
            "population",
            self.compute,
            interval_seconds=self._config.polling.population_interval_seconds,
            slow_tick_seconds=self._config.polling.slow_tick_seconds,
            first_refresh_timeout_seconds=self._config.polling.first_refresh_timeout_seconds,
        )

    async def compute(self, now: datetime | None = None) -> PopulationSnapshot:
        """One pass over active sessions: group, score, and fold into totals."""
        now = now or self._clock()
        window = timedelta(seconds=self._config.polling.recent_login_window_seconds)

        grouped = group_by_identity(await self._registry.active_sessions(now))
        recent_logins = await self._registry.store.count_sessions(
            SessionFilter(created_since=now - window)
        )
        identities = await self._registry.identities(grouped)

        profiles: list[RiskProfile] = []
        active_total = 0
        suspicious_total = 0
        for user_id, sessions in grouped.items():
            profile = self._scorer.score(user_id, sessions)
            identity = identities.get(user_id)
            if identity is not None:
                profile = profile.model_copy(
                    update={"name": identity.name, "email": identity.email, "role": identity.role}
                )
            profiles.append(profile)
            active_total += profile.active_sessions
            suspicious_total += profile.suspicious_sessions

        stats = PopulationStats(
            active_sessions=active_total,
            suspicious_sessions=suspicious_total,
            distinct_active_users=len(profiles),
            recent_logins=recent_logins,
            computed_at=now,
        )
        logger.info(
            "population_aggregated",
            active_sessions=stats.active_sessions,
            suspicious_sessions=stats.suspicious_sessions,
            distinct_active_users=stats.distinct_active_users,
            recent_logins=stats.recent_logins,
        )
        return PopulationSnapshot(stats=stats, profiles=sort_profiles(profiles))

    async def tick(self) -> PopulationSnapshot | None:
        return await self.poller.tick()

    async def snapshot(self) -> PopulationSnapshot:
        """As of the last committed tick; computed directly before the first one."""
        return await self.poller.current()
