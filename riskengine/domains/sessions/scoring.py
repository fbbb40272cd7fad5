"""Per-identity risk scoring over active sessions."""

from collections.abc import Iterable

from .config import RiskScoringConfig
from .models import RiskProfile, Session


def risk_score(suspicious_count: int, config: RiskScoringConfig | None = None) -> int:
    """Saturating score: every suspicious session adds a fixed step, capped at max."""
    cfg = config or RiskScoringConfig()
    if suspicious_count <= 0:
        return 0
    return min(suspicious_count * cfg.points_per_suspicious_session, cfg.max_score)


class RiskScorer:
    """Builds a RiskProfile from one identity's active sessions."""

    def __init__(self, config: RiskScoringConfig | None = None) -> None:
        self._config = config or RiskScoringConfig()

    def score(self, user_id: str, active_sessions: Iterable[Session]) -> RiskProfile:
        total = 0
        suspicious = 0
        last_activity = None

        for session in active_sessions:
            total += 1
            if session.is_suspicious:
                suspicious += 1
            seen = session.last_activity_at or session.created_at
            if last_activity is None or seen > last_activity:
                last_activity = seen

        return RiskProfile(
            user_id=user_id,
            active_sessions=total,
            suspicious_sessions=suspicious,
            risk_score=risk_score(suspicious, self._config),
            last_activity_at=last_activity,
        )
