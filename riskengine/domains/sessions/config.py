"""Session risk engine configuration with sensible defaults.

All thresholds, windows, and cadences for risk scoring, impossible-travel
detection, threat rules, live polling, and revocation.
"""

import os
from dataclasses import dataclass, field


@dataclass
class RiskScoringConfig:
    """Saturating per-identity risk score parameters."""

    # Score added for every active suspicious session
    points_per_suspicious_session: int = 20
    max_score: int = 100

    def __post_init__(self) -> None:
        if self.points_per_suspicious_session < 0:
            raise ValueError("points_per_suspicious_session must be non-negative")
        if not 0 < self.max_score <= 100:
            raise ValueError(f"max_score must be in (0, 100], got {self.max_score}")


@dataclass
class TravelConfig:
    """Impossible-travel detection parameters."""

    # Faster than a commercial flight
    high_speed_kmh: float = 900.0
    # Faster than any feasible human transport
    critical_speed_kmh: float = 15000.0
    # Retroactive scan covers logins created within this window
    scan_window_days: int = 7
    # Most recent logins considered by one retroactive scan
    scan_limit: int = 500
    # Upper bound for one retroactive scan
    scan_timeout_seconds: float = 30.0
    # Mark the arriving session suspicious when an alert is raised
    flag_session_on_alert: bool = True
    kafka_topic: str = "security.sessions.travel-alerts"

    def __post_init__(self) -> None:
        if self.critical_speed_kmh < self.high_speed_kmh:
            raise ValueError(
                f"critical_speed_kmh ({self.critical_speed_kmh}) must be >= "
                f"high_speed_kmh ({self.high_speed_kmh})"
            )


@dataclass
class ThreatRuleConfig:
    """Population-level threat rules."""

    # Multiple suspicious sessions from one IP
    burst_window_minutes: int = 5
    burst_per_ip_threshold: int = 5
    # Users with several suspicious logins in a short window
    travel_window_minutes: int = 60
    travel_per_user_threshold: int = 1
    # Users holding an unusual number of live sessions
    excessive_sessions_threshold: int = 10


@dataclass
class PollingConfig:
    """Live polling cadences (seconds) and projection windows."""

    population_interval_seconds: float = 30.0
    timeline_interval_seconds: float = 10.0
    threats_interval_seconds: float = 30.0
    recent_login_window_seconds: int = 3600
    timeline_window_hours: int = 24
    timeline_limit: int = 50
    # Ticks slower than this log a warning
    slow_tick_seconds: float = 2.0
    # Bound for a refresh served on demand before the first commit
    first_refresh_timeout_seconds: float = 10.0


@dataclass
class RevocationConfig:
    """Revocation coordinator parameters."""

    idempotency_ttl_seconds: int = 300
    idempotency_key_prefix: str = "bulk-revoke:"


@dataclass
class EngineConfig:
    """Top-level session risk engine configuration."""

    scoring: RiskScoringConfig = field(default_factory=RiskScoringConfig)
    travel: TravelConfig = field(default_factory=TravelConfig)
    threats: ThreatRuleConfig = field(default_factory=ThreatRuleConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    revocation: RevocationConfig = field(default_factory=RevocationConfig)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load config with env var overrides. Env vars use RISK_ prefix."""
        config = cls()

        # Scoring overrides
        if v := os.getenv("RISK_POINTS_PER_SUSPICIOUS"):
            config.scoring.points_per_suspicious_session = int(v)
        if v := os.getenv("RISK_MAX_SCORE"):
            config.scoring.max_score = int(v)

        # Travel overrides
        if v := os.getenv("RISK_TRAVEL_HIGH_KMH"):
            config.travel.high_speed_kmh = float(v)
        if v := os.getenv("RISK_TRAVEL_CRITICAL_KMH"):
            config.travel.critical_speed_kmh = float(v)
        if v := os.getenv("RISK_TRAVEL_SCAN_DAYS"):
            config.travel.scan_window_days = int(v)
        if v := os.getenv("RISK_TRAVEL_KAFKA_TOPIC"):
            config.travel.kafka_topic = v

        # Polling overrides
        if v := os.getenv("RISK_POPULATION_INTERVAL"):
            config.polling.population_interval_seconds = float(v)
        if v := os.getenv("RISK_TIMELINE_INTERVAL"):
            config.polling.timeline_interval_seconds = float(v)
        if v := os.getenv("RISK_THREATS_INTERVAL"):
            config.polling.threats_interval_seconds = float(v)

        # Revocation overrides
        if v := os.getenv("RISK_BULK_IDEMPOTENCY_TTL"):
            config.revocation.idempotency_ttl_seconds = int(v)

        # Overrides bypass the dataclass checks; run them again
        config.scoring.__post_init__()
        config.travel.__post_init__()
        return config


# Module-level default instance
default_config = EngineConfig()
