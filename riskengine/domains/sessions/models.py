"""Pydantic models for the session risk domain."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field, computed_field, model_validator


# --- Enums ---


class TravelAlertStatus(StrEnum):
    PENDING = "pending"
    DISMISSED = "dismissed"
    BLOCKED = "blocked"


class TravelSeverity(StrEnum):
    HIGH = "high"
    CRITICAL = "critical"


class ThreatSeverity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ThreatStatus(StrEnum):
    ACTIVE = "active"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"


class ThreatCategory(StrEnum):
    SUSPICIOUS_BURST = "suspicious_burst"
    LOCATION_ANOMALY = "location_anomaly"
    EXCESSIVE_SESSIONS = "excessive_sessions"


class ThreatAction(StrEnum):
    INVESTIGATE = "investigate"
    BLOCK = "block"
    RESOLVE = "resolve"


class TransitionOutcome(StrEnum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    ALREADY_TERMINAL = "already_terminal"


class TimelineEventKind(StrEnum):
    LOGIN = "login"
    LOGOUT = "logout"
    SUSPICIOUS = "suspicious"
    REVOKED = "revoked"
    ACTIVITY = "activity"


# --- Session & identity ---


class Session(BaseModel):
    session_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime | None = None
    ip_address: str | None = None
    city: str | None = None
    country: str | None = None
    user_agent: str | None = None
    is_suspicious: bool = False
    revoked_at: datetime | None = None

    @model_validator(mode="after")
    def _expiry_not_before_creation(self) -> "Session":
        if self.expires_at < self.created_at:
            raise ValueError("expires_at must not be earlier than created_at")
        return self

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_active(self, now: datetime) -> bool:
        """A session is active iff it is neither expired nor revoked."""
        return self.revoked_at is None and now < self.expires_at


class Identity(BaseModel):
    user_id: str
    name: str | None = None
    email: str | None = None
    role: str | None = None


# --- Geo ---


class GeoLocation(BaseModel):
    city: str | None = None
    country: str | None = None
    latitude: float
    longitude: float


class GeoSample(BaseModel):
    latitude: float | None
    longitude: float | None
    timestamp: datetime


class VelocityResult(BaseModel):
    distance_km: float
    hours_elapsed: float
    required_speed_kmh: float


class NotEvaluable(BaseModel):
    """A login pair that cannot be assessed. Callers treat it as "no alert"."""

    reason: str


# --- Risk & population ---


class RiskProfile(BaseModel):
    user_id: str
    active_sessions: int = 0
    suspicious_sessions: int = 0
    risk_score: int = Field(default=0, ge=0, le=100)
    last_activity_at: datetime | None = None
    name: str | None = None
    email: str | None = None
    role: str | None = None


class PopulationStats(BaseModel):
    active_sessions: int = 0
    suspicious_sessions: int = 0
    distinct_active_users: int = 0
    recent_logins: int = 0
    computed_at: datetime | None = None


class PopulationSnapshot(BaseModel):
    stats: PopulationStats
    profiles: list[RiskProfile] = Field(default_factory=list)


class SessionHealth(BaseModel):
    total_sessions: int = 0
    active_sessions: int = 0
    expired_sessions: int = 0
    created_last_hour: int = 0
    terminated_last_hour: int = 0
    avg_session_duration_minutes: float = 0.0


class TimelineEvent(BaseModel):
    event_id: str
    user_id: str
    user_label: str
    kind: TimelineEventKind
    timestamp: datetime
    details: str
    location: str | None = None
    device: str | None = None


# --- Travel alerts ---


class TravelLocation(BaseModel):
    city: str = "Unknown"
    country: str = "??"
    ip_address: str | None = None


class TravelAlert(BaseModel):
    alert_id: str
    dedup_key: str
    user_id: str
    previous_session_id: str
    session_id: str
    previous_location: TravelLocation
    current_location: TravelLocation
    distance_km: float
    hours_elapsed: float
    required_speed_kmh: float
    severity: TravelSeverity
    status: TravelAlertStatus = TravelAlertStatus.PENDING
    login_at: datetime
    detected_at: datetime
    resolved_at: datetime | None = None


# --- Threats ---


class Threat(BaseModel):
    threat_id: str
    category: ThreatCategory
    label: str
    severity: ThreatSeverity
    description: str
    affected_users: int = 0
    affected_user_ids: list[str] = Field(default_factory=list)
    status: ThreatStatus = ThreatStatus.ACTIVE
    detected_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None


class ThreatActionRequest(BaseModel):
    action: ThreatAction


# --- Revocation ---


class RevocationResult(BaseModel):
    session_id: str
    revoked: bool
    already_revoked: bool = False
    revoked_at: datetime | None = None


class RevocationFailure(BaseModel):
    session_id: str
    reason: str


class BulkRevocationResult(BaseModel):
    succeeded: list[str] = Field(default_factory=list)
    failed: list[RevocationFailure] = Field(default_factory=list)
    affected_users: int = 0
    duplicate: bool = False

    @computed_field
    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @computed_field
    @property
    def failed_count(self) -> int:
        return len(self.failed)


# --- Lifecycle ---


class TransitionResult(BaseModel):
    record_id: str
    previous_status: str
    status: str
    outcome: TransitionOutcome
    revocation: RevocationResult | None = None
    bulk_revocation: BulkRevocationResult | None = None
    revocation_error: str | None = None

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED
