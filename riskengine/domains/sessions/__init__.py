"""Session risk and anomaly detection domain."""

from .aggregator import LiveAggregator, sort_profiles
from .engine import RiskEngine, build_engine
from .geo import evaluate, haversine
from .lifecycle import ThreatLifecycleManager
from .models import (
    BulkRevocationResult,
    NotEvaluable,
    PopulationStats,
    RiskProfile,
    Session,
    Threat,
    TimelineEvent,
    TransitionOutcome,
    TravelAlert,
)
from .polling import LivePoller
from .registry import SessionRegistry
from .revocation import RevocationCoordinator
from .scoring import RiskScorer, risk_score
from .threats import ThreatDetector
from .travel import ImpossibleTravelDetector

__all__ = [
    "BulkRevocationResult",
    "ImpossibleTravelDetector",
    "LiveAggregator",
    "LivePoller",
    "NotEvaluable",
    "PopulationStats",
    "RevocationCoordinator",
    "RiskEngine",
    "RiskProfile",
    "RiskScorer",
    "Session",
    "SessionRegistry",
    "Threat",
    "ThreatDetector",
    "ThreatLifecycleManager",
    "TimelineEvent",
    "TransitionOutcome",
    "TravelAlert",
    "build_engine",
    "evaluate",
    "haversine",
    "risk_score",
    "sort_profiles",
]
