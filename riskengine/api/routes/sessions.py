"""Operator endpoints for session risk, travel alerts, threats and revocation."""

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request

from riskengine.domains.sessions.aggregator import sort_profiles
from riskengine.domains.sessions.engine import RiskEngine
from riskengine.domains.sessions.models import (
    ThreatActionRequest,
    ThreatStatus,
    TravelAlertStatus,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])


def get_engine(request: Request) -> RiskEngine:
    return request.app.state.engine


# --- Population ---


@router.get("/stats")
async def population_stats(engine: RiskEngine = Depends(get_engine)) -> dict:  # noqa: B008
    snapshot = await engine.aggregator.snapshot()
    return snapshot.stats.model_dump(mode="json")


@router.get("/users")
async def list_risk_profiles(
    engine: RiskEngine = Depends(get_engine),  # noqa: B008
    sort: str = Query(default="risk", pattern="^(name|sessions|risk)$"),
    order: str = Query(default="desc", pattern="^(asc|desc)$"),
) -> dict:
    snapshot = await engine.aggregator.snapshot()
    profiles = sort_profiles(snapshot.profiles, sort=sort, descending=order == "desc")
    return {
        "items": [p.model_dump(mode="json") for p in profiles],
        "total": len(profiles),
        "computed_at": snapshot.stats.computed_at.isoformat()
        if snapshot.stats.computed_at
        else None,
    }


@router.get("/users/{user_id}")
async def identity_sessions(
    user_id: str,
    engine: RiskEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    now = engine.registry.now()
    sessions = await engine.registry.sessions_for_identity(user_id)
    identities = await engine.registry.identities([user_id])
    identity = identities.get(user_id)
    if not sessions and identity is None:
        raise LookupError(f"Identity not found: {user_id}")

    profile = engine.scorer.score(user_id, [s for s in sessions if s.is_active(now)])
    if identity is not None:
        profile = profile.model_copy(
            update={"name": identity.name, "email": identity.email, "role": identity.role}
        )
    return {
        "user_id": user_id,
        "profile": profile.model_dump(mode="json"),
        "sessions": [
            {**s.model_dump(mode="json"), "is_active": s.is_active(now)} for s in sessions
        ],
    }


@router.get("/timeline")
async def timeline(engine: RiskEngine = Depends(get_engine)) -> dict:  # noqa: B008
    events = await engine.timeline_poller.current()
    return {"items": [e.model_dump(mode="json") for e in events], "total": len(events)}


@router.get("/health")
async def session_health(engine: RiskEngine = Depends(get_engine)) -> dict:  # noqa: B008
    health = await engine.registry.health()
    return health.model_dump(mode="json")


# --- Travel alerts ---


@router.get("/travel-alerts")
async def list_travel_alerts(
    engine: RiskEngine = Depends(get_engine),  # noqa: B008
    status: TravelAlertStatus | None = None,
) -> dict:
    alerts = await engine.alert_store.list_travel_alerts(status)
    return {"items": [a.model_dump(mode="json") for a in alerts], "total": len(alerts)}


@router.post("/travel-alerts/scan")
async def scan_travel(engine: RiskEngine = Depends(get_engine)) -> dict:  # noqa: B008
    created = await engine.travel.scan()
    return {"items": [a.model_dump(mode="json") for a in created], "created": len(created)}


@router.post("/travel-alerts/{alert_id}/dismiss")
async def dismiss_travel_alert(
    alert_id: str,
    engine: RiskEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    result = await engine.lifecycle.dismiss(alert_id)
    return result.model_dump(mode="json")


@router.post("/travel-alerts/{alert_id}/block")
async def block_travel_alert(
    alert_id: str,
    engine: RiskEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    result = await engine.lifecycle.block(alert_id)
    if result.applied:
        engine.aggregator.poller.request_tick()
    return result.model_dump(mode="json")


# --- Threats ---


@router.get("/threats")
async def list_threats(
    engine: RiskEngine = Depends(get_engine),  # noqa: B008
    status: ThreatStatus | None = None,
) -> dict:
    threats = await engine.alert_store.list_threats(status)
    return {"items": [t.model_dump(mode="json") for t in threats], "total": len(threats)}


@router.post("/threats/{threat_id}/action")
async def threat_action(
    threat_id: str,
    body: ThreatActionRequest,
    engine: RiskEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    result = await engine.lifecycle.apply_threat_action(threat_id, body.action)
    if result.bulk_revocation is not None and result.bulk_revocation.succeeded:
        engine.aggregator.poller.request_tick()
    return result.model_dump(mode="json")


# --- Revocation ---


@router.post("/revoke-suspicious")
async def revoke_suspicious(
    engine: RiskEngine = Depends(get_engine),  # noqa: B008
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> dict:
    result = await engine.revocation.revoke_suspicious(idempotency_key=idempotency_key)
    if result.succeeded:
        engine.aggregator.poller.request_tick()
    return result.model_dump(mode="json")


@router.post("/{session_id}/revoke")
async def revoke_session(
    session_id: str,
    engine: RiskEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    result = await engine.revocation.revoke(session_id)
    if result.revoked:
        engine.aggregator.poller.request_tick()
    return result.model_dump(mode="json")
