"""Impossible-travel detection over consecutive logins.

For each new login, the identity's immediately preceding login with a known
network address is located, both addresses are resolved to coordinates, and
the speed needed to cover the distance in the elapsed time is computed.
Pairs that would need more than the configured speed raise a pending
TravelAlert. Detection is idempotent per (identity, previous, current)
login pair, so retroactive scans can be re-run safely.
"""

import asyncio
import json
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from .config import EngineConfig, default_config
from .errors import GeolocationUnavailable, OperationTimeout, StoreUnavailable
from .geo import evaluate
from .geolocation import GeolocationResolver
from .models import (
    GeoLocation,
    GeoSample,
    NotEvaluable,
    Session,
    TravelAlert,
    TravelAlertStatus,
    TravelLocation,
    TravelSeverity,
)
from .registry import group_by_identity, utcnow
from .store import AlertStore, SessionFilter, SessionStore
from .timeouts import bounded

logger = structlog.get_logger()

_ALERT_NAMESPACE = uuid.UUID("4b7d2f2e-7f0c-4c8e-9a55-3c1f0e6b9a10")


def travel_dedup_key(user_id: str, previous_session_id: str, session_id: str) -> str:
    return f"{user_id}:{previous_session_id}:{session_id}"


def travel_alert_id(dedup_key: str) -> str:
    """Stable alert id for a login pair."""
    return str(uuid.uuid5(_ALERT_NAMESPACE, dedup_key))


def _travel_location(session: Session, resolved: GeoLocation) -> TravelLocation:
    return TravelLocation(
        city=resolved.city or session.city or "Unknown",
        country=resolved.country or session.country or "??",
        ip_address=session.ip_address,
    )


class ImpossibleTravelDetector:
    """Raises TravelAlerts for physically infeasible login transitions."""

    def __init__(
        self,
        session_store: SessionStore,
        alert_store: AlertStore,
        resolver: GeolocationResolver,
        config: EngineConfig | None = None,
        kafka_producer: Any = None,
        operation_timeout_seconds: float | None = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_store
        self._alerts = alert_store
        self._resolver = resolver
        self._config = config or default_config
        self._kafka_producer = kafka_producer
        self._timeout = operation_timeout_seconds
        self._clock = clock

    def classify(self, required_speed_kmh: float) -> TravelSeverity | None:
        """Severity for a required speed, or None if the speed is feasible."""
        travel_cfg = self._config.travel
        if required_speed_kmh > travel_cfg.critical_speed_kmh:
            return TravelSeverity.CRITICAL
        if required_speed_kmh > travel_cfg.high_speed_kmh:
            return TravelSeverity.HIGH
        return None

    async def on_new_login(self, session: Session) -> TravelAlert | None:
        """Evaluate a newly created session against the identity's previous login.

        Raises OperationTimeout when the lookup and evaluation exceed the
        operation bound.
        """
        return await bounded(
            self._evaluate_login(session),
            "travel_on_new_login",
            self._timeout,
            user_id=session.user_id,
            session_id=session.session_id,
        )

    async def _evaluate_login(self, session: Session) -> TravelAlert | None:
        previous = await self._sessions.previous_login(session)
        if previous is None:
            logger.debug(
                "travel_no_previous_login", user_id=session.user_id, session_id=session.session_id
            )
            return None
        alert, _ = await self.evaluate_pair(previous, session)
        return alert

    async def evaluate_pair(
        self, previous: Session, current: Session
    ) -> tuple[TravelAlert | None, bool]:
        """Evaluate one login pair.

        Returns the pair's alert (new or previously raised) and whether this
        call created it.
        """
        if not previous.ip_address or not current.ip_address:
            return None, False
        if previous.ip_address == current.ip_address:
            return None, False

        prev_geo, curr_geo = await asyncio.gather(
            self._resolver.resolve(previous.ip_address),
            self._resolver.resolve(current.ip_address),
        )
        if prev_geo is None or curr_geo is None:
            logger.debug(
                "travel_location_unknown",
                user_id=current.user_id,
                session_id=current.session_id,
                previous_session_id=previous.session_id,
            )
            return None, False

        velocity = evaluate(
            GeoSample(
                latitude=prev_geo.latitude,
                longitude=prev_geo.longitude,
                timestamp=previous.created_at,
            ),
            GeoSample(
                latitude=curr_geo.latitude,
                longitude=curr_geo.longitude,
                timestamp=current.created_at,
            ),
        )
        if isinstance(velocity, NotEvaluable):
            logger.debug(
                "travel_not_evaluable",
                user_id=current.user_id,
                session_id=current.session_id,
                reason=velocity.reason,
            )
            return None, False

        severity = self.classify(velocity.required_speed_kmh)
        if severity is None:
            return None, False

        dedup_key = travel_dedup_key(current.user_id, previous.session_id, current.session_id)
        alert = TravelAlert(
            alert_id=travel_alert_id(dedup_key),
            dedup_key=dedup_key,
            user_id=current.user_id,
            previous_session_id=previous.session_id,
            session_id=current.session_id,
            previous_location=_travel_location(previous, prev_geo),
            current_location=_travel_location(current, curr_geo),
            distance_km=round(velocity.distance_km, 1),
            hours_elapsed=round(velocity.hours_elapsed, 4),
            required_speed_kmh=round(velocity.required_speed_kmh, 1),
            severity=severity,
            status=TravelAlertStatus.PENDING,
            login_at=current.created_at,
            detected_at=self._clock(),
        )

        stored, created = await self._alerts.insert_travel_alert(alert)
        if not created:
            logger.debug("travel_alert_deduplicated", alert_id=stored.alert_id, dedup_key=dedup_key)
            return stored, False

        if self._config.travel.flag_session_on_alert:
            try:
                await self._sessions.flag_suspicious(current.session_id)
            except StoreUnavailable as exc:
                # Alert already stored; publish it regardless
                logger.warning(
                    "travel_session_flag_failed",
                    alert_id=stored.alert_id,
                    session_id=current.session_id,
                    error=str(exc),
                )

        logger.warning(
            "travel_alert_created",
            alert_id=stored.alert_id,
            user_id=stored.user_id,
            session_id=stored.session_id,
            distance_km=stored.distance_km,
            hours_elapsed=stored.hours_elapsed,
            required_speed_kmh=stored.required_speed_kmh,
            severity=stored.severity.value,
        )
        await self._publish_alert(stored)
        return stored, True

    async def scan(self, now: datetime | None = None) -> list[TravelAlert]:
        """Retroactively evaluate every consecutive login pair in the scan window.

        Resolver failures and timeouts on one pair are logged and the scan
        continues. Returns only the alerts created by this scan. The whole
        scan is bounded by ``TravelConfig.scan_timeout_seconds``.
        """
        return await bounded(
            self._scan(now or self._clock()),
            "travel_scan",
            self._config.travel.scan_timeout_seconds,
        )

    async def _scan(self, now: datetime) -> list[TravelAlert]:
        travel_cfg = self._config.travel
        sessions = await self._sessions.list_sessions(
            SessionFilter(
                created_since=now - timedelta(days=travel_cfg.scan_window_days),
                with_ip_only=True,
            ),
            limit=travel_cfg.scan_limit,
            newest_first=True,
        )

        created_alerts: list[TravelAlert] = []
        pairs_evaluated = 0
        pairs_failed = 0
        for user_id, user_sessions in group_by_identity(sessions).items():
            ordered = sorted(user_sessions, key=lambda s: (s.created_at, s.session_id))
            for previous, current in zip(ordered, ordered[1:]):
                pairs_evaluated += 1
                try:
                    alert, created = await bounded(
                        self.evaluate_pair(previous, current),
                        "travel_evaluate_pair",
                        self._timeout,
                        user_id=user_id,
                        session_id=current.session_id,
                    )
                except (GeolocationUnavailable, OperationTimeout) as exc:
                    pairs_failed += 1
                    logger.warning(
                        "travel_pair_skipped",
                        user_id=user_id,
                        session_id=current.session_id,
                        error=str(exc),
                    )
                    continue
                if created and alert is not None:
                    created_alerts.append(alert)

        logger.info(
            "travel_scan_completed",
            sessions=len(sessions),
            pairs_evaluated=pairs_evaluated,
            pairs_failed=pairs_failed,
            alerts_created=len(created_alerts),
        )
        created_alerts.sort(key=lambda a: a.required_speed_kmh, reverse=True)
        return created_alerts

    async def _publish_alert(self, alert: TravelAlert) -> None:
        """Publish a new travel alert to Kafka."""
        if self._kafka_producer is None:
            logger.debug("kafka_producer_not_available", alert_id=alert.alert_id)
            return

        topic = self._config.travel.kafka_topic
        payload = alert.model_dump(mode="json")

        try:
            await self._kafka_producer.send_and_wait(
                topic,
                value=json.dumps(payload, default=str).encode("utf-8"),
                key=alert.user_id.encode("utf-8"),
            )
            logger.info("travel_alert_published", alert_id=alert.alert_id, topic=topic)
        except Exception:
            logger.exception("travel_alert_publish_failed", alert_id=alert.alert_id, topic=topic)
