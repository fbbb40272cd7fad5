"""Consumer for session lifecycle events."""

from typing import Any

import structlog
from pydantic import ValidationError

from riskengine.domains.sessions.models import Session
from riskengine.domains.sessions.store import SessionStore
from riskengine.domains.sessions.travel import ImpossibleTravelDetector
from riskengine.shared.kafka_utils import SESSION_EVENTS_TOPIC

from .base import BaseConsumer

logger = structlog.get_logger()


def session_from_payload(payload: dict[str, Any]) -> Session:
    created_at = payload.get("created_at") or payload.get("timestamp")
    return Session(
        session_id=payload["session_id"],
        user_id=payload["user_id"],
        created_at=created_at,
        expires_at=payload.get("expires_at") or created_at,
        ip_address=payload.get("ip_address"),
        city=payload.get("city"),
        country=payload.get("country"),
        user_agent=payload.get("user_agent"),
    )


class SessionConsumer(BaseConsumer):
    """Runs impossible-travel detection for every new session."""

    def __init__(
        self,
        detector: ImpossibleTravelDetector,
        session_store: SessionStore,
        bootstrap_servers: str,
        group_id: str = "session-risk-engine",
    ) -> None:
        super().__init__(
            topics=[SESSION_EVENTS_TOPIC],
            bootstrap_servers=bootstrap_servers,
            group_id=group_id,
        )
        self._detector = detector
        self._sessions = session_store
        self.register_handler("session-started", self._handle_session_started)

    async def _handle_session_started(self, event: dict[str, Any]) -> None:
        payload = event.get("payload", {})
        session_id = payload.get("session_id")
        if not session_id:
            logger.warning("session_event_missing_id", event_id=event.get("event_id"))
            return

        session = await self._sessions.get_session(session_id)
        if session is None:
            try:
                session = session_from_payload(payload)
            except (KeyError, ValidationError) as exc:
                logger.warning(
                    "session_event_invalid",
                    event_id=event.get("event_id"),
                    session_id=session_id,
                    error=str(exc),
                )
                return

        alert = await self._detector.on_new_login(session)
        logger.info(
            "session_started_evaluated",
            session_id=session.session_id,
            user_id=session.user_id,
            alert_id=alert.alert_id if alert else None,
        )
