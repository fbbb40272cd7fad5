"""Forward-only state machines for travel alerts and threats.

Threat:       active -> investigating -> resolved, active -> resolved
TravelAlert:  pending -> dismissed, pending -> blocked

Requests against a record already in a terminal state report
ALREADY_TERMINAL and change nothing. Concurrent requests for the same
record are serialized by a per-record lock in this process and by a
compare-and-set on status in the store.

Blocking records the new status first and only then revokes sessions, so
an interrupted block leaves a blocked-but-not-revoked record behind rather
than revoked sessions with no record of why.
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

import structlog

from .errors import (
    AlertNotFound,
    OperationTimeout,
    SessionNotFound,
    StoreUnavailable,
    ThreatNotFound,
)
from .models import (
    ThreatAction,
    ThreatStatus,
    TransitionOutcome,
    TransitionResult,
    TravelAlertStatus,
)
from .registry import utcnow
from .revocation import RevocationCoordinator
from .store import AlertStore
from .timeouts import bounded

logger = structlog.get_logger()

THREAT_TRANSITIONS: dict[ThreatStatus, frozenset[ThreatStatus]] = {
    ThreatStatus.ACTIVE: frozenset({ThreatStatus.INVESTIGATING, ThreatStatus.RESOLVED}),
    ThreatStatus.INVESTIGATING: frozenset({ThreatStatus.RESOLVED}),
    ThreatStatus.RESOLVED: frozenset(),
}

TRAVEL_ALERT_TRANSITIONS: dict[TravelAlertStatus, frozenset[TravelAlertStatus]] = {
    TravelAlertStatus.PENDING: frozenset({TravelAlertStatus.DISMISSED, TravelAlertStatus.BLOCKED}),
    TravelAlertStatus.DISMISSED: frozenset(),
    TravelAlertStatus.BLOCKED: frozenset(),
}


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class ThreatLifecycleManager:
    """Transition operations for travel alerts and threats."""

    def __init__(
        self,
        alert_store: AlertStore,
        revocation: RevocationCoordinator,
        operation_timeout_seconds: float | None = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._alerts = alert_store
        self._revocation = revocation
        self._timeout = operation_timeout_seconds
        self._clock = clock
        self._locks = KeyedLocks()

    # --- Threats ---

    async def investigate(self, threat_id: str) -> TransitionResult:
        return await self._transition_threat(threat_id, ThreatStatus.INVESTIGATING)

    async def resolve(self, threat_id: str) -> TransitionResult:
        return await self._transition_threat(threat_id, ThreatStatus.RESOLVED)

    async def block_threat(self, threat_id: str) -> TransitionResult:
        """Resolve the threat, then revoke its affected identities' suspicious sessions."""
        result = await self._transition_threat(threat_id, ThreatStatus.RESOLVED)
        if not result.applied:
            return result

        threat = await self._alerts.get_threat(threat_id)
        user_ids = threat.affected_user_ids if threat is not None else []
        if not user_ids:
            return result

        try:
            bulk = await self._revocation.revoke_suspicious(user_ids=user_ids)
        except StoreUnavailable as exc:
            logger.error("threat_block_revocation_failed", threat_id=threat_id, error=str(exc))
            return result.model_copy(update={"revocation_error": str(exc)})

        logger.warning(
            "threat_blocked",
            threat_id=threat_id,
            revoked=bulk.succeeded_count,
            failed=bulk.failed_count,
        )
        return result.model_copy(update={"bulk_revocation": bulk})

    async def apply_threat_action(self, threat_id: str, action: ThreatAction) -> TransitionResult:
        if action == ThreatAction.INVESTIGATE:
            return await self.investigate(threat_id)
        if action == ThreatAction.RESOLVE:
            return await self.resolve(threat_id)
        return await self.block_threat(threat_id)

    async def _transition_threat(self, threat_id: str, target: ThreatStatus) -> TransitionResult:
        async with self._locks.hold(f"threat:{threat_id}"):
            return await bounded(
                self._cas_threat(threat_id, target),
                "threat_transition",
                self._timeout,
                threat_id=threat_id,
                target=target.value,
            )

    async def _cas_threat(self, threat_id: str, target: ThreatStatus) -> TransitionResult:
        # A lost compare-and-set means another writer moved the record;
        # re-read once and report against the new state.
        for _ in range(2):
            threat = await self._alerts.get_threat(threat_id)
            if threat is None:
                raise ThreatNotFound(threat_id)

            current = threat.status
            if current == target:
                outcome = (
                    TransitionOutcome.ALREADY_TERMINAL
                    if not THREAT_TRANSITIONS[current]
                    else TransitionOutcome.UNCHANGED
                )
                return self._report("threat", threat_id, current, current, outcome)
            if target not in THREAT_TRANSITIONS[current]:
                return self._report(
                    "threat", threat_id, current, current, TransitionOutcome.ALREADY_TERMINAL
                )

            swapped = await self._alerts.update_threat_status(
                threat_id, [current], target, self._clock()
            )
            if swapped:
                return self._report("threat", threat_id, current, target, TransitionOutcome.APPLIED)

        threat = await self._alerts.get_threat(threat_id)
        status = threat.status if threat is not None else current
        return self._report("threat", threat_id, status, status, TransitionOutcome.UNCHANGED)

    # --- Travel alerts ---

    async def dismiss(self, alert_id: str) -> TransitionResult:
        return await self._transition_alert(alert_id, TravelAlertStatus.DISMISSED)

    async def block(self, alert_id: str) -> TransitionResult:
        """Block the alert, then revoke the session that triggered it."""
        result = await self._transition_alert(alert_id, TravelAlertStatus.BLOCKED)
        if not result.applied:
            return result

        alert = await self._alerts.get_travel_alert(alert_id)
        if alert is None:
            return result

        try:
            revocation = await self._revocation.revoke(alert.session_id)
        except (SessionNotFound, StoreUnavailable, OperationTimeout) as exc:
            logger.error(
                "travel_block_revocation_failed",
                alert_id=alert_id,
                session_id=alert.session_id,
                error=str(exc),
            )
            return result.model_copy(update={"revocation_error": str(exc)})

        logger.warning(
            "travel_alert_session_blocked",
            alert_id=alert_id,
            user_id=alert.user_id,
            session_id=alert.session_id,
            revoked=revocation.revoked,
        )
        if revocation.revoked:
            await self._revocation.notify_affected_users([alert.user_id], reason="impossible_travel")
        return result.model_copy(update={"revocation": revocation})

    async def _transition_alert(
        self, alert_id: str, target: TravelAlertStatus
    ) -> TransitionResult:
        async with self._locks.hold(f"alert:{alert_id}"):
            return await bounded(
                self._cas_alert(alert_id, target),
                "travel_alert_transition",
                self._timeout,
                alert_id=alert_id,
                target=target.value,
            )

    async def _cas_alert(self, alert_id: str, target: TravelAlertStatus) -> TransitionResult:
        for _ in range(2):
            alert = await self._alerts.get_travel_alert(alert_id)
            if alert is None:
                raise AlertNotFound(alert_id)

            current = alert.status
            if target not in TRAVEL_ALERT_TRANSITIONS[current]:
                return self._report(
                    "travel_alert", alert_id, current, current, TransitionOutcome.ALREADY_TERMINAL
                )

            swapped = await self._alerts.update_travel_alert_status(
                alert_id, [current], target, self._clock()
            )
            if swapped:
                return self._report(
                    "travel_alert", alert_id, current, target, TransitionOutcome.APPLIED
                )

        alert = await self._alerts.get_travel_alert(alert_id)
        status = alert.status if alert is not None else current
        return self._report(
            "travel_alert", alert_id, status, status, TransitionOutcome.ALREADY_TERMINAL
        )

    def _report(
        self,
        kind: str,
        record_id: str,
        previous: str,
        status: str,
        outcome: TransitionOutcome,
    ) -> TransitionResult:
        if outcome == TransitionOutcome.APPLIED:
            logger.info(
                "lifecycle_transition_applied",
                kind=kind,
                record_id=record_id,
                previous_status=str(previous),
                status=str(status),
            )
        else:
            logger.info(
                "lifecycle_transition_skipped",
                kind=kind,
                record_id=record_id,
                status=str(status),
                outcome=outcome.value,
            )
        return TransitionResult(
            record_id=record_id,
            previous_status=str(previous),
            status=str(status),
            outcome=outcome,
        )
