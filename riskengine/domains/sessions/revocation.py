"""Single and bulk session revocation.

A revocation forces the session's expiration to "now" in the store before
success is reported. Bulk revocation is a sequence of independent
per-session revocations: one failure never aborts the rest, and the result
lists every failure with its reason.
"""

from collections.abc import Callable, Iterable
from datetime import datetime

import structlog

from riskengine.shared.idempotency import IdempotencyCache

from .config import EngineConfig, default_config
from .errors import OperationTimeout, SessionNotFound, StoreUnavailable
from .models import BulkRevocationResult, RevocationFailure, RevocationResult
from .registry import utcnow
from .store import SessionFilter, SessionStore
from .timeouts import bounded

logger = structlog.get_logger()


class RevocationCoordinator:
    """Invalidates sessions ahead of their natural expiration."""

    def __init__(
        self,
        session_store: SessionStore,
        config: EngineConfig | None = None,
        idempotency: IdempotencyCache | None = None,
        operation_timeout_seconds: float | None = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = session_store
        self._config = config or default_config
        self._idempotency = idempotency
        self._timeout = operation_timeout_seconds
        self._clock = clock

    async def revoke(self, session_id: str) -> RevocationResult:
        """Revoke one session. Revoking an already-revoked session is a no-op.

        Raises SessionNotFound, StoreUnavailable or OperationTimeout.
        """
        result = await bounded(
            self._store.revoke_session(session_id, self._clock()),
            "revoke_session",
            self._timeout,
            session_id=session_id,
        )
        if result.revoked:
            logger.warning("session_revoked", session_id=session_id)
        else:
            logger.info("session_already_revoked", session_id=session_id)
        return result

    async def revoke_all(self, session_ids: Iterable[str]) -> BulkRevocationResult:
        """Revoke each session independently, collecting per-item failures."""
        result = BulkRevocationResult()
        for session_id in dict.fromkeys(session_ids):
            try:
                await self.revoke(session_id)
            except SessionNotFound:
                result.failed.append(RevocationFailure(session_id=session_id, reason="not_found"))
            except (StoreUnavailable, OperationTimeout) as exc:
                result.failed.append(RevocationFailure(session_id=session_id, reason=str(exc)))
            else:
                result.succeeded.append(session_id)

        if result.failed:
            logger.warning(
                "bulk_revocation_partial_failure",
                succeeded=result.succeeded_count,
                failed=result.failed_count,
            )
        return result

    async def revoke_suspicious(
        self,
        user_ids: Iterable[str] | None = None,
        idempotency_key: str | None = None,
    ) -> BulkRevocationResult:
        """Revoke every active suspicious session, optionally for some identities only.

        A repeated ``idempotency_key`` within the configured TTL returns an
        empty result marked ``duplicate``.
        """
        revocation_cfg = self._config.revocation
        if idempotency_key and self._idempotency is not None:
            claimed = await self._idempotency.claim(
                f"{revocation_cfg.idempotency_key_prefix}{idempotency_key}",
                revocation_cfg.idempotency_ttl_seconds,
            )
            if not claimed:
                logger.info("bulk_revoke_duplicate_request", idempotency_key=idempotency_key)
                return BulkRevocationResult(duplicate=True)

        session_filter = SessionFilter(
            active_at=self._clock(),
            suspicious=True,
            user_ids=tuple(sorted(set(user_ids))) if user_ids is not None else None,
        )
        targets = await self._store.list_sessions(session_filter)
        if not targets:
            logger.info("bulk_revoke_nothing_to_revoke")
            return BulkRevocationResult()

        owners = {s.session_id: s.user_id for s in targets}
        result = await self.revoke_all(owners)
        affected = {owners[sid] for sid in result.succeeded}
        result.affected_users = len(affected)

        await self.notify_affected_users(affected)

        logger.warning(
            "bulk_revoked_suspicious_sessions",
            revoked_count=result.succeeded_count,
            failed_count=result.failed_count,
            affected_users=result.affected_users,
        )
        return result

    async def notify_affected_users(
        self, user_ids: Iterable[str], reason: str = "suspicious_activity"
    ) -> None:
        """Tell each affected identity its session was terminated.

        Delivery belongs to the notification service; this emits one
        structured notice per identity for it to pick up.
        """
        for user_id in sorted(user_ids):
            logger.warning(
                "session_revoked_notice",
                user_id=user_id,
                category="security",
                reason=reason,
            )
