"""Wiring for the session risk engine components and their polling loops."""

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from riskengine.config import Settings
from riskengine.shared.idempotency import IdempotencyCache

from .aggregator import LiveAggregator
from .config import EngineConfig, default_config
from .geolocation import GeolocationResolver, HttpGeolocationResolver, StaticGeolocationResolver
from .lifecycle import ThreatLifecycleManager
from .models import Threat, TimelineEvent
from .polling import LivePoller
from .registry import SessionRegistry, utcnow
from .revocation import RevocationCoordinator
from .scoring import RiskScorer
from .store import (
    AlertStore,
    MemoryAlertStore,
    MemorySessionStore,
    SessionStore,
    SqlAlertStore,
    SqlSessionStore,
)
from .threats import ThreatDetector
from .travel import ImpossibleTravelDetector

logger = structlog.get_logger()


class RiskEngine:
    """Owns one instance of every engine component.

    Three pollers run while the engine is started: population stats and
    risk profiles, the session timeline, and detection (retroactive travel
    scan followed by the threat rules).
    """

    def __init__(
        self,
        session_store: SessionStore,
        alert_store: AlertStore,
        resolver: GeolocationResolver,
        config: EngineConfig | None = None,
        idempotency: IdempotencyCache | None = None,
        kafka_producer: Any = None,
        operation_timeout_seconds: float | None = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or default_config
        self.session_store = session_store
        self.alert_store = alert_store
        self.resolver = resolver
        self.idempotency = idempotency
        self.operation_timeout_seconds = operation_timeout_seconds
        self.clock = clock

        self.registry = SessionRegistry(session_store, self.config, clock=clock)
        self.scorer = RiskScorer(self.config.scoring)
        self.travel = ImpossibleTravelDetector(
            session_store,
            alert_store,
            resolver,
            config=self.config,
            kafka_producer=kafka_producer,
            operation_timeout_seconds=operation_timeout_seconds,
            clock=clock,
        )
        self.threats = ThreatDetector(session_store, alert_store, config=self.config, clock=clock)
        self.revocation = RevocationCoordinator(
            session_store,
            config=self.config,
            idempotency=idempotency,
            operation_timeout_seconds=operation_timeout_seconds,
            clock=clock,
        )
        self.lifecycle = ThreatLifecycleManager(
            alert_store,
            self.revocation,
            operation_timeout_seconds=operation_timeout_seconds,
            clock=clock,
        )
        self.aggregator = LiveAggregator(self.registry, self.scorer, self.config, clock=clock)

        polling = self.config.polling
        self.timeline_poller: LivePoller[list[TimelineEvent]] = LivePoller(
            "timeline",
            self.registry.timeline,
            interval_seconds=polling.timeline_interval_seconds,
            slow_tick_seconds=polling.slow_tick_seconds,
            first_refresh_timeout_seconds=polling.first_refresh_timeout_seconds,
        )
        self.detection_poller: LivePoller[list[Threat]] = LivePoller(
            "detection",
            self.run_detection,
            interval_seconds=polling.threats_interval_seconds,
            slow_tick_seconds=polling.slow_tick_seconds,
            first_refresh_timeout_seconds=polling.first_refresh_timeout_seconds,
        )

    @property
    def pollers(self) -> list[LivePoller]:
        return [self.aggregator.poller, self.timeline_poller, self.detection_poller]

    async def run_detection(self) -> list[Threat]:
        """One detection pass: travel scan first so its flags feed the threat rules."""
        await self.travel.scan()
        return await self.threats.detect()

    def start(self) -> None:
        for poller in self.pollers:
            poller.start()

    async def stop(self) -> None:
        for poller in self.pollers:
            await poller.stop()
        await self.resolver.close()
        if self.idempotency is not None:
            await self.idempotency.close()


def build_resolver(settings: Settings) -> GeolocationResolver:
    if settings.geolocation_url:
        return HttpGeolocationResolver(
            settings.geolocation_url, timeout_seconds=settings.geolocation_timeout_seconds
        )
    logger.info("geolocation_resolver_static")
    return StaticGeolocationResolver()


def build_engine(
    settings: Settings,
    config: EngineConfig | None = None,
    kafka_producer: Any = None,
) -> RiskEngine:
    """Build an engine from process settings."""
    if settings.store_backend == "memory":
        session_store: SessionStore = MemorySessionStore()
        alert_store: AlertStore = MemoryAlertStore()
    elif settings.store_backend == "sql":
        from riskengine.db.database import async_session_factory

        session_store = SqlSessionStore(async_session_factory)
        alert_store = SqlAlertStore(async_session_factory)
    else:
        raise ValueError(f"Unknown store_backend {settings.store_backend!r}")

    idempotency = IdempotencyCache.from_url(settings.redis_url) if settings.redis_url else None

    return RiskEngine(
        session_store,
        alert_store,
        build_resolver(settings),
        config=config or EngineConfig.from_env(),
        idempotency=idempotency,
        kafka_producer=kafka_producer,
        operation_timeout_seconds=settings.operation_timeout_seconds,
    )
