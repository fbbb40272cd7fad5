"""FastAPI application entry point for the session risk engine."""

import asyncio
import contextlib
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from riskengine.api.middleware.error_handler import global_exception_handler
from riskengine.api.middleware.logging import StructuredLoggingMiddleware
from riskengine.api.routes.health import router as health_router
from riskengine.api.routes.sessions import router as sessions_router
from riskengine.config import settings
from riskengine.consumers.session_consumer import SessionConsumer
from riskengine.domains.sessions.engine import build_engine
from riskengine.domains.sessions.errors import (
    GeolocationUnavailable,
    OperationTimeout,
    StoreUnavailable,
)
from riskengine.shared.kafka_utils import create_producer
from riskengine.shared.logging import setup_logging

logger = structlog.get_logger()

# Track app start time for uptime calculation
APP_START_TIME: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown logic."""
    global APP_START_TIME
    APP_START_TIME = time.time()
    setup_logging(settings.log_level)

    logger.info(
        "risk_engine_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        store_backend=settings.store_backend,
        debug=settings.debug,
    )

    if settings.store_backend == "sql":
        from riskengine.db.database import init_db

        await init_db()

    producer: AIOKafkaProducer | None = None
    if settings.kafka_enabled:
        try:
            producer = await create_producer(settings.kafka_bootstrap_servers)
        except (KafkaError, OSError):
            logger.warning("kafka_producer_failed_to_start", exc_info=True)

    engine = build_engine(settings, kafka_producer=producer)
    app.state.engine = engine
    if settings.background_polling:
        engine.start()

    consumer: SessionConsumer | None = None
    consumer_task: asyncio.Task | None = None
    if settings.kafka_enabled:
        consumer = SessionConsumer(
            engine.travel,
            engine.session_store,
            bootstrap_servers=settings.kafka_bootstrap_servers,
            group_id=settings.kafka_consumer_group,
        )
        consumer_task = asyncio.create_task(consumer.start())
        logger.info("kafka_consumers_started", count=1)

    yield

    if consumer is not None:
        with contextlib.suppress(KafkaError, OSError):
            await consumer.stop()
    if consumer_task is not None:
        consumer_task.cancel()
    await engine.stop()
    if producer is not None:
        await producer.stop()
    logger.info("risk_engine_shutting_down")


app = FastAPI(
    title="Session Risk Engine",
    description="Session risk scoring, impossible-travel detection and threat triage",
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(StructuredLoggingMiddleware, slow_request_ms=settings.slow_request_ms)
for exc_type in (
    StoreUnavailable,
    GeolocationUnavailable,
    OperationTimeout,
    ValueError,
    PermissionError,
    LookupError,
    Exception,
):
    app.add_exception_handler(exc_type, global_exception_handler)

app.include_router(health_router)
app.include_router(sessions_router)


def get_uptime() -> int:
    """Get application uptime in seconds."""
    if APP_START_TIME == 0.0:
        return 0
    return int(time.time() - APP_START_TIME)
