"""Kafka producer helpers."""

import structlog
from aiokafka import AIOKafkaProducer

logger = structlog.get_logger()

SESSION_EVENTS_TOPIC = "security.sessions.events"


async def create_producer(bootstrap_servers: str) -> AIOKafkaProducer:
    """Create and start a Kafka producer.

    Values and keys are sent as raw bytes; callers serialize.
    """
    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    logger.info("kafka_producer_started", bootstrap_servers=bootstrap_servers)
    return producer
