"""Base Kafka consumer with JSON decoding and event-type routing."""

import json
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from aiokafka import AIOKafkaConsumer

logger = structlog.get_logger()

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]


class BaseConsumer:
    def __init__(
        self,
        topics: list[str],
        bootstrap_servers: str,
        group_id: str,
        handlers: dict[str, EventHandler] | None = None,
    ):
        self.topics = topics
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.handlers: dict[str, EventHandler] = handlers or {}
        self._consumer: AIOKafkaConsumer | None = None
        self._running = False

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        self.handlers[event_type] = handler

    async def start(self) -> None:
        self._consumer = AIOKafkaConsumer(
            *self.topics,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            value_deserializer=lambda m: json.loads(m.decode("utf-8")),
            auto_offset_reset="latest",
            enable_auto_commit=True,
        )
        await self._consumer.start()
        self._running = True
        logger.info("consumer_started", topics=self.topics, group_id=self.group_id)
        try:
            async for msg in self._consumer:
                await self._process_message(msg)
        finally:
            await self._consumer.stop()

    async def _process_message(self, msg: Any) -> None:
        event = msg.value
        if not isinstance(event, dict):
            logger.warning("malformed_event", topic=msg.topic, offset=msg.offset)
            return

        event_type = event.get("event_type", "unknown")
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.debug("no_handler_for_event", event_type=event_type)
            return

        try:
            await handler(event)
        except Exception:
            logger.exception(
                "message_processing_error",
                topic=msg.topic,
                offset=msg.offset,
                event_type=event_type,
                event_id=event.get("event_id"),
            )

    async def stop(self) -> None:
        self._running = False
        if self._consumer:
            await self._consumer.stop()
            logger.info("consumer_stopped", topics=self.topics)
