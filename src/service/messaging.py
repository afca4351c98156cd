from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from service.logging_config import correlation_id

logger = logging.getLogger(__name__)

DISPOSAL_REQUEST_EVENTS_TOPIC = "disposal_request_events"
AUCTION_EVENTS_TOPIC = "auction_events"
BID_EVENTS_TOPIC = "bid_events"
AUCTION_CLOSE_REQUESTS_TOPIC = "auction_close_requests"

_EVENT_TOPICS = {
    "disposal_request": DISPOSAL_REQUEST_EVENTS_TOPIC,
    "auction": AUCTION_EVENTS_TOPIC,
    "bid": BID_EVENTS_TOPIC,
}


def _encode(value: dict[str, Any]) -> bytes:
    return json.dumps(value, default=str).encode("utf-8")


class KafkaBus:
    def __init__(self, bootstrap_servers: str, client_id: str) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self._producer: AIOKafkaProducer | None = None
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(asyncio.Queue)

    async def connect(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=_encode,
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
            self._producer = producer
        except Exception:
            logger.info("Kafka unavailable at %s; using in-process queues", self.bootstrap_servers)
            self._producer = None
            try:
                await producer.stop()
            except Exception:
                pass

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            partitions = await self._producer.partitions_for(AUCTION_EVENTS_TOPIC)
            return partitions is not None
        except Exception:
            return False

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        if self._producer is not None:
            try:
                encoded_key = None if key is None else key.encode("utf-8")
                await self._producer.send_and_wait(topic, value=value, key=encoded_key)
                return
            except Exception as exc:
                logger.warning("Kafka publish to %s failed, queueing locally: %s", topic, exc)
        await self._queues[topic].put(value)

    async def consume_forever(
        self,
        topic: str,
        handler: Callable[[dict[str, Any]], Awaitable[None]],
        stop_event: asyncio.Event,
    ) -> None:
        if self._producer is not None:
            consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=self.bootstrap_servers,
                group_id=f"{self.client_id}-{topic}",
                value_deserializer=lambda v: json.loads(v.decode("utf-8")),
            )
            try:
                await asyncio.wait_for(consumer.start(), timeout=1.0)
                while not stop_event.is_set():
                    msg = await consumer.getone()
                    await self._dispatch(topic, handler, msg.value)
            except Exception:
                logger.exception("Kafka consumer for %s stopped; falling back to local queue", topic)
            finally:
                try:
                    await consumer.stop()
                except Exception:
                    pass

        queue = self._queues[topic]
        while not stop_event.is_set():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=0.5)
            except TimeoutError:
                continue
            await self._dispatch(topic, handler, event)

    @staticmethod
    async def _dispatch(
        topic: str,
        handler: Callable[[dict[str, Any]], Awaitable[None]],
        event: dict[str, Any],
    ) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception("Handler for %s failed on event %s", topic, event)


class AuditSink:
    """Best-effort audit/notification publisher.

    ``emit`` never raises and waits at most ``timeout`` seconds, so a broken
    broker can never roll back or delay a completed disposal transition.
    """

    def __init__(self, bus: KafkaBus | None, timeout: float = 1.0) -> None:
        self.bus = bus
        self.timeout = timeout

    @staticmethod
    def topic_for(event_name: str) -> str:
        family = event_name.split(".", 1)[0]
        return _EVENT_TOPICS.get(family, AUCTION_EVENTS_TOPIC)

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        envelope = {
            "event": event_name,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
            "correlation_id": correlation_id.get(""),
            "data": payload,
        }
        logger.info("audit %s", event_name, extra={"extra_data": payload})
        if self.bus is None:
            return
        try:
            await asyncio.wait_for(
                self.bus.publish(self.topic_for(event_name), envelope, key=payload.get("id")),
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.warning("Dropping audit event %s: %s", event_name, exc)
