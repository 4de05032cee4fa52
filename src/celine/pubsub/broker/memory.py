# celine/pubsub/broker/memory.py
"""
In-process loopback broker client.

Published bodies are delivered straight to the consumers connected on the
same client: every channel on a topic gets one copy, and the consumers of
one channel take turns. Useful for local runs and tests; failure switches
let callers simulate a dead producer or an unreachable discovery service.
"""
from __future__ import annotations

import itertools
import logging
import re
from collections import defaultdict
from typing import Any

from celine.pubsub.contracts.broker import InboundMessage, MessageHandler
from celine.pubsub.core.errors import (
    BrokerConnectionError,
    ClientCreationError,
    PublishError,
)

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[.a-zA-Z0-9_-]{1,64}$")


def _validate_name(kind: str, name: str) -> None:
    if not _NAME_PATTERN.match(name or ""):
        raise ClientCreationError(f"Invalid {kind} name '{name}'")


class InMemoryConsumer:
    def __init__(self, client: "InMemoryBrokerClient", topic: str, channel: str) -> None:
        self._client = client
        self.topic = topic
        self.channel = channel
        self.handlers: list[MessageHandler] = []
        self.connect_calls = 0
        self.connected = False
        self.stopped = False

    def add_handler(self, handler: MessageHandler) -> None:
        self.handlers.append(handler)

    async def connect_to_discovery(self, address: str) -> None:
        self.connect_calls += 1
        if self._client.connect_failures > 0:
            self._client.connect_failures -= 1
            raise BrokerConnectionError(f"Discovery at {address} unreachable")
        self.connected = True
        self._client._attach(self)

    async def stop(self) -> None:
        self.stopped = True
        self.connected = False
        self._client._detach(self)

    async def deliver(self, message: InboundMessage) -> None:
        for handler in self.handlers:
            await handler.handle_message(message)


class InMemoryProducer:
    def __init__(self, client: "InMemoryBrokerClient", address: str) -> None:
        self._client = client
        self.address = address
        self.ping_calls = 0
        self.stopped = False

    async def ping(self) -> None:
        self.ping_calls += 1
        if self._client.fail_ping or self.stopped:
            raise BrokerConnectionError(f"Producer at {self.address} is down")

    async def publish(self, topic: str, body: bytes) -> None:
        if self._client.fail_publish:
            raise PublishError(f"Publish to {topic} rejected")
        self._client.published.append((topic, body))
        await self._client.deliver(topic, body)

    async def stop(self) -> None:
        self.stopped = True


class InMemoryBrokerClient:
    """
    Loopback broker client.

    Attributes:
        published: Every ``(topic, body)`` accepted by a producer, in order.
        consumers: Every consumer handle created, in order.
        producers: Every producer handle created, in order.
        fail_ping: Make producer pings fail.
        fail_publish: Make producer publishes fail.
        connect_failures: Number of upcoming discovery connects that fail.
        handler_errors: Count of handler failures during delivery.
    """

    def __init__(self) -> None:
        self.published: list[tuple[str, bytes]] = []
        self.consumers: list[InMemoryConsumer] = []
        self.producers: list[InMemoryProducer] = []

        self.fail_ping = False
        self.fail_publish = False
        self.connect_failures = 0
        self.handler_errors = 0

        self._groups: dict[tuple[str, str], list[InMemoryConsumer]] = defaultdict(list)
        self._cursors: dict[tuple[str, str], itertools.count] = {}
        self._ids = itertools.count(1)

    def create_consumer(
        self, topic: str, channel: str, config: Any = None
    ) -> InMemoryConsumer:
        _validate_name("topic", topic)
        _validate_name("channel", channel)
        consumer = InMemoryConsumer(self, topic, channel)
        self.consumers.append(consumer)
        return consumer

    def create_producer(self, address: str, config: Any = None) -> InMemoryProducer:
        if not address:
            raise ClientCreationError("Producer address must not be empty")
        producer = InMemoryProducer(self, address)
        self.producers.append(producer)
        return producer

    def _attach(self, consumer: InMemoryConsumer) -> None:
        group = self._groups[(consumer.topic, consumer.channel)]
        if consumer not in group:
            group.append(consumer)

    def _detach(self, consumer: InMemoryConsumer) -> None:
        group = self._groups.get((consumer.topic, consumer.channel), [])
        if consumer in group:
            group.remove(consumer)

    async def deliver(self, topic: str, body: bytes) -> int:
        """
        Hand ``body`` to one consumer per channel on ``topic``.

        Returns:
            Number of channels the message was delivered to.
        """
        delivered = 0
        for (group_topic, channel), members in list(self._groups.items()):
            if group_topic != topic or not members:
                continue

            cursor = self._cursors.setdefault((topic, channel), itertools.count())
            consumer = members[next(cursor) % len(members)]
            message = InboundMessage(
                topic=topic, body=body, message_id=str(next(self._ids))
            )
            try:
                await consumer.deliver(message)
                delivered += 1
            except Exception as exc:
                self.handler_errors += 1
                logger.error("Handler error on %s/%s: %s", topic, channel, exc)

        return delivered
