# celine/pubsub/contracts/broker.py
"""
Broker client contract for the worker manager.

The manager never speaks a wire protocol itself. It orchestrates client
objects that conform to the protocols below: a factory (``BrokerClient``)
creating consumer and producer handles, and a handler interface the consumer
invokes for every inbound message.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class InboundMessage:
    """
    A message delivered by a consumer handle.

    Attributes:
        topic: The topic the message arrived on.
        body: Raw message bytes.
        message_id: Broker-assigned message ID (if available).
        attempts: Delivery attempt counter reported by the broker.
        timestamp: When the message was received.
    """

    topic: str
    body: bytes
    message_id: str | None = None
    attempts: int = 1
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@runtime_checkable
class MessageHandler(Protocol):
    """Receives inbound messages from a consumer handle."""

    async def handle_message(self, message: InboundMessage) -> None: ...


@runtime_checkable
class ConsumerHandle(Protocol):
    """A subscription to one topic/channel pair."""

    def add_handler(self, handler: MessageHandler) -> None: ...

    async def connect_to_discovery(self, address: str) -> None:
        """Connect to the discovery service and start delivering messages."""
        ...

    async def stop(self) -> None: ...


@runtime_checkable
class ProducerHandle(Protocol):
    """A single outbound connection."""

    async def ping(self) -> None:
        """Raise if the connection is not alive."""
        ...

    async def publish(self, topic: str, body: bytes) -> None: ...

    async def stop(self) -> None: ...


@runtime_checkable
class BrokerClient(Protocol):
    """Factory for consumer and producer handles."""

    def create_consumer(
        self, topic: str, channel: str, config: Any = None
    ) -> ConsumerHandle: ...

    def create_producer(self, address: str, config: Any = None) -> ProducerHandle: ...
