# celine/pubsub/core/worker.py
"""
Worker entity.

A worker is either a consumer bound to a topic/channel pair, delivering
inbound messages into a bounded buffer, or a pending publish payload for a
topic. Both kinds share the same stop operation.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from enum import Enum
from typing import Any

from celine.pubsub.contracts.broker import BrokerClient, ConsumerHandle, InboundMessage
from celine.pubsub.contracts.work import HELLO_WORLD
from celine.pubsub.core.config import (
    DEFAULT_DELIVERY_TIMEOUT,
    DEFAULT_MESSAGE_BUFFER_SIZE,
)
from celine.pubsub.core.errors import ClientCreationError, DeliveryTimeoutError

logger = logging.getLogger(__name__)


class StopState(str, Enum):
    NOT_STOPPED = "not_stopped"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Worker:
    """
    Unit of work for one topic.

    Example:
        worker = Worker.for_consume("orders", "billing")
        worker.consumer(client, config)

        msg = await worker.get_message()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        topic: str,
        channel: str = "",
        data: bytes | None = None,
        buffer_size: int = DEFAULT_MESSAGE_BUFFER_SIZE,
        delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT,
    ) -> None:
        if not topic:
            raise ValueError("Worker topic must not be empty")

        self._topic = topic
        self._channel = channel
        self._data = data
        self._delivery_timeout = delivery_timeout

        self._messages: asyncio.Queue[InboundMessage] = asyncio.Queue(maxsize=buffer_size)
        self._closed = asyncio.Event()

        self._consumer: ConsumerHandle | None = None
        self._state_lock = threading.Lock()
        self._stop_state = StopState.NOT_STOPPED

    @classmethod
    def for_consume(cls, topic: str, channel: str, **kwargs: Any) -> "Worker":
        return cls(topic, channel=channel, **kwargs)

    @classmethod
    def for_publish(cls, topic: str, data: bytes, **kwargs: Any) -> "Worker":
        return cls(topic, data=data, **kwargs)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def channel(self) -> str:
        return self._channel

    @property
    def data(self) -> bytes:
        return self._data or b""

    @data.setter
    def data(self, value: bytes) -> None:
        self._data = value

    @property
    def messages(self) -> asyncio.Queue[InboundMessage]:
        """The inbound buffer. Single consumer: the code owning this worker."""
        return self._messages

    @property
    def closed(self) -> asyncio.Event:
        """Set once the worker has been stopped."""
        return self._closed

    @property
    def consumer_handle(self) -> ConsumerHandle | None:
        return self._consumer

    @property
    def is_stopped(self) -> bool:
        return self._stop_state is not StopState.NOT_STOPPED

    @property
    def delivery_timeout(self) -> float:
        return self._delivery_timeout

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def consumer(self, client: BrokerClient, config: Any = None) -> ConsumerHandle:
        """
        Materialize the broker consumer for this topic/channel.

        Only the first call creates a handle; later calls return it. After
        ``stop()`` the handle is cleared and the next call creates a new one.

        Raises:
            ClientCreationError: If the client rejects the topic, channel or
                configuration.
        """
        if self._consumer is not None:
            return self._consumer

        if not self._channel:
            raise ClientCreationError(
                f"Worker '{self._topic}' has no channel and cannot consume"
            )

        try:
            consumer = client.create_consumer(self._topic, self._channel, config)
        except ClientCreationError:
            raise
        except (ValueError, TypeError) as exc:
            raise ClientCreationError(
                f"Failed to create consumer for {self._topic}/{self._channel}: {exc}"
            ) from exc

        consumer.add_handler(self)
        self._consumer = consumer
        logger.debug("Created consumer for %s/%s", self._topic, self._channel)
        return consumer

    async def handle_message(self, message: InboundMessage) -> None:
        """
        Deliver an inbound message into the buffer.

        The liveness sentinel is acknowledged without buffering. Any other
        message waits at most ``delivery_timeout`` seconds for buffer space.

        Raises:
            DeliveryTimeoutError: If the buffer stayed full for the whole window.
        """
        if message.body == HELLO_WORLD:
            logger.debug("Received hello world on %s/%s", self._topic, self._channel)
            return

        try:
            await asyncio.wait_for(
                self._messages.put(message), timeout=self._delivery_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Delivery timed out on %s/%s after %.1fs (buffer size %d)",
                self._topic,
                self._channel,
                self._delivery_timeout,
                self._messages.maxsize,
            )
            raise DeliveryTimeoutError(
                f"Input timed out for {self._topic}/{self._channel}"
            ) from None

    async def get_message(self, timeout: float | None = None) -> InboundMessage:
        """Wait for the next buffered message."""
        if timeout is None:
            return await self._messages.get()
        return await asyncio.wait_for(self._messages.get(), timeout=timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """
        Stop the worker. Only the first call has an effect.

        Stops and clears the consumer handle, then sets the closed signal.
        """
        with self._state_lock:
            if self._stop_state is not StopState.NOT_STOPPED:
                return
            self._stop_state = StopState.STOPPING

        consumer, self._consumer = self._consumer, None
        try:
            if consumer is not None:
                await consumer.stop()
        finally:
            with self._state_lock:
                self._stop_state = StopState.STOPPED
            self._closed.set()
            logger.debug("Stopped worker %s", self._topic)

    def __repr__(self) -> str:
        kind = "consume" if self._channel else "publish"
        return f"Worker(topic={self._topic!r}, channel={self._channel!r}, kind={kind})"
