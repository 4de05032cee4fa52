# celine/pubsub/core/publisher.py
"""
Outbound publish path.

Callers hand publish workers to a bounded ``PublishQueue``. A single
``PublishLoop`` owns the only producer connection and drains the queue.
Publishing is best-effort and at-most-once: a failed publish is logged and
dropped, never retried or re-queued.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from celine.pubsub.contracts.broker import BrokerClient, ProducerHandle
from celine.pubsub.core.config import DEFAULT_PUBLISH_QUEUE_SIZE
from celine.pubsub.core.errors import (
    BrokerConnectionError,
    ClientCreationError,
    PublishError,
)
from celine.pubsub.core.worker import Worker

logger = logging.getLogger(__name__)


class PublishQueue:
    """
    Bounded FIFO of pending publish workers.

    ``put`` waits while the queue is full. This is the only backpressure on
    publishers; nothing is ever dropped here.
    """

    def __init__(self, maxsize: int = DEFAULT_PUBLISH_QUEUE_SIZE) -> None:
        if maxsize < 1:
            raise ValueError("Publish queue size must be at least 1")
        self._queue: asyncio.Queue[Worker] = asyncio.Queue(maxsize=maxsize)

    async def put(self, worker: Worker) -> None:
        await self._queue.put(worker)

    def put_nowait(self, worker: Worker) -> None:
        """Raises ``asyncio.QueueFull`` if there is no free slot."""
        self._queue.put_nowait(worker)

    async def get(self) -> Worker:
        return await self._queue.get()

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def qsize(self) -> int:
        return self._queue.qsize()

    def full(self) -> bool:
        return self._queue.full()

    def empty(self) -> bool:
        return self._queue.empty()


class PublishLoop:
    """
    The only component allowed to call the producer's publish operation.

    Lifecycle:
    1. Create one producer for ``address``. Failure ends the loop.
    2. Ping before every item. A failed ping ends the loop for good; the
       connection is never re-established here.
    3. Wait for cancellation or the next queued worker, then publish it.
    """

    def __init__(
        self,
        client: BrokerClient,
        address: str,
        queue: PublishQueue,
        done: asyncio.Event,
        config: Any = None,
    ) -> None:
        self._client = client
        self._address = address
        self._queue = queue
        self._done = done
        self._config = config

        self._running = False
        self._published = 0
        self._failed = 0
        self._last_error: PublishError | None = None
        self._pending: Worker | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def published(self) -> int:
        return self._published

    @property
    def failed(self) -> int:
        return self._failed

    @property
    def last_error(self) -> PublishError | None:
        return self._last_error

    async def run(self) -> None:
        """
        Drain the queue until cancelled or the producer dies.

        Raises:
            ClientCreationError: If the producer cannot be created.
            BrokerConnectionError: If a liveness check fails.
            asyncio.CancelledError: When the manager is stopped.
        """
        producer = self._create_producer()
        self._running = True
        logger.info("Publish loop started (producer=%s)", self._address)

        try:
            while True:
                try:
                    await producer.ping()
                except Exception as exc:
                    logger.error("Producer ping failed for %s: %s", self._address, exc)
                    raise BrokerConnectionError(
                        f"Producer at {self._address} is not alive: {exc}"
                    ) from exc

                worker = await self._next()
                if worker is None:
                    logger.info("Publish loop cancelled")
                    raise asyncio.CancelledError()

                await self._publish(producer, worker)
        finally:
            self._running = False
            pending, self._pending = self._pending, None
            if pending is not None:
                logger.info("Publishing %r dequeued before cancellation", pending)
                await self._publish(producer, pending)
            try:
                await producer.stop()
            except Exception as exc:
                logger.warning("Error stopping producer: %s", exc)

    def _create_producer(self) -> ProducerHandle:
        try:
            return self._client.create_producer(self._address, self._config)
        except ClientCreationError:
            raise
        except (ValueError, TypeError) as exc:
            raise ClientCreationError(
                f"Failed to create producer for {self._address}: {exc}"
            ) from exc

    async def _next(self) -> Worker | None:
        """Next queued worker, or None once cancellation has been signalled."""
        if self._done.is_set():
            return None

        getter = asyncio.ensure_future(self._queue.get())
        stopper = asyncio.ensure_future(self._done.wait())
        try:
            finished, _ = await asyncio.wait(
                {getter, stopper}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            if getter.done() and not getter.cancelled():
                self._pending = getter.result()
            raise
        finally:
            for fut in (getter, stopper):
                if not fut.done():
                    fut.cancel()

        # A worker already taken off the queue is still published.
        if getter in finished:
            return getter.result()
        return None

    async def _publish(self, producer: ProducerHandle, worker: Worker) -> None:
        logger.debug("Sending worker %r", worker)
        try:
            await producer.publish(worker.topic, worker.data)
        except Exception as exc:
            self._failed += 1
            self._last_error = PublishError(f"Failed to publish to {worker.topic}: {exc}")
            logger.error("Failed to publish to %s: %s", worker.topic, exc)
            return

        self._published += 1
        logger.debug("Published to %s (size=%d bytes)", worker.topic, len(worker.data))
