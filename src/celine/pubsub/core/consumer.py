# celine/pubsub/core/consumer.py
"""
Consume orchestration for a single worker.

State machine::

    CREATED ──► CONNECTING ──success──► RUNNING ──worker stopped──► STOPPED
                   ▲   │
                   └───┘ failure (after backoff)

Any state moves to STOPPED on cancellation or once the manager's ``done``
event is set. The start delay, every backoff wait and the RUNNING wait all
watch that event.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any

from celine.pubsub.contracts.broker import BrokerClient
from celine.pubsub.core.config import RetryPolicy
from celine.pubsub.core.errors import BrokerConnectionError
from celine.pubsub.core.worker import Worker

logger = logging.getLogger(__name__)


class ConsumeState(str, Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    RUNNING = "running"
    STOPPED = "stopped"


class ConsumeTask:
    """
    Connects one consumer worker to the discovery service and keeps it
    consuming until the worker is stopped or ``done`` is set.

    Example:
        task = ConsumeTask(worker, client, "localhost:1883", delay=5)
        supervisor.spawn(f"consume:{worker.topic}", task.run())
    """

    def __init__(
        self,
        worker: Worker,
        client: BrokerClient,
        address: str,
        config: Any = None,
        retry: RetryPolicy | None = None,
        delay: float = 0,
        done: asyncio.Event | None = None,
    ) -> None:
        self._worker = worker
        self._client = client
        self._address = address
        self._config = config
        self._retry = retry or RetryPolicy()
        self._delay = delay
        self._done = done

        self._state = ConsumeState.CREATED
        self._attempts = 0
        self._last_error: BaseException | None = None

    @property
    def worker(self) -> Worker:
        return self._worker

    @property
    def state(self) -> ConsumeState:
        return self._state

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def attempts(self) -> int:
        """Number of failed connection attempts so far."""
        return self._attempts

    @property
    def last_error(self) -> BaseException | None:
        return self._last_error

    async def run(self) -> None:
        """
        Raises:
            ClientCreationError: If the consumer cannot be created.
            BrokerConnectionError: If ``max_attempts`` connections failed.
        """
        topic = self._worker.topic
        try:
            if self._stopping():
                logger.debug("Manager stopped, not consuming %s", topic)
                return

            if self._delay > 0:
                logger.debug("Delaying consume of %s by %ss", topic, self._delay)
                if not await self._sleep(self._delay):
                    return

            consumer = self._worker.consumer(self._client, self._config)

            self._state = ConsumeState.CONNECTING
            while True:
                try:
                    await consumer.connect_to_discovery(self._address)
                    break
                except Exception as exc:
                    self._attempts += 1
                    self._last_error = exc

                    if self._retry.exhausted(self._attempts):
                        logger.error(
                            "Giving up connecting %s to %s after %d attempt(s): %s",
                            topic,
                            self._address,
                            self._attempts,
                            exc,
                        )
                        raise BrokerConnectionError(
                            f"Could not connect {topic} to {self._address}: {exc}"
                        ) from exc

                    backoff = self._retry.delay_for(self._attempts)
                    logger.warning(
                        "Connect failed for %s (attempt %d), retrying in %.2fs: %s",
                        topic,
                        self._attempts,
                        backoff,
                        exc,
                    )
                    if not await self._sleep(backoff):
                        await self._worker.stop()
                        return

            self._state = ConsumeState.RUNNING
            logger.info(
                "Consuming %s/%s via %s",
                topic,
                self._worker.channel,
                self._address,
            )
            await self._park()
            if self._stopping():
                await self._worker.stop()
        finally:
            self._state = ConsumeState.STOPPED

    def _stopping(self) -> bool:
        return self._done is not None and self._done.is_set()

    async def _sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds``. Returns False if the manager stopped first."""
        if self._done is None:
            await asyncio.sleep(seconds)
            return True
        try:
            await asyncio.wait_for(self._done.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def _park(self) -> None:
        """Wait until the worker is stopped or the manager stops."""
        waiters = [asyncio.ensure_future(self._worker.closed.wait())]
        if self._done is not None:
            waiters.append(asyncio.ensure_future(self._done.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
