# celine/pubsub/core/manager.py
"""
Worker manager.

The Manager composes the registry, the publish queue and loop, and the
per-worker consume tasks behind one cancellation context. It is the surface
application code talks to.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from celine.pubsub.contracts.broker import BrokerClient
from celine.pubsub.contracts.work import HELLO_WORLD, WorkMessage
from celine.pubsub.core.config import ManagerConfig, Settings
from celine.pubsub.core.consumer import ConsumeTask
from celine.pubsub.core.loader import import_attr
from celine.pubsub.core.publisher import PublishLoop, PublishQueue
from celine.pubsub.core.registry import WorkerRegistry
from celine.pubsub.core.tasks import ErrorCallback, TaskSupervisor
from celine.pubsub.core.worker import Worker

logger = logging.getLogger(__name__)

PUBLISH_LOOP_TASK = "publish-loop"


def consume_task_name(topic: str) -> str:
    return f"consume:{topic}"


class Manager:
    """
    Coordinates publish and consume workers over one broker client.

    Example:
        manager = Manager(ManagerConfig(register_name="register"), client)
        manager.start()

        worker, _ = manager.consume_worker(Worker.for_consume("orders", "billing"))
        await manager.publish_worker(Worker.for_publish("orders", b"x"))

        msg = await worker.get_message()

        await manager.stop()
    """

    def __init__(
        self,
        config: ManagerConfig,
        client: BrokerClient,
        broker_config: Any = None,
        on_task_error: ErrorCallback | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._broker_config = broker_config

        self._done = asyncio.Event()
        self._registry = WorkerRegistry()
        self._queue = PublishQueue(config.publish_queue_size)
        self._supervisor = TaskSupervisor(on_error=on_task_error)
        self._consume_tasks: dict[str, ConsumeTask] = {}
        self._publish_loop: PublishLoop | None = None
        self._stopped = False

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> ManagerConfig:
        return self._config

    @property
    def broker_config(self) -> Any:
        """Client configuration handed to every consumer and producer."""
        return self._broker_config

    def set_broker_config(self, broker_config: Any) -> None:
        self._broker_config = broker_config

    @property
    def registry(self) -> WorkerRegistry:
        return self._registry

    @property
    def queue(self) -> PublishQueue:
        return self._queue

    @property
    def supervisor(self) -> TaskSupervisor:
        return self._supervisor

    @property
    def publish_loop(self) -> PublishLoop | None:
        return self._publish_loop

    @property
    def is_running(self) -> bool:
        handle = self._supervisor.get(PUBLISH_LOOP_TASK)
        return handle is not None and not handle.done

    @property
    def is_done(self) -> bool:
        return self._done.is_set()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def registry_worker(self, worker: Worker) -> tuple[Worker, bool]:
        return self._registry.register(worker)

    def worker(self, topic: str) -> tuple[Worker | None, bool]:
        return self._registry.get(topic)

    async def destroy_worker(self, topic: str) -> bool:
        """Remove and stop the worker for ``topic`` and end its consume task."""
        existed = await self._registry.destroy(topic)
        self._consume_tasks.pop(topic, None)
        await self._supervisor.cancel(consume_task_name(topic))
        return existed

    def workers(self) -> list[Worker]:
        return self._registry.list()

    def new_consume_worker(self, topic: str, channel: str) -> Worker:
        """A consumer worker sized by this manager's configuration."""
        return Worker.for_consume(
            topic,
            channel,
            buffer_size=self._config.message_buffer_size,
            delivery_timeout=self._config.delivery_timeout,
        )

    # ------------------------------------------------------------------
    # Publish / consume
    # ------------------------------------------------------------------

    async def publish_worker(self, worker: Worker) -> None:
        """Queue ``worker.data`` for publishing. Waits while the queue is full."""
        await self._queue.put(worker)

    async def warm_topic(self, topic: str) -> None:
        """Publish the liveness sentinel so ``topic`` exists on the broker."""
        await self.publish_worker(Worker.for_publish(topic, HELLO_WORLD))

    def consume_worker(self, worker: Worker, delay: float = 0) -> tuple[Worker, bool]:
        """
        Register ``worker`` and start consuming it in the background.

        A worker that is already registered (for example through
        ``registry_worker``) is still consumed, once. If the topic holds a
        different worker, or already has a live consume task, nothing is
        launched. The returned flag tells whether the registration was new.

        Raises:
            RuntimeError: If the manager has been stopped.
        """
        if self._stopped:
            raise RuntimeError("Manager has been stopped")

        registered, created = self._registry.register(worker)
        if registered is not worker:
            logger.debug("Topic %s held by another worker, not consuming", worker.topic)
            return registered, False
        if self._is_consuming(worker.topic):
            logger.debug("Worker for %s already consuming", worker.topic)
            return registered, created

        task = ConsumeTask(
            worker,
            self._client,
            self._config.consume_addr,
            config=self._broker_config,
            retry=self._config.retry,
            delay=delay,
            done=self._done,
        )
        self._consume_tasks[worker.topic] = task
        self._supervisor.spawn(consume_task_name(worker.topic), task.run())
        return worker, created

    def _is_consuming(self, topic: str) -> bool:
        handle = self._supervisor.get(consume_task_name(topic))
        return handle is not None and not handle.done

    def consume_task(self, topic: str) -> ConsumeTask | None:
        return self._consume_tasks.get(topic)

    # ------------------------------------------------------------------
    # Register handshake
    # ------------------------------------------------------------------

    def start_register_server(self, channel: str) -> Worker:
        """Ensure exactly one consumer exists on the registration topic."""
        existing, found = self._registry.get(self._config.register_name)
        if found and existing is not None:
            return existing

        worker = self.new_consume_worker(self._config.register_name, channel)
        registered, _ = self.consume_worker(worker, 0)
        logger.info(
            "Register server listening on %s/%s",
            self._config.register_name,
            channel,
        )
        return registered

    async def register_client(self, channel: str, message: WorkMessage) -> Worker:
        """
        Announce ``message`` on the registration topic, then consume
        ``message.topic`` on ``channel`` after the register-client delay.

        Raises:
            RuntimeError: If the manager has been stopped.
        """
        if self._stopped:
            raise RuntimeError("Manager has been stopped")

        await self.publish_worker(
            Worker.for_publish(self._config.register_name, message.to_bytes())
        )

        worker = self.new_consume_worker(message.topic, channel)
        registered, _ = self.consume_worker(worker, self._config.register_client_delay)
        logger.info("Registered client for %s/%s", message.topic, channel)
        return registered

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Launch the publish loop."""
        if self._stopped:
            raise RuntimeError("Manager has been stopped")
        if self.is_running:
            logger.warning("Manager already running")
            return

        self._publish_loop = PublishLoop(
            self._client,
            self._config.producer_addr,
            self._queue,
            self._done,
            config=self._broker_config,
        )
        self._supervisor.spawn(PUBLISH_LOOP_TASK, self._publish_loop.run())
        logger.info("Manager started")

    async def stop(self) -> None:
        """Signal cancellation, end background tasks and stop every worker."""
        if self._stopped:
            return
        self._stopped = True

        self._done.set()
        await self._supervisor.cancel_all()

        for worker in self._registry.list():
            try:
                await worker.stop()
            except Exception as exc:
                logger.warning("Error stopping worker %s: %s", worker.topic, exc)

        logger.info("Manager stopped")

    async def wait(self) -> None:
        """Return once the manager has been stopped."""
        await self._done.wait()

    async def __aenter__(self) -> "Manager":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def get_stats(self) -> dict[str, Any]:
        loop = self._publish_loop
        return {
            "running": self.is_running,
            "done": self.is_done,
            "queue_size": self._queue.qsize(),
            "queue_capacity": self._queue.maxsize,
            "workers": sorted(self._registry.topics()),
            "published": loop.published if loop else 0,
            "publish_errors": loop.failed if loop else 0,
            "consumers": {
                topic: task.state.value for topic, task in self._consume_tasks.items()
            },
            "tasks": {h.name: h.status.value for h in self._supervisor.list()},
        }


def create_manager(
    settings: Settings | None = None,
    client: BrokerClient | None = None,
    broker_config: Any = None,
    on_task_error: ErrorCallback | None = None,
) -> Manager:
    """
    Build a Manager from settings.

    The broker client defaults to ``settings.client_class``, instantiated
    without arguments.
    """
    settings = settings or Settings()

    if client is None:
        client_class = import_attr(settings.client_class)
        client = client_class()
        logger.info("Using broker client %s", settings.client_class)

    return Manager(
        ManagerConfig.from_settings(settings),
        client,
        broker_config=broker_config,
        on_task_error=on_task_error,
    )
