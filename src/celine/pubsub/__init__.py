"""
Worker registry and dispatch manager for publish/subscribe brokers.

Example usage:

    from celine.pubsub import Worker, WorkMessage, create_manager

    manager = create_manager()

    async with manager:
        manager.start_register_server("workers")
        await manager.register_client("workers", WorkMessage(topic="orders", channel="workers"))
        await manager.publish_worker(Worker.for_publish("orders", b"x"))
        await manager.wait()
"""

from celine.pubsub.contracts import (
    HELLO_WORLD,
    BrokerClient,
    ConsumerHandle,
    InboundMessage,
    MessageHandler,
    ProducerHandle,
    WorkMessage,
)
from celine.pubsub.core.config import ManagerConfig, RetryPolicy, Settings, load_manager_config
from celine.pubsub.core.consumer import ConsumeState, ConsumeTask
from celine.pubsub.core.errors import (
    BrokerConnectionError,
    ClientCreationError,
    DeliveryTimeoutError,
    PublishError,
    PubSubError,
)
from celine.pubsub.core.logging import configure_logging
from celine.pubsub.core.manager import Manager, create_manager
from celine.pubsub.core.publisher import PublishLoop, PublishQueue
from celine.pubsub.core.registry import WorkerRegistry
from celine.pubsub.core.tasks import SupervisedTask, TaskStatus, TaskSupervisor
from celine.pubsub.core.worker import Worker

__all__ = [
    # Contracts
    "HELLO_WORLD",
    "BrokerClient",
    "ConsumerHandle",
    "InboundMessage",
    "MessageHandler",
    "ProducerHandle",
    "WorkMessage",
    # Configuration
    "ManagerConfig",
    "RetryPolicy",
    "Settings",
    "load_manager_config",
    "configure_logging",
    # Errors
    "PubSubError",
    "ClientCreationError",
    "BrokerConnectionError",
    "DeliveryTimeoutError",
    "PublishError",
    # Core
    "Worker",
    "WorkerRegistry",
    "PublishQueue",
    "PublishLoop",
    "ConsumeState",
    "ConsumeTask",
    "SupervisedTask",
    "TaskStatus",
    "TaskSupervisor",
    "Manager",
    "create_manager",
]
