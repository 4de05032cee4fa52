"""Public contracts for the worker manager."""
from celine.pubsub.contracts.broker import (
    BrokerClient,
    ConsumerHandle,
    InboundMessage,
    MessageHandler,
    ProducerHandle,
)
from celine.pubsub.contracts.work import HELLO_WORLD, WorkMessage

__all__ = [
    "BrokerClient",
    "ConsumerHandle",
    "InboundMessage",
    "MessageHandler",
    "ProducerHandle",
    "HELLO_WORLD",
    "WorkMessage",
]
