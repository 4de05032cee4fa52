"""
Broker clients for the worker manager.

- ``MqttClient``: aiomqtt-backed client for real deployments
- ``InMemoryBrokerClient``: loopback client for local runs and tests
"""

from celine.pubsub.broker.memory import InMemoryBrokerClient
from celine.pubsub.broker.mqtt import MqttClient, MqttClientConfig, parse_address

__all__ = [
    "InMemoryBrokerClient",
    "MqttClient",
    "MqttClientConfig",
    "parse_address",
]
