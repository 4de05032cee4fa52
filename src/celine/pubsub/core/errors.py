from __future__ import annotations


class PubSubError(Exception):
    pass


class ClientCreationError(PubSubError):
    """The broker client rejected a consumer or producer construction."""


class BrokerConnectionError(PubSubError, ConnectionError):
    """Discovery or producer connection failed."""


class DeliveryTimeoutError(PubSubError, TimeoutError):
    """A worker's inbound buffer stayed full for the whole delivery window."""


class PublishError(PubSubError):
    """A single publish call failed."""
