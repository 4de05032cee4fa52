# celine/pubsub/broker/mqtt.py
"""
MQTT broker client for the worker manager.

Adapts aiomqtt to the consumer/producer handle contract. A worker channel
maps to an MQTT shared subscription (``$share/<channel>/<topic>``), so every
channel on a topic receives its own copy of each message and the members of
one channel share the load.

Usage:
    client = MqttClient(MqttClientConfig(username="svc", password="..."))
    manager = Manager(ManagerConfig(producer_addr="broker:1883",
                                    consume_addr="broker:1883"), client)
"""
from __future__ import annotations

import asyncio
import logging
import ssl
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

import aiomqtt
from paho.mqtt.client import MQTT_ERR_CONN_LOST, MQTT_ERR_NO_CONN

from celine.pubsub.contracts.broker import InboundMessage, MessageHandler
from celine.pubsub.core.errors import (
    BrokerConnectionError,
    ClientCreationError,
    PublishError,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 1883


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class MqttClientConfig:
    """
    Configuration shared by every MQTT consumer and producer.

    Attributes:
        client_id_prefix: Prefix for generated client identifiers.
        username: Optional authentication username.
        password: Optional authentication password.
        use_tls: Whether to use TLS encryption.
        ca_certs: Path to CA certificate file for TLS.
        certfile: Path to client certificate for mutual TLS.
        keyfile: Path to client private key for mutual TLS.
        keepalive: Keepalive interval in seconds.
        clean_session: Whether to start with a clean session.
        qos: QoS level used for subscriptions and publishes.
        reconnect_interval: Seconds between consumer reconnection attempts.
        max_reconnect_attempts: Give up reconnecting a consumer after this
            many failures (0 = never).
    """

    client_id_prefix: str = "celine-pubsub"
    username: str | None = None
    password: str | None = None
    use_tls: bool = False
    ca_certs: str | None = None
    certfile: str | None = None
    keyfile: str | None = None
    keepalive: int = 60
    clean_session: bool = True
    qos: int = 1
    reconnect_interval: float = 5.0
    max_reconnect_attempts: int = 0

    def __post_init__(self):
        if self.qos not in (0, 1, 2):
            raise ValueError(f"Invalid QoS level: {self.qos}")

    def new_client_id(self) -> str:
        return f"{self.client_id_prefix}-{uuid4().hex[:8]}"


def parse_address(address: str) -> tuple[str, int]:
    """
    Split ``host:port`` (port optional, defaults to 1883).

    Raises:
        ValueError: If the address is empty or the port is not a number.
    """
    if not address or not address.strip():
        raise ValueError("Broker address must not be empty")

    host, sep, port = address.strip().rpartition(":")
    if not sep:
        return address.strip(), DEFAULT_PORT
    if not host:
        raise ValueError(f"Invalid broker address '{address}'")

    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"Invalid port in broker address '{address}'") from None


def _build_tls_context(config: MqttClientConfig) -> ssl.SSLContext | None:
    """Build SSL context if TLS is enabled."""
    if not config.use_tls:
        return None

    context = ssl.create_default_context()

    if config.ca_certs:
        context.load_verify_locations(config.ca_certs)

    if config.certfile and config.keyfile:
        context.load_cert_chain(certfile=config.certfile, keyfile=config.keyfile)

    return context


def _validate_name(kind: str, name: str) -> None:
    if not name:
        raise ClientCreationError(f"MQTT {kind} must not be empty")
    if any(ch in name for ch in "+#"):
        raise ClientCreationError(f"MQTT {kind} '{name}' must not contain wildcards")
    if kind == "channel" and "/" in name:
        raise ClientCreationError(f"MQTT channel '{name}' must not contain '/'")


def _new_client(address: str, config: MqttClientConfig) -> aiomqtt.Client:
    host, port = parse_address(address)
    return aiomqtt.Client(
        hostname=host,
        port=port,
        identifier=config.new_client_id(),
        username=config.username,
        password=config.password,
        tls_context=_build_tls_context(config),
        keepalive=config.keepalive,
        clean_session=config.clean_session,
    )


def _is_disconnect(exc: aiomqtt.MqttError) -> bool:
    """True when a publish failed because the connection is gone."""
    return isinstance(exc, aiomqtt.MqttCodeError) and exc.rc in (
        MQTT_ERR_NO_CONN,
        MQTT_ERR_CONN_LOST,
    )


def _payload_bytes(payload: Any) -> bytes:
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if payload is None:
        return b""
    return str(payload).encode("utf-8")


# =============================================================================
# Consumer
# =============================================================================


class MqttConsumer:
    """
    Shared subscription on one topic/channel pair.

    When the connection drops, the listener reconnects and resubscribes every
    ``reconnect_interval`` seconds until it succeeds or
    ``max_reconnect_attempts`` is reached. ``is_connected`` is False in
    between.
    """

    def __init__(self, topic: str, channel: str, config: MqttClientConfig) -> None:
        self._topic = topic
        self._channel = channel
        self._config = config
        self._handlers: list[MessageHandler] = []

        self._client: aiomqtt.Client | None = None
        self._listener_task: asyncio.Task | None = None

        self._receive_count = 0
        self._error_count = 0
        self._reconnect_count = 0

    @property
    def subscription(self) -> str:
        return f"$share/{self._channel}/{self._topic}"

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def receive_count(self) -> int:
        return self._receive_count

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def reconnect_count(self) -> int:
        return self._reconnect_count

    def add_handler(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    async def connect_to_discovery(self, address: str) -> None:
        """
        Connect to the broker at ``address`` and subscribe.

        Idempotent while the listener is alive.

        Raises:
            BrokerConnectionError: If connecting or subscribing fails.
        """
        if self._listener_task is not None and not self._listener_task.done():
            return

        self._client = await self._open(address)
        self._listener_task = asyncio.create_task(
            self._listen_loop(address),
            name=f"mqtt-consumer:{self._topic}/{self._channel}",
        )
        logger.info("Subscribed to %s via %s", self.subscription, address)

    async def _open(self, address: str) -> aiomqtt.Client:
        try:
            client = _new_client(address, self._config)
        except ValueError as exc:
            raise BrokerConnectionError(str(exc)) from exc

        try:
            await client.__aenter__()
        except (aiomqtt.MqttError, OSError) as exc:
            raise BrokerConnectionError(
                f"Failed to connect consumer {self.subscription} to {address}: {exc}"
            ) from exc

        try:
            await client.subscribe(self.subscription, qos=self._config.qos)
        except aiomqtt.MqttError as exc:
            await self._exit_client(client)
            raise BrokerConnectionError(
                f"Failed to subscribe to {self.subscription}: {exc}"
            ) from exc

        return client

    async def _listen_loop(self, address: str) -> None:
        try:
            while self._client is not None:
                client = self._client
                try:
                    async for message in client.messages:
                        await self._dispatch(message)
                    return
                except aiomqtt.MqttError as exc:
                    self._error_count += 1
                    logger.warning("Connection lost on %s: %s", self.subscription, exc)

                self._client = None
                await self._exit_client(client)
                self._client = await self._reconnect(address)
        except asyncio.CancelledError:
            logger.debug("Listener loop cancelled for %s", self.subscription)
            raise

    async def _reconnect(self, address: str) -> aiomqtt.Client | None:
        attempts = 0
        while True:
            attempts += 1
            limit = self._config.max_reconnect_attempts
            if limit > 0 and attempts > limit:
                logger.error(
                    "Giving up reconnecting %s after %d attempt(s)",
                    self.subscription,
                    limit,
                )
                return None

            await asyncio.sleep(self._config.reconnect_interval)
            try:
                client = await self._open(address)
            except BrokerConnectionError as exc:
                logger.warning(
                    "Reconnect attempt %d for %s failed: %s",
                    attempts,
                    self.subscription,
                    exc,
                )
                continue

            self._reconnect_count += 1
            logger.info("Resubscribed to %s via %s", self.subscription, address)
            return client

    async def _dispatch(self, message: aiomqtt.Message) -> None:
        self._receive_count += 1

        inbound = InboundMessage(
            topic=str(message.topic),
            body=_payload_bytes(message.payload),
            message_id=str(message.mid),
        )

        for handler in self._handlers:
            try:
                await handler.handle_message(inbound)
            except Exception as exc:
                # MQTT has no requeue; the message is lost for this handler.
                self._error_count += 1
                logger.error("Handler error on %s: %s", self.subscription, exc)

    async def stop(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

        client, self._client = self._client, None
        if client is not None:
            await self._exit_client(client)
            logger.info("Unsubscribed from %s", self.subscription)

    @staticmethod
    async def _exit_client(client: aiomqtt.Client) -> None:
        try:
            await client.__aexit__(None, None, None)
        except Exception as exc:
            logger.warning("Error during MQTT disconnect: %s", exc)


# =============================================================================
# Producer
# =============================================================================


class MqttProducer:
    """Single outbound MQTT connection. Connects on the first ``ping()``."""

    def __init__(self, address: str, config: MqttClientConfig) -> None:
        self._address = address
        self._config = config
        self._client: aiomqtt.Client | None = None
        self._connected = False
        self._publish_count = 0

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    @property
    def publish_count(self) -> int:
        return self._publish_count

    async def ping(self) -> None:
        """
        Raises:
            BrokerConnectionError: If the connection is down and cannot be
                established.
        """
        if self.is_connected:
            return

        if self._client is not None:
            # A publish found the connection gone.
            raise BrokerConnectionError(f"Producer connection to {self._address} lost")

        client = _new_client(self._address, self._config)
        try:
            await client.__aenter__()
        except (aiomqtt.MqttError, OSError) as exc:
            raise BrokerConnectionError(
                f"Failed to connect producer to {self._address}: {exc}"
            ) from exc

        self._client = client
        self._connected = True
        logger.info("Producer connected to %s", self._address)

    async def publish(self, topic: str, body: bytes) -> None:
        if not self.is_connected or self._client is None:
            raise BrokerConnectionError("Producer is not connected")

        try:
            await self._client.publish(topic, payload=body, qos=self._config.qos)
        except aiomqtt.MqttError as exc:
            if _is_disconnect(exc):
                self._connected = False
            raise PublishError(f"Failed to publish to {topic}: {exc}") from exc

        self._publish_count += 1
        logger.debug("Published to %s (size=%d bytes)", topic, len(body))

    async def stop(self) -> None:
        client, self._client = self._client, None
        self._connected = False
        if client is None:
            return
        try:
            await client.__aexit__(None, None, None)
        except Exception as exc:
            logger.warning("Error during MQTT disconnect: %s", exc)
        logger.info("Producer disconnected from %s", self._address)


# =============================================================================
# Client factory
# =============================================================================


class MqttClient:
    """
    Broker client creating MQTT consumer and producer handles.

    ``config`` is the default used when the manager passes no client
    configuration of its own.
    """

    def __init__(self, config: MqttClientConfig | None = None, **kwargs: Any) -> None:
        self._config = config or MqttClientConfig(**kwargs)

    @property
    def config(self) -> MqttClientConfig:
        return self._config

    def _resolve(self, config: Any) -> MqttClientConfig:
        if config is None:
            return self._config
        if not isinstance(config, MqttClientConfig):
            raise ClientCreationError(
                f"Expected MqttClientConfig, got {type(config).__name__}"
            )
        return config

    def create_consumer(
        self, topic: str, channel: str, config: Any = None
    ) -> MqttConsumer:
        _validate_name("topic", topic)
        _validate_name("channel", channel)
        return MqttConsumer(topic, channel, self._resolve(config))

    def create_producer(self, address: str, config: Any = None) -> MqttProducer:
        try:
            parse_address(address)
        except ValueError as exc:
            raise ClientCreationError(str(exc)) from exc
        return MqttProducer(address, self._resolve(config))
