# tests/broker/test_mqtt_client.py
"""Tests for the MQTT adapter with aiomqtt mocked out."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import aiomqtt
import pytest
from paho.mqtt.client import MQTT_ERR_NO_CONN

from celine.pubsub.broker.mqtt import (
    MqttClient,
    MqttClientConfig,
    parse_address,
)
from celine.pubsub.core.errors import (
    BrokerConnectionError,
    ClientCreationError,
    PublishError,
)
from celine.pubsub.core.worker import Worker


def _mock_client(messages=(), error: Exception | None = None) -> MagicMock:
    async def _messages():
        for message in messages:
            yield message
        if error is not None:
            raise error

    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=None)
    client.subscribe = AsyncMock()
    client.publish = AsyncMock()
    client.messages = _messages()
    return client


class TestParseAddress:
    def test_host_and_port(self):
        assert parse_address("broker:8883") == ("broker", 8883)

    def test_default_port(self):
        assert parse_address("broker") == ("broker", 1883)

    @pytest.mark.parametrize("address", ["", "   ", ":1883", "broker:abc"])
    def test_invalid(self, address: str):
        with pytest.raises(ValueError):
            parse_address(address)


class TestMqttClient:
    def test_invalid_qos(self):
        with pytest.raises(ValueError, match="QoS"):
            MqttClientConfig(qos=3)

    def test_client_ids_are_unique(self):
        config = MqttClientConfig(client_id_prefix="svc")

        first, second = config.new_client_id(), config.new_client_id()

        assert first.startswith("svc-")
        assert first != second

    @pytest.mark.parametrize(
        "topic,channel",
        [("", "ch"), ("orders", ""), ("orders/#", "ch"), ("orders", "a/b"), ("orders", "c+")],
    )
    def test_invalid_names(self, topic: str, channel: str):
        with pytest.raises(ClientCreationError):
            MqttClient().create_consumer(topic, channel)

    def test_invalid_producer_address(self):
        with pytest.raises(ClientCreationError):
            MqttClient().create_producer("broker:port")

    def test_wrong_config_type(self):
        with pytest.raises(ClientCreationError, match="MqttClientConfig"):
            MqttClient().create_consumer("orders", "billing", {"qos": 1})

    def test_kwargs_build_config(self):
        client = MqttClient(username="svc", qos=0)

        assert client.config.username == "svc"
        assert client.config.qos == 0


class TestMqttConsumer:
    @pytest.mark.asyncio
    async def test_subscribes_to_shared_subscription(self):
        mock = _mock_client()
        consumer = MqttClient().create_consumer("orders", "billing")

        with patch("celine.pubsub.broker.mqtt.aiomqtt.Client", return_value=mock) as ctor:
            await consumer.connect_to_discovery("broker:1884")
            await consumer.connect_to_discovery("broker:1884")

        assert ctor.call_count == 1
        assert ctor.call_args.kwargs["hostname"] == "broker"
        assert ctor.call_args.kwargs["port"] == 1884
        mock.subscribe.assert_awaited_once_with("$share/billing/orders", qos=1)
        assert consumer.is_connected

        await consumer.stop()

        mock.__aexit__.assert_awaited_once()
        assert not consumer.is_connected

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        mock = _mock_client()
        mock.__aenter__.side_effect = aiomqtt.MqttError("refused")
        consumer = MqttClient().create_consumer("orders", "billing")

        with patch("celine.pubsub.broker.mqtt.aiomqtt.Client", return_value=mock):
            with pytest.raises(BrokerConnectionError, match="refused"):
                await consumer.connect_to_discovery("broker:1883")

        assert not consumer.is_connected

    @pytest.mark.asyncio
    async def test_subscribe_failure_disconnects(self):
        mock = _mock_client()
        mock.subscribe.side_effect = aiomqtt.MqttError("not authorized")
        consumer = MqttClient().create_consumer("orders", "billing")

        with patch("celine.pubsub.broker.mqtt.aiomqtt.Client", return_value=mock):
            with pytest.raises(BrokerConnectionError, match="subscribe"):
                await consumer.connect_to_discovery("broker:1883")

        mock.__aexit__.assert_awaited_once()
        assert not consumer.is_connected

    @pytest.mark.asyncio
    async def test_messages_reach_worker(self):
        mock = _mock_client(
            [SimpleNamespace(topic="orders", payload=b"x", mid=7)]
        )
        worker = Worker.for_consume("orders", "billing")
        consumer = worker.consumer(MqttClient())

        with patch("celine.pubsub.broker.mqtt.aiomqtt.Client", return_value=mock):
            await consumer.connect_to_discovery("broker:1883")

        received = await worker.get_message(timeout=1.0)

        assert received.topic == "orders"
        assert received.body == b"x"
        assert received.message_id == "7"
        assert consumer.receive_count == 1

        await worker.stop()
        assert not consumer.is_connected

    @pytest.mark.asyncio
    async def test_reconnects_after_connection_loss(self):
        first = _mock_client(
            [SimpleNamespace(topic="orders", payload=b"1", mid=1)],
            error=aiomqtt.MqttError("Disconnected during message iteration"),
        )
        second = _mock_client([SimpleNamespace(topic="orders", payload=b"2", mid=2)])
        worker = Worker.for_consume("orders", "billing")
        consumer = worker.consumer(MqttClient(MqttClientConfig(reconnect_interval=0)))

        with patch(
            "celine.pubsub.broker.mqtt.aiomqtt.Client", side_effect=[first, second]
        ) as ctor:
            await consumer.connect_to_discovery("broker:1883")
            received = [
                await worker.get_message(timeout=1.0),
                await worker.get_message(timeout=1.0),
            ]

        assert [m.body for m in received] == [b"1", b"2"]
        assert ctor.call_count == 2
        first.__aexit__.assert_awaited_once()
        second.subscribe.assert_awaited_once_with("$share/billing/orders", qos=1)
        assert consumer.reconnect_count == 1
        assert consumer.error_count == 1
        assert consumer.is_connected

        await worker.stop()
        second.__aexit__.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gives_up_reconnecting(self, eventually):
        first = _mock_client(error=aiomqtt.MqttError("Disconnected"))
        second = _mock_client()
        second.__aenter__.side_effect = aiomqtt.MqttError("refused")
        consumer = MqttClient(
            MqttClientConfig(reconnect_interval=0, max_reconnect_attempts=1)
        ).create_consumer("orders", "billing")

        with patch(
            "celine.pubsub.broker.mqtt.aiomqtt.Client", side_effect=[first, second]
        ) as ctor:
            await consumer.connect_to_discovery("broker:1883")
            await eventually(lambda: ctor.call_count == 2)
            await asyncio.sleep(0.01)

        assert not consumer.is_connected
        assert consumer.reconnect_count == 0
        first.__aexit__.assert_awaited_once()

        await consumer.stop()

    @pytest.mark.asyncio
    async def test_handler_error_is_counted(self):
        mock = _mock_client(
            [SimpleNamespace(topic="orders", payload="text", mid=1)]
        )
        handler = MagicMock()
        handler.handle_message = AsyncMock(side_effect=RuntimeError("boom"))
        consumer = MqttClient().create_consumer("orders", "billing")
        consumer.add_handler(handler)

        with patch("celine.pubsub.broker.mqtt.aiomqtt.Client", return_value=mock):
            await consumer.connect_to_discovery("broker:1883")
        await asyncio.sleep(0.01)

        handler.handle_message.assert_awaited_once()
        assert handler.handle_message.await_args.args[0].body == b"text"
        assert consumer.error_count == 1

        await consumer.stop()


class TestMqttProducer:
    @pytest.mark.asyncio
    async def test_ping_connects_once(self):
        mock = _mock_client()
        producer = MqttClient().create_producer("broker:1883")

        with patch("celine.pubsub.broker.mqtt.aiomqtt.Client", return_value=mock) as ctor:
            await producer.ping()
            await producer.ping()

        assert ctor.call_count == 1
        mock.__aenter__.assert_awaited_once()
        assert producer.is_connected

    @pytest.mark.asyncio
    async def test_publish_forwards(self):
        mock = _mock_client()
        producer = MqttClient(MqttClientConfig(qos=2)).create_producer("broker:1883")

        with patch("celine.pubsub.broker.mqtt.aiomqtt.Client", return_value=mock):
            await producer.ping()
        await producer.publish("orders", b"x")

        mock.publish.assert_awaited_once_with("orders", payload=b"x", qos=2)
        assert producer.publish_count == 1

    @pytest.mark.asyncio
    async def test_publish_before_ping(self):
        producer = MqttClient().create_producer("broker:1883")

        with pytest.raises(BrokerConnectionError):
            await producer.publish("orders", b"x")

    @pytest.mark.asyncio
    async def test_publish_timeout_keeps_connection(self):
        mock = _mock_client()
        mock.publish.side_effect = [aiomqtt.MqttError("Operation timed out"), None]
        producer = MqttClient().create_producer("broker:1883")

        with patch("celine.pubsub.broker.mqtt.aiomqtt.Client", return_value=mock):
            await producer.ping()

            with pytest.raises(PublishError):
                await producer.publish("orders", b"x")
            await producer.ping()
            await producer.publish("orders", b"y")

        assert producer.is_connected
        assert producer.publish_count == 1

    @pytest.mark.asyncio
    async def test_disconnect_on_publish_marks_connection_lost(self):
        mock = _mock_client()
        mock.publish.side_effect = aiomqtt.MqttCodeError(
            MQTT_ERR_NO_CONN, "Could not publish message"
        )
        producer = MqttClient().create_producer("broker:1883")

        with patch("celine.pubsub.broker.mqtt.aiomqtt.Client", return_value=mock):
            await producer.ping()

            with pytest.raises(PublishError):
                await producer.publish("orders", b"x")
            with pytest.raises(BrokerConnectionError, match="lost"):
                await producer.ping()

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        mock = _mock_client()
        mock.__aenter__.side_effect = OSError("no route")
        producer = MqttClient().create_producer("broker:1883")

        with patch("celine.pubsub.broker.mqtt.aiomqtt.Client", return_value=mock):
            with pytest.raises(BrokerConnectionError):
                await producer.ping()

    @pytest.mark.asyncio
    async def test_stop(self):
        mock = _mock_client()
        producer = MqttClient().create_producer("broker:1883")

        with patch("celine.pubsub.broker.mqtt.aiomqtt.Client", return_value=mock):
            await producer.ping()
        await producer.stop()
        await producer.stop()

        mock.__aexit__.assert_awaited_once()
        assert not producer.is_connected
