# tests/core/test_consumer.py
"""Tests for ConsumeTask and RetryPolicy."""
from __future__ import annotations

import asyncio

import pytest

from celine.pubsub.broker.memory import InMemoryBrokerClient
from celine.pubsub.core.config import RetryPolicy
from celine.pubsub.core.consumer import ConsumeState, ConsumeTask
from celine.pubsub.core.errors import BrokerConnectionError, ClientCreationError
from celine.pubsub.core.worker import Worker

FAST_RETRY = RetryPolicy(initial_delay=0.01, max_delay=0.02)


class TestRetryPolicy:
    def test_exponential_growth_is_capped(self):
        policy = RetryPolicy(initial_delay=0.5, max_delay=3.0, multiplier=2.0)

        assert policy.delay_for(0) == 0.0
        assert policy.delay_for(1) == 0.5
        assert policy.delay_for(2) == 1.0
        assert policy.delay_for(3) == 2.0
        assert policy.delay_for(4) == 3.0
        assert policy.delay_for(10) == 3.0

    def test_exhausted(self):
        assert not RetryPolicy(max_attempts=0).exhausted(1000)
        assert not RetryPolicy(max_attempts=3).exhausted(2)
        assert RetryPolicy(max_attempts=3).exhausted(3)


class TestConsumeTask:
    @pytest.mark.asyncio
    async def test_connects_and_runs_until_worker_stops(
        self, client: InMemoryBrokerClient, eventually
    ):
        worker = Worker.for_consume("orders", "billing")
        consume = ConsumeTask(worker, client, "lookup:4161", retry=FAST_RETRY)
        assert consume.state is ConsumeState.CREATED

        task = asyncio.create_task(consume.run())
        await eventually(lambda: consume.state is ConsumeState.RUNNING)

        assert client.consumers[0].connected
        assert consume.attempts == 0

        await worker.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert consume.state is ConsumeState.STOPPED

    @pytest.mark.asyncio
    async def test_retries_with_backoff(self, client: InMemoryBrokerClient, eventually):
        client.connect_failures = 2
        worker = Worker.for_consume("orders", "billing")
        consume = ConsumeTask(worker, client, "lookup:4161", retry=FAST_RETRY)

        task = asyncio.create_task(consume.run())
        await eventually(lambda: consume.state is ConsumeState.RUNNING)

        assert consume.attempts == 2
        assert isinstance(consume.last_error, BrokerConnectionError)
        assert client.consumers[0].connect_calls == 3
        # the same handle is reused across attempts
        assert len(client.consumers) == 1

        await worker.stop()
        await task

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, client: InMemoryBrokerClient):
        client.connect_failures = 10
        worker = Worker.for_consume("orders", "billing")
        consume = ConsumeTask(
            worker,
            client,
            "lookup:4161",
            retry=RetryPolicy(initial_delay=0.0, max_attempts=3),
        )

        with pytest.raises(BrokerConnectionError, match="lookup:4161"):
            await consume.run()

        assert consume.attempts == 3
        assert consume.state is ConsumeState.STOPPED

    @pytest.mark.asyncio
    async def test_backoff_wait_is_cancellable(self, client: InMemoryBrokerClient, eventually):
        client.connect_failures = 100
        worker = Worker.for_consume("orders", "billing")
        consume = ConsumeTask(
            worker, client, "lookup:4161", retry=RetryPolicy(initial_delay=60.0)
        )

        task = asyncio.create_task(consume.run())
        await eventually(lambda: consume.attempts == 1)
        assert consume.state is ConsumeState.CONNECTING

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert task.cancelled()
        assert consume.state is ConsumeState.STOPPED
        assert client.consumers[0].connect_calls == 1

    @pytest.mark.asyncio
    async def test_start_delay(self, client: InMemoryBrokerClient):
        worker = Worker.for_consume("orders", "billing")
        consume = ConsumeTask(worker, client, "lookup:4161", delay=60)

        task = asyncio.create_task(consume.run())
        await asyncio.sleep(0.02)

        assert consume.delay == 60
        assert consume.state is ConsumeState.CREATED
        assert client.consumers == []

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert consume.state is ConsumeState.STOPPED
        assert client.consumers == []

    @pytest.mark.asyncio
    async def test_short_delay_then_connect(self, client: InMemoryBrokerClient, eventually):
        worker = Worker.for_consume("orders", "billing")
        consume = ConsumeTask(worker, client, "lookup:4161", delay=0.05)

        task = asyncio.create_task(consume.run())
        await eventually(lambda: consume.state is ConsumeState.RUNNING)

        await worker.stop()
        await task

    @pytest.mark.asyncio
    async def test_creation_failure_propagates(self, client: InMemoryBrokerClient):
        worker = Worker.for_consume("orders", "bad channel!")
        consume = ConsumeTask(worker, client, "lookup:4161")

        with pytest.raises(ClientCreationError):
            await consume.run()

        assert consume.state is ConsumeState.STOPPED


class TestConsumeTaskDoneSignal:
    @pytest.mark.asyncio
    async def test_already_done_never_connects(self, client: InMemoryBrokerClient):
        done = asyncio.Event()
        done.set()
        consume = ConsumeTask(
            Worker.for_consume("orders", "billing"), client, "lookup:4161", done=done
        )

        await asyncio.wait_for(consume.run(), timeout=0.5)

        assert consume.state is ConsumeState.STOPPED
        assert client.consumers == []

    @pytest.mark.asyncio
    async def test_done_ends_start_delay(self, client: InMemoryBrokerClient):
        done = asyncio.Event()
        consume = ConsumeTask(
            Worker.for_consume("orders", "billing"),
            client,
            "lookup:4161",
            delay=60,
            done=done,
        )
        task = asyncio.create_task(consume.run())
        await asyncio.sleep(0.02)

        done.set()
        await asyncio.wait_for(task, timeout=0.5)

        assert consume.state is ConsumeState.STOPPED
        assert client.consumers == []

    @pytest.mark.asyncio
    async def test_done_ends_backoff(self, client: InMemoryBrokerClient, eventually):
        client.connect_failures = 100
        done = asyncio.Event()
        worker = Worker.for_consume("orders", "billing")
        consume = ConsumeTask(
            worker,
            client,
            "lookup:4161",
            retry=RetryPolicy(initial_delay=60.0),
            done=done,
        )
        task = asyncio.create_task(consume.run())
        await eventually(lambda: consume.attempts == 1)

        done.set()
        await asyncio.wait_for(task, timeout=0.5)

        assert consume.state is ConsumeState.STOPPED
        assert client.consumers[0].connect_calls == 1
        assert worker.is_stopped

    @pytest.mark.asyncio
    async def test_done_ends_running_consumer(
        self, client: InMemoryBrokerClient, eventually
    ):
        done = asyncio.Event()
        worker = Worker.for_consume("orders", "billing")
        consume = ConsumeTask(worker, client, "lookup:4161", done=done)
        task = asyncio.create_task(consume.run())
        await eventually(lambda: consume.state is ConsumeState.RUNNING)

        done.set()
        await asyncio.wait_for(task, timeout=0.5)

        assert consume.state is ConsumeState.STOPPED
        assert worker.closed.is_set()
        assert client.consumers[0].stopped
