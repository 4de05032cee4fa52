# tests/conftest.py
from __future__ import annotations

import asyncio
from typing import Callable

import pytest
import pytest_asyncio

from celine.pubsub.broker.memory import InMemoryBrokerClient
from celine.pubsub.core.config import ManagerConfig, RetryPolicy
from celine.pubsub.core.manager import Manager


async def _eventually(
    predicate: Callable[[], bool], timeout: float = 1.0, interval: float = 0.005
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    """Poll a predicate until it holds, failing after a timeout."""
    return _eventually


@pytest.fixture
def client() -> InMemoryBrokerClient:
    return InMemoryBrokerClient()


@pytest.fixture
def config() -> ManagerConfig:
    return ManagerConfig(
        producer_addr="producer:4150",
        consume_addr="lookup:4161",
        register_name="register",
        retry=RetryPolicy(initial_delay=0.01, max_delay=0.05),
    )


@pytest_asyncio.fixture
async def manager(config: ManagerConfig, client: InMemoryBrokerClient):
    m = Manager(config, client)
    try:
        yield m
    finally:
        await m.stop()
