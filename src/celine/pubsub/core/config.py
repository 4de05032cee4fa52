# celine/pubsub/core/config.py
"""
Configuration for the worker manager.

Environment variables (prefix ``CELINE_PUBSUB_``) override defaults via
``Settings``. ``ManagerConfig`` is the immutable view the manager consumes;
it can be built from settings or from a YAML file.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from celine.pubsub.core.loader import load_yaml_file, substitute_env_vars

logger = logging.getLogger(__name__)

DEFAULT_PUBLISH_QUEUE_SIZE = 5
DEFAULT_MESSAGE_BUFFER_SIZE = 1024
DEFAULT_DELIVERY_TIMEOUT = 5.0
DEFAULT_REGISTER_CLIENT_DELAY = 5


class Settings(BaseSettings):
    """Environment-driven settings with sensible defaults."""

    model_config = SettingsConfigDict(
        env_prefix="CELINE_PUBSUB_",
        env_file=".env",
        extra="ignore",
    )

    log_level: str = "INFO"

    producer_addr: str = Field(
        default="localhost:1883",
        description="host:port of the broker node used for publishing",
    )
    consume_addr: str = Field(
        default="localhost:1883",
        description="host:port of the discovery service consumers connect to",
    )
    register_name: str = Field(
        default="register",
        description="Well-known topic used for the register handshake",
    )
    client_class: str = Field(
        default="celine.pubsub.broker.mqtt:MqttClient",
        description="Broker client import path ('module:Class')",
    )

    publish_queue_size: int = Field(default=DEFAULT_PUBLISH_QUEUE_SIZE, ge=1)
    message_buffer_size: int = Field(default=DEFAULT_MESSAGE_BUFFER_SIZE, ge=1)
    delivery_timeout: float = Field(default=DEFAULT_DELIVERY_TIMEOUT, gt=0)
    register_client_delay: float = Field(default=DEFAULT_REGISTER_CLIENT_DELAY, ge=0)

    # Consumer reconnection backoff
    retry_initial_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1)
    retry_max_attempts: int = Field(default=0, ge=0)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff for consumer connection attempts.

    Attributes:
        initial_delay: Seconds to wait after the first failure.
        max_delay: Upper bound for a single wait.
        multiplier: Growth factor applied after every failure.
        max_attempts: Give up after this many failures (0 = never).
    """

    initial_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    max_attempts: int = 0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            return 0.0
        delay = self.initial_delay * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts > 0 and attempt >= self.max_attempts


@dataclass(frozen=True)
class ManagerConfig:
    """
    Manager configuration. Supplied at construction, never changed afterwards.

    Attributes:
        producer_addr: Address of the broker node the publish loop uses.
        consume_addr: Address of the discovery service consumers connect to.
        register_name: Well-known registration topic.
        publish_queue_size: Capacity of the publish queue.
        message_buffer_size: Capacity of each worker's inbound buffer.
        delivery_timeout: Seconds a delivery may wait for buffer space.
        register_client_delay: Start delay for the self-subscription made by
            ``register_client``.
        retry: Consumer connection backoff.
    """

    producer_addr: str = "localhost:1883"
    consume_addr: str = "localhost:1883"
    register_name: str = "register"
    publish_queue_size: int = DEFAULT_PUBLISH_QUEUE_SIZE
    message_buffer_size: int = DEFAULT_MESSAGE_BUFFER_SIZE
    delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT
    register_client_delay: float = DEFAULT_REGISTER_CLIENT_DELAY
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ManagerConfig":
        return cls(
            producer_addr=settings.producer_addr,
            consume_addr=settings.consume_addr,
            register_name=settings.register_name,
            publish_queue_size=settings.publish_queue_size,
            message_buffer_size=settings.message_buffer_size,
            delivery_timeout=settings.delivery_timeout,
            register_client_delay=settings.register_client_delay,
            retry=RetryPolicy(
                initial_delay=settings.retry_initial_delay,
                max_delay=settings.retry_max_delay,
                multiplier=settings.retry_multiplier,
                max_attempts=settings.retry_max_attempts,
            ),
        )


def _coerce_int(value: Any) -> int:
    return int(value)


def _coerce_float(value: Any) -> float:
    return float(value)


def _coerce_str(value: Any) -> str:
    return str(value)


# Env substitution yields strings; YAML may hold ints where floats are meant.
_MANAGER_COERCIONS: dict[str, Callable[[Any], Any]] = {
    "producer_addr": _coerce_str,
    "consume_addr": _coerce_str,
    "register_name": _coerce_str,
    "publish_queue_size": _coerce_int,
    "message_buffer_size": _coerce_int,
    "delivery_timeout": _coerce_float,
    "register_client_delay": _coerce_float,
}

_RETRY_COERCIONS: dict[str, Callable[[Any], Any]] = {
    "initial_delay": _coerce_float,
    "max_delay": _coerce_float,
    "multiplier": _coerce_float,
    "max_attempts": _coerce_int,
}


def _coerce_section(
    section: str, raw: dict[str, Any], coercions: dict[str, Callable[[Any], Any]]
) -> dict[str, Any]:
    unknown = set(raw) - set(coercions)
    if unknown:
        raise ValueError(f"Unknown {section} config keys: {sorted(unknown)}")

    values: dict[str, Any] = {}
    for key, value in raw.items():
        try:
            values[key] = coercions[key](value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid {section} config value for '{key}': {value!r}") from exc
    return values


def load_manager_config(path: str | Path) -> ManagerConfig:
    """
    Load a manager configuration from YAML.

    Expected YAML structure:
    ```yaml
    pubsub:
      producer_addr: "${BROKER_HOST:-localhost}:1883"
      consume_addr: "${BROKER_HOST:-localhost}:1883"
      register_name: register
      publish_queue_size: "${PUBSUB_QUEUE_SIZE:-5}"
      retry:
        initial_delay: 0.5
        max_delay: 30
    ```

    Values are converted to the field types, so env-substituted numbers
    work.

    Raises:
        ValueError: If the file is missing the ``pubsub`` section, holds
            unknown keys, or a value cannot be converted.
    """
    data = load_yaml_file(path)

    if "pubsub" not in data:
        raise ValueError(f"Config file '{path}' missing required 'pubsub' section")

    raw = dict(substitute_env_vars(data["pubsub"] or {}))
    retry_raw = raw.pop("retry", None) or {}
    if not isinstance(retry_raw, dict):
        raise ValueError("Invalid retry config: expected a mapping")

    values = _coerce_section("pubsub", raw, _MANAGER_COERCIONS)
    retry = _coerce_section("retry", retry_raw, _RETRY_COERCIONS)

    config = ManagerConfig(**values, retry=RetryPolicy(**retry))
    logger.info(
        "Loaded manager config: producer=%s consume=%s register=%s",
        config.producer_addr,
        config.consume_addr,
        config.register_name,
    )
    return config
