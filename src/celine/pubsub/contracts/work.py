# celine/pubsub/contracts/work.py
"""
Handshake payload exchanged over the registration topic.
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

# Liveness probe body. Consumers acknowledge it without buffering.
HELLO_WORLD = b"hello world"


class WorkMessage(BaseModel):
    """Announces "please start consuming ``topic`` on ``channel``"."""

    model_config = ConfigDict(frozen=True)

    topic: str = Field(min_length=1)
    channel: str = ""

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, body: bytes) -> "WorkMessage":
        return cls.model_validate_json(body)
