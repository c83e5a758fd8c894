"""Shared data models for relay-memory."""

from dataclasses import dataclass, field
from typing import NamedTuple

import pyarrow as pa
from lancedb.pydantic import LanceModel
from pydantic import field_validator

VALID_ROLES = frozenset({"user", "assistant"})


class Message(LanceModel):
    """Message table schema for LanceDB.

    IMPORTANT: Any changes to this schema require migration of existing data.
    Rows are written once and never updated.
    """

    id: int  # Monotonic, assigned by MessageStore.append
    channel: str
    author: str
    text: str
    role: str  # user | assistant
    timestamp: int  # Milliseconds since epoch, non-decreasing per process

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: str) -> str:
        if value not in VALID_ROLES:
            raise ValueError(f"Invalid role '{value}'. Valid: {sorted(VALID_ROLES)}")
        return value

    def to_context(self) -> dict:
        """Shape exposed to the chat layer."""
        return {
            "author": self.author,
            "text": self.text,
            "role": self.role,
            "timestamp": self.timestamp,
        }


def embedding_schema(dimension: int) -> pa.Schema:
    """Embedding table schema. The vector width is fixed when the table is created."""
    return pa.schema(
        [
            pa.field("message_id", pa.int64(), nullable=False),
            pa.field("channel", pa.string(), nullable=False),
            pa.field("vector", pa.list_(pa.float32(), dimension)),
        ]
    )


class SearchHit(NamedTuple):
    message_id: int
    distance: float  # 1 - cosine similarity, in [0, 2]


@dataclass(frozen=True, slots=True)
class MemoryStats:
    total_count: int = 0
    per_channel_counts: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EmbeddingOutcome:
    """Result of one background embedding job, handed to the outcome sink."""

    message_id: int
    status: str  # stored | failed | dropped | orphaned
    error: str | None = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "stored"
