"""Data models for conversation storage and retrieval."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from pydantic import BaseModel

ROLES = frozenset({"user", "assistant", "system"})


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def make_id() -> str:
    """Generate a new conversation or message ID."""
    return uuid.uuid4().hex


@dataclass
class Conversation:
    """A thread of messages between one user and the coach."""

    id: str
    owner_id: str
    created_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = utc_now()

    def to_row(self) -> tuple:
        return (self.id, self.owner_id, self.created_at)


@dataclass
class Message:
    """A single stored message.

    Attributes:
        id: Unique identifier (UUID hex).
        conversation_id: Owning thread.
        owner_id: Owner of the thread, repeated for scoped retrieval.
        role: ``"user"``, ``"assistant"`` or ``"system"``.
        content: Plain text.
        embedding: Vector for similarity search, or None when embedding failed.
        token_count: Estimated tokens, computed at write time.
        created_at: ISO 8601 timestamp; orders messages within a thread.
    """

    id: str
    conversation_id: str
    owner_id: str
    role: str
    content: str
    embedding: list[float] | None = None
    token_count: int = 0
    created_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = utc_now()

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``chat_messages`` column order."""
        return (
            self.id,
            self.conversation_id,
            self.owner_id,
            self.role,
            self.content,
            json.dumps(self.embedding) if self.embedding is not None else None,
            self.token_count,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Message:
        """Deserialize from a ``chat_messages`` row tuple."""
        return cls(
            id=row[0],
            conversation_id=row[1],
            owner_id=row[2],
            role=row[3],
            content=row[4],
            embedding=json.loads(row[5]) if row[5] else None,
            token_count=row[6] or 0,
            created_at=row[7],
        )

    def to_api(self) -> dict[str, str]:
        """Format for the model's message list."""
        return {"role": self.role, "content": self.content}


@dataclass
class ConversationSummary:
    """One row of a user's conversation history list."""

    id: str
    title: str
    created_at: str
    updated_at: str
    message_count: int

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messageCount": self.message_count,
        }


class RetrievedMemory(BaseModel):
    """A message from another thread that scored above the threshold."""

    role: str
    content: str
    similarity: float = 0.0
