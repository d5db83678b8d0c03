"""Tagged result type for best-effort collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from vbot.errors import VBotError

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a collaborator call.

    Collaborators that are allowed to degrade (embedding, store) return one
    of these instead of raising. A failed result still carries a usable
    ``value`` when the caller can continue with a neutral fallback (an
    empty message list, for example).
    """

    value: T | None = None
    error: VBotError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failed(cls, error: VBotError, fallback: T | None = None) -> Result[T]:
        return cls(value=fallback, error=error)
