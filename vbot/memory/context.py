"""Token-budgeted context assembly.

The current thread always wins: its recent turns are admitted first, and
cross-thread memories only get their own, separate allowance. Nothing from
the current thread is ever dropped to make room for a memory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from vbot.config import settings
from vbot.memory.tokens import estimate_tokens

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from vbot.memory.models import RetrievedMemory

SNIPPET_MAX_CHARS = 300
USER_LABEL = "User previously said"
ASSISTANT_LABEL = "You previously told them"


class _HasRoleAndContent(Protocol):
    role: str
    content: str


@dataclass(frozen=True)
class ContextBudget:
    """Token allocation across prompt sections."""

    system_prompt_tokens: int = 2500
    current_conversation_tokens: int = 2500
    retrieved_context_tokens: int = 800
    total_tokens: int = 5800

    @classmethod
    def from_settings(cls) -> ContextBudget:
        return cls(
            system_prompt_tokens=settings.system_prompt_tokens,
            current_conversation_tokens=settings.current_conversation_tokens,
            retrieved_context_tokens=settings.retrieved_context_tokens,
            total_tokens=settings.total_tokens,
        )


@dataclass
class AssembledContext:
    current_context: list[dict[str, str]] = field(default_factory=list)
    retrieved_summary: str = ""


def _normalize(text: str) -> str:
    return text.strip().lower()


def format_memory(memory: RetrievedMemory) -> str:
    """Render one memory as a labelled snippet, clipping long content."""
    label = USER_LABEL if memory.role == "user" else ASSISTANT_LABEL
    content = memory.content
    if len(content) > SNIPPET_MAX_CHARS:
        content = content[:SNIPPET_MAX_CHARS] + "..."
    return f'{label}: "{content}"'


def select_current(
    recent_messages: Iterable[_HasRoleAndContent], budget: int
) -> list[dict[str, str]]:
    """Take the longest chronological prefix that stays under *budget*."""
    selected: list[dict[str, str]] = []
    used = 0
    for message in recent_messages:
        tokens = estimate_tokens(message.content)
        if used + tokens >= budget:
            break
        selected.append({"role": message.role, "content": message.content})
        used += tokens
    return selected


def summarize_memories(
    memories: Sequence[RetrievedMemory],
    current_context: Sequence[dict[str, str]],
    budget: int,
) -> str:
    """Build the memory block, first-fit in the order given."""
    seen = {_normalize(entry["content"]) for entry in current_context}
    snippets: list[str] = []
    used = 0
    for memory in memories:
        if _normalize(memory.content) in seen:
            continue
        snippet = format_memory(memory)
        tokens = estimate_tokens(snippet)
        if used + tokens >= budget:
            break
        snippets.append(snippet)
        used += tokens
    return "\n".join(snippets)


def assemble_context(
    recent_messages: Iterable[_HasRoleAndContent],
    retrieved_memories: Sequence[RetrievedMemory],
    budget: ContextBudget,
) -> AssembledContext:
    """Merge the live thread and retrieved memories under *budget*.

    Args:
        recent_messages: Current-thread messages, oldest first.
        retrieved_memories: Memories from other threads, best match first.
        budget: Token allocation; only the current-conversation and
            retrieved-context allowances are consumed here.
    """
    current = select_current(recent_messages, budget.current_conversation_tokens)
    summary = summarize_memories(retrieved_memories, current, budget.retrieved_context_tokens)
    return AssembledContext(current_context=current, retrieved_summary=summary)
