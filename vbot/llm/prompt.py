"""Final message list sent to the language model."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

MEMORIES_HEADER = (
    "MEMORIES FROM PAST CONVERSATIONS WITH THIS USER "
    "(use these to personalize your response):"
)


def format_memories_block(retrieved_summary: str) -> str:
    """Frame the retrieved summary as memories from past conversations."""
    return f"{MEMORIES_HEADER}\n{retrieved_summary}"


def build_prompt(
    domain_summary: str,
    retrieved_summary: str,
    current_context: Sequence[dict[str, str]],
    new_user_message: str,
) -> list[dict[str, str]]:
    """Concatenate the prompt sections in priority order.

    Budgeting has already happened during context assembly; this only
    orders the pieces: profile, memories (if any), live thread, new message.
    """
    messages: list[dict[str, str]] = [{"role": "system", "content": domain_summary}]

    if retrieved_summary:
        messages.append({"role": "system", "content": format_memories_block(retrieved_summary)})

    messages.extend({"role": m["role"], "content": m["content"]} for m in current_context)
    messages.append({"role": "user", "content": new_user_message})
    return messages
