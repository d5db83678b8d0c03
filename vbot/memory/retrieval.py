"""Similarity search over a user's other conversations.

Scoring is done in Python over the newest ``candidate_limit`` embedded
messages, so each turn costs at most that many decodes and dot products.
Older messages fall out of reach once a user has more history than that.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

from vbot.memory.models import RetrievedMemory

if TYPE_CHECKING:
    from vbot.memory.models import Message
    from vbot.memory.store import ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.6
DEFAULT_TOP_K = 5
DEFAULT_CANDIDATE_LIMIT = 500


def cosine_similarity(vec_a: list[float], vec_b: list[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 when undefined."""
    if len(vec_a) != len(vec_b):
        return 0.0
    dot = sum(a * b for a, b in zip(vec_a, vec_b, strict=True))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def rank_candidates(
    query_vector: list[float],
    candidates: list[Message],
    threshold: float,
    top_k: int,
) -> list[RetrievedMemory]:
    """Score *candidates* and keep the best *top_k* at or above *threshold*.

    Ties on similarity go to the newer message, then to the message ID.
    """
    scored: list[tuple[float, Message]] = []
    for message in candidates:
        if not message.embedding:
            continue
        similarity = cosine_similarity(query_vector, message.embedding)
        if similarity >= threshold:
            scored.append((similarity, message))

    scored.sort(key=lambda pair: pair[1].id)
    scored.sort(key=lambda pair: (pair[0], pair[1].created_at), reverse=True)
    return [
        RetrievedMemory(role=message.role, content=message.content, similarity=similarity)
        for similarity, message in scored[: max(top_k, 0)]
    ]


class RetrievalEngine:
    """Finds past messages similar to a query vector.

    Results are always scoped to one owner and never include the active
    thread. Retrieval is best-effort: any failure yields an empty list.
    """

    def __init__(self, store: ConversationStore) -> None:
        self._store = store

    async def retrieve(
        self,
        owner_id: str,
        query_vector: list[float],
        exclude_conversation_id: str | None,
        threshold: float = DEFAULT_THRESHOLD,
        top_k: int = DEFAULT_TOP_K,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
    ) -> list[RetrievedMemory]:
        try:
            candidates = await self._store.embedded_messages(
                owner_id, exclude_conversation_id, candidate_limit
            )
            if not candidates.success:
                logger.warning("Retrieval skipped: %s", candidates.error)
                return []

            # Scope holds here even if the store query is wrong.
            scoped = [
                m
                for m in candidates.value or []
                if m.owner_id == owner_id and m.conversation_id != exclude_conversation_id
            ]
            memories = rank_candidates(query_vector, scoped, threshold, top_k)
        except Exception:
            logger.exception("Retrieval failed")
            return []

        logger.info(
            "Retrieved %d memories from %d candidates (threshold=%.2f)",
            len(memories),
            len(scoped),
            threshold,
        )
        return memories
