"""One chat turn, from incoming message to persisted reply.

Order of work for a turn::

    resolve thread → embed query → retrieve memories → recent messages
    → assemble context → build prompt → store user message (background)
    → open upstream stream → relay frames → store assistant reply

Enrichment steps (embedding, retrieval, recent messages, profile) degrade to
empty results on failure. Only two failures abort a turn before streaming:
the thread cannot be resolved, or the upstream stream cannot be opened.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import httpx

from vbot.config import settings
from vbot.llm.prompt import build_prompt
from vbot.llm.relay import StreamingRelay
from vbot.llm.upstream import ChatCompletionStream, default_timeout
from vbot.memory.context import ContextBudget, assemble_context
from vbot.memory.embeddings import EmbeddingClient
from vbot.memory.retrieval import RetrievalEngine
from vbot.memory.store import ConversationStore
from vbot.profile import DEFAULT_PERSONA, MarkdownProfileProvider

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Sequence

    from vbot.llm.frames import Frame
    from vbot.memory.models import RetrievedMemory
    from vbot.profile import DomainSummaryProvider
    from vbot.results import Result

    UpstreamFactory = Callable[[Sequence[dict[str, str]]], ChatCompletionStream]

logger = logging.getLogger(__name__)


class ChatTurn:
    """A turn whose upstream stream is open and ready to relay.

    Iterate ``frames()`` to forward the reply. However iteration ends
    (normally, upstream failure, client disconnect, cancellation), the
    reply buffered so far is persisted exactly once. Call ``finish()``
    directly when the frames are never iterated.
    """

    def __init__(
        self,
        pipeline: ChatPipeline,
        conversation_id: str,
        owner_id: str,
        relay: StreamingRelay,
        user_append: asyncio.Task[Result[str]],
    ) -> None:
        self.conversation_id = conversation_id
        self.owner_id = owner_id
        self.relay = relay
        self._pipeline = pipeline
        self._user_append = user_append
        self._finish_task: asyncio.Future[Result[str] | None] | None = None

    async def frames(self) -> AsyncIterator[Frame]:
        try:
            async for frame in self.relay.frames():
                yield frame
        finally:
            await self.finish()

    async def finish(self) -> Result[str] | None:
        """Close the upstream and persist the reply; idempotent."""
        if self._finish_task is None:
            self._finish_task = asyncio.ensure_future(self._finish())
        return await asyncio.shield(self._finish_task)

    async def _finish(self) -> Result[str] | None:
        await self.relay.aclose()

        # The user's message must land before the reply does.
        user_result = await self._user_append
        if not user_result.success:
            logger.warning(
                "User message for %s was not stored: %s", self.conversation_id, user_result.error
            )

        return await self._pipeline.persist_reply(
            self.conversation_id, self.owner_id, self.relay.text
        )


class ChatPipeline:
    """Wires the store, embeddings, retrieval and upstream into chat turns."""

    def __init__(
        self,
        store: ConversationStore | None = None,
        embeddings: EmbeddingClient | None = None,
        retrieval: RetrievalEngine | None = None,
        profiles: DomainSummaryProvider | None = None,
        budget: ContextBudget | None = None,
        upstream_factory: UpstreamFactory | None = None,
    ) -> None:
        self.store = store or ConversationStore.get()
        self.embeddings = embeddings or EmbeddingClient.get()
        self.retrieval = retrieval or RetrievalEngine(self.store)
        self.profiles = profiles or MarkdownProfileProvider()
        self.budget = budget or ContextBudget.from_settings()
        self._upstream_factory = upstream_factory
        self._http_client: httpx.AsyncClient | None = None

    def _get_http_client(self) -> httpx.AsyncClient:
        """Lazily create the shared HTTP client for upstream calls."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=default_timeout())
        return self._http_client

    def _open_upstream(self, prompt: Sequence[dict[str, str]]) -> ChatCompletionStream:
        if self._upstream_factory is not None:
            return self._upstream_factory(prompt)
        return ChatCompletionStream(prompt, client=self._get_http_client())

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # -- Context ---------------------------------------------------------------

    async def _memories(
        self, owner_id: str, conversation_id: str, query_vector: list[float] | None
    ) -> list[RetrievedMemory]:
        if query_vector is None:
            return []
        return await self.retrieval.retrieve(
            owner_id,
            query_vector,
            conversation_id,
            threshold=settings.retrieval_threshold,
            top_k=settings.retrieval_top_k,
            candidate_limit=settings.retrieval_candidate_limit,
        )

    async def _domain_summary(self, owner_id: str) -> str:
        try:
            return await self.profiles.summary(owner_id)
        except Exception:
            logger.exception("Profile summary failed, using default persona")
            return DEFAULT_PERSONA

    # -- Turn ------------------------------------------------------------------

    async def start_turn(
        self, owner_id: str, query: str, candidate_conversation_id: str | None = None
    ) -> ChatTurn:
        """Prepare context, store the query and open the upstream stream.

        Raises:
            StoreUnavailable: the thread could not be resolved or created.
            UpstreamUnavailable: the model stream could not be opened.
        """
        resolved = await self.store.resolve_or_create(owner_id, candidate_conversation_id)
        if not resolved.success:
            raise resolved.error
        conversation_id = resolved.value

        embedded = await self.embeddings.embed(query)
        if not embedded.success:
            logger.warning("Query embedding unavailable, skipping retrieval: %s", embedded.error)
        query_vector = embedded.value if embedded.success else None

        memories = await self._memories(owner_id, conversation_id, query_vector)

        recent = await self.store.recent_messages(conversation_id, settings.recent_message_limit)
        if not recent.success:
            logger.warning("Recent messages unavailable: %s", recent.error)

        assembled = assemble_context(recent.value or [], memories, self.budget)
        prompt = build_prompt(
            await self._domain_summary(owner_id),
            assembled.retrieved_summary,
            assembled.current_context,
            query,
        )
        logger.info(
            "Turn %s: %d context messages, %d memories, %d prompt entries",
            conversation_id,
            len(assembled.current_context),
            len(memories),
            len(prompt),
        )

        user_append = asyncio.create_task(
            self.store.append_message(conversation_id, owner_id, "user", query, query_vector)
        )

        upstream = self._open_upstream(prompt)
        try:
            await upstream.open()
        except BaseException:
            await asyncio.shield(self._abandon_turn(upstream, user_append))
            raise

        relay = StreamingRelay(upstream, conversation_id)
        return ChatTurn(self, conversation_id, owner_id, relay, user_append)

    async def _abandon_turn(
        self, upstream: ChatCompletionStream, user_append: asyncio.Task[Result[str]]
    ) -> None:
        """Release an upstream that never opened and let the query land."""
        await upstream.aclose()
        result = await user_append
        if not result.success:
            logger.warning("User message was not stored: %s", result.error)

    async def persist_reply(
        self, conversation_id: str, owner_id: str, text: str
    ) -> Result[str] | None:
        """Store the assistant's reply, embedded when possible.

        Returns None when there was nothing to store.
        """
        if not text:
            logger.info("Empty reply for %s, nothing to store", conversation_id)
            return None

        embedded = await self.embeddings.embed(text)
        if not embedded.success:
            logger.warning("Storing reply for %s without embedding: %s", conversation_id, embedded.error)

        result = await self.store.append_message(
            conversation_id,
            owner_id,
            "assistant",
            text,
            embedded.value if embedded.success else None,
        )
        if not result.success:
            logger.error("Failed to store reply for %s: %s", conversation_id, result.error)
        return result
