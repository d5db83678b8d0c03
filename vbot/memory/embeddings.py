"""Embedding client for semantic memory (OpenAI embeddings API)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from vbot.config import settings
from vbot.errors import EmbeddingUnavailable
from vbot.results import Result

if TYPE_CHECKING:
    from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 8000


class EmbeddingClient:
    """Turns text into a fixed-dimension vector.

    Makes exactly one provider call per ``embed()`` and never retries;
    retry policy belongs to the caller. Without ``OPENAI_API_KEY`` the
    client is disabled and every call fails fast.
    """

    _instance: EmbeddingClient | None = None

    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None) -> None:
        self._client = client
        self._model = model or settings.embedding_model
        self._enabled = client is not None or bool(settings.openai_api_key)
        if not self._enabled:
            logger.warning("Embeddings disabled, set OPENAI_API_KEY to enable memory retrieval")

    @classmethod
    def get(cls) -> EmbeddingClient:
        """Return the shared EmbeddingClient instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _get_client(self) -> AsyncOpenAI:
        """Lazily initialize the AsyncOpenAI client."""
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                timeout=settings.embedding_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def embed(self, text: str) -> Result[list[float]]:
        """Embed *text*, clipped to ``MAX_INPUT_CHARS`` characters."""
        if not self._enabled:
            return Result.failed(EmbeddingUnavailable("embedding client is disabled"))

        clipped = text[:MAX_INPUT_CHARS]
        try:
            response = await self._get_client().embeddings.create(
                model=self._model,
                input=clipped,
            )
            vector = list(response.data[0].embedding)
        except Exception as exc:
            logger.warning("Embedding request failed: %s", exc)
            return Result.failed(EmbeddingUnavailable(str(exc)))

        if not vector:
            logger.warning("Embedding provider returned an empty vector")
            return Result.failed(EmbeddingUnavailable("empty embedding"))
        return Result.ok(vector)
