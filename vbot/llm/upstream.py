"""Streaming chat completions from an OpenAI-compatible provider.

The provider answers with server-sent events::

    data: {"choices": [{"delta": {"content": "Hi"}, "finish_reason": null}]}
    data: {"choices": [{"delta": {}, "finish_reason": "stop"}]}
    data: [DONE]

Only the extracted text fragments leave this module; the event framing is
an internal detail.
"""

from __future__ import annotations

import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from vbot.config import settings
from vbot.errors import UpstreamUnavailable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        settings.upstream_read_timeout_seconds,
        connect=settings.upstream_connect_timeout_seconds,
    )


class ChatCompletionStream:
    """One streaming completion request.

    Call ``open()`` first; it raises ``UpstreamUnavailable`` if the provider
    cannot be reached or rejects the request. Then iterate ``fragments()``.
    ``aclose()`` releases the connection and is safe to call repeatedly.
    """

    def __init__(
        self,
        messages: Sequence[dict[str, str]],
        *,
        client: httpx.AsyncClient | None = None,
        model: str | None = None,
    ) -> None:
        self._messages = list(messages)
        self._model = model or settings.chat_model
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=default_timeout())
        self._response: httpx.Response | None = None
        self._closed = False
        self.completed = False
        self.finish_reason: str | None = None

    def _request_body(self) -> dict[str, Any]:
        return {
            "model": self._model,
            "messages": self._messages,
            "stream": True,
            "max_tokens": settings.max_output_tokens,
            "temperature": settings.temperature,
        }

    async def open(self) -> None:
        request = self._client.build_request(
            "POST",
            settings.get_chat_completions_url(),
            json=self._request_body(),
            headers={"Authorization": f"Bearer {settings.openai_api_key}"},
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.error("Chat completion request failed: %s", exc)
            await self.aclose()
            raise UpstreamUnavailable(str(exc)) from exc

        self._response = response
        if not response.is_success:
            detail = ""
            with contextlib.suppress(httpx.HTTPError):
                detail = (await response.aread()).decode("utf-8", errors="replace")[:500]
            logger.error("Chat completion API error %d: %s", response.status_code, detail)
            await self.aclose()
            raise UpstreamUnavailable(f"provider returned {response.status_code}")

    def _parse_line(self, line: str) -> str | None:
        """Return the text carried by one event line, if any.

        Malformed lines are skipped rather than ending the stream.
        """
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_MARKER:
            self.completed = True
            return None

        try:
            event = json.loads(data)
            choice = event["choices"][0]
        except (ValueError, KeyError, IndexError, TypeError):
            logger.debug("Skipping malformed stream line: %.200s", line)
            return None
        if not isinstance(choice, dict):
            return None

        if choice.get("finish_reason"):
            self.finish_reason = str(choice["finish_reason"])
        delta = choice.get("delta")
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            return content
        return None

    async def fragments(self) -> AsyncIterator[str]:
        """Yield reply text as it arrives.

        Ends quietly (with ``completed`` still False) if the connection
        drops mid-stream.
        """
        if self._response is None:
            raise RuntimeError("open() must be called before fragments()")

        try:
            async for line in self._response.aiter_lines():
                fragment = self._parse_line(line)
                if fragment:
                    yield fragment
                if self.completed:
                    break
        except (httpx.HTTPError, httpx.StreamError) as exc:
            logger.warning("Chat completion stream ended early: %s", exc)
            return

        if self.finish_reason and not self.completed:
            self.completed = True

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._response is not None:
            await self._response.aclose()
        if self._owns_client:
            await self._client.aclose()
