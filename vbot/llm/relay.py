"""Relay upstream reply fragments to the client as frames."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from vbot.llm.frames import Frame, Terminal, TextDelta

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

DEFAULT_FINISH_REASON = "stop"


class UpstreamStream(Protocol):
    completed: bool
    finish_reason: str | None

    def fragments(self) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


class StreamingRelay:
    """Forwards fragments as ``TextDelta`` frames while buffering the reply.

    A single ``Terminal`` frame closes the stream, and only when the
    upstream signalled completion. If the upstream drops out early, the
    frames just stop; whatever arrived so far stays in ``text``.
    """

    def __init__(self, upstream: UpstreamStream, conversation_id: str) -> None:
        self._upstream = upstream
        self._conversation_id = conversation_id
        self._parts: list[str] = []
        self.completed = False

    @property
    def text(self) -> str:
        """Everything forwarded so far."""
        return "".join(self._parts)

    async def frames(self) -> AsyncIterator[Frame]:
        try:
            async for fragment in self._upstream.fragments():
                self._parts.append(fragment)
                yield TextDelta(fragment)

            if self._upstream.completed:
                self.completed = True
                yield Terminal(
                    finish_reason=self._upstream.finish_reason or DEFAULT_FINISH_REASON,
                    conversation_id=self._conversation_id,
                )
            else:
                logger.warning(
                    "Upstream ended without completing (%d chars buffered)", len(self.text)
                )
        finally:
            await self._upstream.aclose()

    async def aclose(self) -> None:
        """Release the upstream connection, even if ``frames()`` never ran."""
        await self._upstream.aclose()
