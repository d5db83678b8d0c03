"""ConversationStore: libsql persistence for chat threads and messages.

Every public operation returns a :class:`~vbot.results.Result`. Transport
errors and timeouts become ``StoreUnavailable``; read paths still hand back an
empty list so callers can carry on with less context.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from vbot.config import settings
from vbot.db import connect
from vbot.errors import StoreUnavailable
from vbot.memory.models import (
    ROLES,
    Conversation,
    ConversationSummary,
    Message,
    make_id,
)
from vbot.memory.tokens import estimate_tokens
from vbot.results import Result

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from vbot.db import Connection

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 60
DEFAULT_TITLE = "New conversation"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS chat_conversations (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL REFERENCES chat_conversations(id),
        owner_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        embedding TEXT,
        token_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chat_conversations_owner"
    " ON chat_conversations (owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_conversation"
    " ON chat_messages (conversation_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_owner"
    " ON chat_messages (owner_id)",
)

_MESSAGE_COLUMNS = (
    "id, conversation_id, owner_id, role, content, embedding, token_count, created_at"
)


def _clip_title(text: str | None) -> str:
    if not text or not text.strip():
        return DEFAULT_TITLE
    title = " ".join(text.split())
    if len(title) > TITLE_MAX_CHARS:
        return title[:TITLE_MAX_CHARS] + "..."
    return title


class ConversationStore:
    """Persists conversation threads and their messages.

    Singleton accessed via ``ConversationStore.get()``.  Pass an explicit
    *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    _instance: ConversationStore | None = None

    def __init__(self, db_path: Path | None = None, timeout: float | None = None) -> None:
        self._db_path = db_path
        self._timeout = timeout if timeout is not None else settings.store_timeout_seconds

    @classmethod
    def get(cls) -> ConversationStore:
        """Return the shared ConversationStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _run(
        self,
        operation: str,
        work: Callable[[Connection], Awaitable[Any]],
    ) -> Any:
        """Run *work* on a fresh connection, bounded by the store timeout.

        Raises StoreUnavailable on any driver error or timeout.
        """

        async def _with_connection() -> Any:
            async with connect(_SCHEMA, local_path_override=self._db_path) as db:
                return await work(db)

        try:
            return await asyncio.wait_for(_with_connection(), timeout=self._timeout)
        except TimeoutError as exc:
            logger.warning("Store %s timed out after %.1fs", operation, self._timeout)
            raise StoreUnavailable(f"{operation} timed out") from exc
        except Exception as exc:
            logger.exception("Store %s failed", operation)
            raise StoreUnavailable(f"{operation} failed: {exc}") from exc

    # -- Threads ---------------------------------------------------------------

    async def resolve_or_create(
        self, owner_id: str, candidate_id: str | None = None
    ) -> Result[str]:
        """Return *candidate_id* if the owner has that thread, else a new thread's ID.

        A missing or foreign candidate is not an error: a fresh thread is
        created instead.
        """

        async def _work(db: Connection) -> str:
            if candidate_id:
                rows = await db.execute(
                    "SELECT id FROM chat_conversations WHERE id = ? AND owner_id = ?",
                    (candidate_id, owner_id),
                )
                if rows.one():
                    return candidate_id
                logger.info("Conversation %s not found for owner, creating new", candidate_id)

            conversation = Conversation(id=make_id(), owner_id=owner_id)
            await db.execute(
                "INSERT INTO chat_conversations (id, owner_id, created_at) VALUES (?, ?, ?)",
                conversation.to_row(),
            )
            await db.commit()
            logger.info("Created conversation %s", conversation.id)
            return conversation.id

        try:
            return Result.ok(await self._run("resolve_or_create", _work))
        except StoreUnavailable as exc:
            return Result.failed(exc)

    # -- Messages --------------------------------------------------------------

    async def append_message(
        self,
        conversation_id: str,
        owner_id: str,
        role: str,
        content: str,
        embedding: list[float] | None = None,
    ) -> Result[str]:
        """Insert one message and return its ID.

        The token count is estimated here so every stored message carries it.
        """
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role!r}")

        message = Message(
            id=make_id(),
            conversation_id=conversation_id,
            owner_id=owner_id,
            role=role,
            content=content,
            embedding=embedding,
            token_count=estimate_tokens(content),
        )

        async def _work(db: Connection) -> str:
            await db.execute(
                f"INSERT INTO chat_messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                message.to_row(),
            )
            await db.commit()
            logger.debug(
                "Stored %s message %s in %s (embedded=%s)",
                role,
                message.id,
                conversation_id,
                embedding is not None,
            )
            return message.id

        try:
            return Result.ok(await self._run("append_message", _work))
        except StoreUnavailable as exc:
            return Result.failed(exc)

    async def recent_messages(self, conversation_id: str, limit: int = 10) -> Result[list[Message]]:
        """Return the newest *limit* messages of a thread, oldest first."""

        async def _work(db: Connection) -> list[Message]:
            rows = await db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages WHERE conversation_id = ?"
                " ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (conversation_id, limit),
            )
            newest_first = [Message.from_row(row) for row in rows.all()]
            newest_first.reverse()
            return newest_first

        try:
            return Result.ok(await self._run("recent_messages", _work))
        except StoreUnavailable as exc:
            return Result.failed(exc, fallback=[])

    async def embedded_messages(
        self,
        owner_id: str,
        exclude_conversation_id: str | None = None,
        limit: int = 500,
    ) -> Result[list[Message]]:
        """Return the owner's newest *limit* embedded messages outside one thread."""

        async def _work(db: Connection) -> list[Message]:
            rows = await db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages"
                " WHERE owner_id = ? AND embedding IS NOT NULL AND conversation_id != ?"
                " ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (owner_id, exclude_conversation_id or "", limit),
            )
            return [Message.from_row(row) for row in rows.all()]

        try:
            return Result.ok(await self._run("embedded_messages", _work))
        except StoreUnavailable as exc:
            return Result.failed(exc, fallback=[])

    # -- History ---------------------------------------------------------------

    async def list_conversations(
        self, owner_id: str, limit: int = 20
    ) -> Result[list[ConversationSummary]]:
        """Return the owner's threads, most recently active first."""

        async def _work(db: Connection) -> list[ConversationSummary]:
            rows = await db.execute(
                """
                SELECT
                    c.id,
                    (SELECT opener.content FROM chat_messages AS opener
                      WHERE opener.conversation_id = c.id AND opener.role = 'user'
                      ORDER BY opener.created_at, opener.rowid LIMIT 1),
                    c.created_at,
                    COALESCE(MAX(m.created_at), c.created_at) AS updated_at,
                    COUNT(m.id)
                FROM chat_conversations AS c
                LEFT JOIN chat_messages AS m ON m.conversation_id = c.id
                WHERE c.owner_id = ?
                GROUP BY c.id, c.created_at
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (owner_id, limit),
            )
            return [
                ConversationSummary(
                    id=row[0],
                    title=_clip_title(row[1]),
                    created_at=row[2],
                    updated_at=row[3],
                    message_count=row[4],
                )
                for row in rows.all()
            ]

        try:
            return Result.ok(await self._run("list_conversations", _work))
        except StoreUnavailable as exc:
            return Result.failed(exc, fallback=[])

    async def conversation_messages(
        self, owner_id: str, conversation_id: str
    ) -> Result[list[Message] | None]:
        """Return a whole thread oldest first, or None if the owner has no such thread."""

        async def _work(db: Connection) -> list[Message] | None:
            owned = await db.execute(
                "SELECT id FROM chat_conversations WHERE id = ? AND owner_id = ?",
                (conversation_id, owner_id),
            )
            if not owned.one():
                return None
            rows = await db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages WHERE conversation_id = ?"
                " ORDER BY created_at, rowid",
                (conversation_id,),
            )
            return [Message.from_row(row) for row in rows.all()]

        try:
            return Result.ok(await self._run("conversation_messages", _work))
        except StoreUnavailable as exc:
            return Result.failed(exc)
