"""Tests for the chat HTTP server."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp.test_utils import TestClient, TestServer

from vbot.chat.pipeline import ChatPipeline
from vbot.errors import StoreUnavailable, UpstreamUnavailable
from vbot.llm.frames import Terminal, TextDelta, iter_frames
from vbot.memory.store import ConversationStore
from vbot.results import Result
from vbot.server import create_app

AUTH = {"X-User-Id": "alice"}


# -- Helpers -------------------------------------------------------------------


class FakeUpstream:
    def __init__(self, fragments: list[str], fail_open: bool = False) -> None:
        self._fragments = fragments
        self._fail_open = fail_open
        self.completed = False
        self.finish_reason: str | None = None

    async def open(self) -> None:
        if self._fail_open:
            raise UpstreamUnavailable("provider returned 500")

    async def fragments(self):
        for fragment in self._fragments:
            yield fragment
        self.completed = True
        self.finish_reason = "stop"

    async def aclose(self) -> None:
        pass


class StaticProfile:
    async def summary(self, owner_id: str) -> str:
        return "You are a test coach."


def _pipeline(store: ConversationStore, upstream: FakeUpstream | None = None) -> ChatPipeline:
    embeddings = MagicMock()
    embeddings.embed = AsyncMock(return_value=Result.ok([1.0, 0.0]))
    return ChatPipeline(
        store=store,
        embeddings=embeddings,
        profiles=StaticProfile(),
        upstream_factory=lambda prompt: upstream or FakeUpstream(["Hello", " athlete"]),
    )


def _mock_pipeline() -> MagicMock:
    pipeline = MagicMock()
    pipeline.start_turn = AsyncMock()
    pipeline.aclose = AsyncMock()
    return pipeline


async def _make_client(pipeline) -> TestClient:
    client = TestClient(TestServer(create_app(pipeline=pipeline)))
    await client.start_server()
    return client


def _body(text: str = "How was my week?") -> dict:
    return {"messages": [{"role": "user", "content": text}]}


# -- Health / CORS -------------------------------------------------------------


async def test_health_check() -> None:
    client = await _make_client(_mock_pipeline())
    try:
        resp = await client.get("/health")
        assert resp.status == 200
        assert (await resp.json())["status"] == "ok"
    finally:
        await client.close()


async def test_preflight() -> None:
    client = await _make_client(_mock_pipeline())
    try:
        resp = await client.options("/chat")
        assert resp.status == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        assert "x-user-id" in resp.headers["Access-Control-Allow-Headers"]
        assert resp.headers["Access-Control-Expose-Headers"] == "X-Conversation-Id"
    finally:
        await client.close()


async def test_pipeline_closed_on_cleanup() -> None:
    pipeline = _mock_pipeline()
    client = await _make_client(pipeline)
    await client.close()
    pipeline.aclose.assert_awaited_once()


# -- Chat: rejections ------------------------------------------------------------


async def test_chat_requires_identity() -> None:
    pipeline = _mock_pipeline()
    client = await _make_client(pipeline)
    try:
        resp = await client.post("/chat", json=_body())
        assert resp.status == 401
        pipeline.start_turn.assert_not_awaited()
    finally:
        await client.close()


@pytest.mark.parametrize(
    "body",
    [
        {"messages": []},
        {},
        {"messages": [{"role": "user"}]},
        {"messages": [{"role": "robot", "content": "hi"}]},
    ],
)
async def test_chat_rejects_invalid_body(body: dict) -> None:
    pipeline = _mock_pipeline()
    client = await _make_client(pipeline)
    try:
        resp = await client.post("/chat", json=body, headers=AUTH)
        assert resp.status == 400
        data = await resp.json()
        assert data["error"] == "Invalid request: messages required"
        assert data["details"]
        pipeline.start_turn.assert_not_awaited()
    finally:
        await client.close()


async def test_chat_rejects_non_json() -> None:
    pipeline = _mock_pipeline()
    client = await _make_client(pipeline)
    try:
        resp = await client.post("/chat", data="not json", headers=AUTH)
        assert resp.status == 400
        pipeline.start_turn.assert_not_awaited()
    finally:
        await client.close()


async def test_chat_requires_a_user_message() -> None:
    pipeline = _mock_pipeline()
    client = await _make_client(pipeline)
    try:
        body = {"messages": [{"role": "assistant", "content": "Hi!"}]}
        resp = await client.post("/chat", json=body, headers=AUTH)
        assert resp.status == 400
        assert (await resp.json())["error"] == "No user message found"
        pipeline.start_turn.assert_not_awaited()
    finally:
        await client.close()


async def test_chat_store_unavailable() -> None:
    pipeline = _mock_pipeline()
    pipeline.start_turn.side_effect = StoreUnavailable("down")
    client = await _make_client(pipeline)
    try:
        resp = await client.post("/chat", json=_body(), headers=AUTH)
        assert resp.status == 500
    finally:
        await client.close()


@pytest.mark.usefixtures("_no_turso")
async def test_chat_upstream_unavailable(store: ConversationStore) -> None:
    client = await _make_client(_pipeline(store, FakeUpstream([], fail_open=True)))
    try:
        resp = await client.post("/chat", json=_body(), headers=AUTH)
        assert resp.status == 500
        assert "error" in await resp.json()
    finally:
        await client.close()


# -- Chat: streaming -------------------------------------------------------------


@pytest.mark.usefixtures("_no_turso")
async def test_chat_streams_frames(store: ConversationStore) -> None:
    client = await _make_client(_pipeline(store))
    try:
        resp = await client.post("/chat", json=_body(), headers=AUTH)
        assert resp.status == 200
        assert resp.headers["X-Vercel-AI-Data-Stream"] == "v1"
        assert resp.headers["Content-Type"].startswith("text/plain")
        assert resp.headers["Access-Control-Expose-Headers"] == "X-Conversation-Id"
        conversation_id = resp.headers["X-Conversation-Id"]

        frames = list(iter_frames((await resp.text()).splitlines()))
        assert frames == [
            TextDelta("Hello"),
            TextDelta(" athlete"),
            Terminal(finish_reason="stop", conversation_id=conversation_id),
        ]
    finally:
        await client.close()


@pytest.mark.usefixtures("_no_turso")
async def test_chat_persists_turn(store: ConversationStore) -> None:
    client = await _make_client(_pipeline(store))
    try:
        resp = await client.post("/chat", json=_body("Rate my sleep"), headers=AUTH)
        await resp.text()
        conversation_id = resp.headers["X-Conversation-Id"]
    finally:
        await client.close()

    messages = (await store.conversation_messages("alice", conversation_id)).value
    assert [(m.role, m.content) for m in messages] == [
        ("user", "Rate my sleep"),
        ("assistant", "Hello athlete"),
    ]


@pytest.mark.usefixtures("_no_turso")
async def test_chat_continues_conversation(store: ConversationStore) -> None:
    conv = (await store.resolve_or_create("alice")).value
    client = await _make_client(_pipeline(store))
    try:
        body = {**_body(), "conversationId": conv}
        resp = await client.post("/chat", json=body, headers=AUTH)
        await resp.text()
        assert resp.headers["X-Conversation-Id"] == conv
    finally:
        await client.close()


# -- History ---------------------------------------------------------------------


@pytest.mark.usefixtures("_no_turso")
async def test_list_conversations(store: ConversationStore) -> None:
    conv = (await store.resolve_or_create("alice")).value
    await store.append_message(conv, "alice", "user", "Plan my deload week")
    await store.resolve_or_create("bob")
    client = await _make_client(_pipeline(store))
    try:
        resp = await client.get("/conversations", headers=AUTH)
        assert resp.status == 200
        data = await resp.json()
        assert len(data["conversations"]) == 1
        summary = data["conversations"][0]
        assert summary["id"] == conv
        assert summary["title"] == "Plan my deload week"
        assert summary["messageCount"] == 1
        assert {"createdAt", "updatedAt"} <= summary.keys()
    finally:
        await client.close()


@pytest.mark.usefixtures("_no_turso")
@pytest.mark.parametrize("limit", ["0", "101", "abc"])
async def test_list_conversations_rejects_bad_limit(store: ConversationStore, limit: str) -> None:
    client = await _make_client(_pipeline(store))
    try:
        resp = await client.get(f"/conversations?limit={limit}", headers=AUTH)
        assert resp.status == 400
    finally:
        await client.close()


async def test_list_conversations_requires_identity() -> None:
    client = await _make_client(_mock_pipeline())
    try:
        resp = await client.get("/conversations")
        assert resp.status == 401
    finally:
        await client.close()


async def test_list_conversations_store_down() -> None:
    pipeline = _mock_pipeline()
    pipeline.store.list_conversations = AsyncMock(
        return_value=Result.failed(StoreUnavailable("down"), fallback=[])
    )
    client = await _make_client(pipeline)
    try:
        resp = await client.get("/conversations", headers=AUTH)
        assert resp.status == 503
    finally:
        await client.close()


@pytest.mark.usefixtures("_no_turso")
async def test_conversation_messages(store: ConversationStore) -> None:
    conv = (await store.resolve_or_create("alice")).value
    await store.append_message(conv, "alice", "user", "hi")
    await store.append_message(conv, "alice", "assistant", "hello")
    client = await _make_client(_pipeline(store))
    try:
        resp = await client.get(f"/conversations/{conv}/messages", headers=AUTH)
        assert resp.status == 200
        data = await resp.json()
        assert data["conversationId"] == conv
        assert [(m["role"], m["content"]) for m in data["messages"]] == [
            ("user", "hi"),
            ("assistant", "hello"),
        ]
        assert "embedding" not in data["messages"][0]
    finally:
        await client.close()


@pytest.mark.usefixtures("_no_turso")
async def test_conversation_messages_of_other_user_is_404(store: ConversationStore) -> None:
    conv = (await store.resolve_or_create("bob")).value
    client = await _make_client(_pipeline(store))
    try:
        resp = await client.get(f"/conversations/{conv}/messages", headers=AUTH)
        assert resp.status == 404
    finally:
        await client.close()
