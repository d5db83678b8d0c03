"""HTTP surface for the coach chat.

Routes:

- ``POST /chat``: run one turn and stream the reply (see ``vbot.llm.frames``)
- ``GET /conversations``: the caller's threads, newest activity first
- ``GET /conversations/{conversation_id}/messages``: one whole thread
- ``GET /health``: liveness

Callers are authenticated by the gateway in front of this service; the
identity resolver only reads who they are.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import aclosing

from aiohttp import web
from pydantic import ValidationError

from vbot.chat.models import ChatRequest
from vbot.chat.pipeline import ChatPipeline
from vbot.config import settings
from vbot.errors import StoreUnavailable, UpstreamUnavailable
from vbot.llm.frames import encode_frame

logger = logging.getLogger(__name__)

IdentityResolver = Callable[[web.Request], str | None]

CONVERSATION_HEADER = "X-Conversation-Id"
MAX_HISTORY_LIMIT = 100
DEFAULT_HISTORY_LIMIT = 20

PIPELINE_KEY = web.AppKey("pipeline", ChatPipeline)
IDENTITY_KEY = web.AppKey("identity", IdentityResolver)


def header_identity(request: web.Request) -> str | None:
    """Read the caller's ID from the header set by the auth gateway."""
    owner_id = request.headers.get(settings.identity_header, "").strip()
    return owner_id or None


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


# -- Chat ----------------------------------------------------------------------


async def _handle_chat(request: web.Request) -> web.StreamResponse:
    """Stream one coaching turn back to the caller."""
    owner_id = request.app[IDENTITY_KEY](request)
    if not owner_id:
        return _error("Unauthorized", 401)

    try:
        payload = await request.json()
    except Exception:
        return _error("Invalid request: body must be JSON", 400)

    try:
        chat_request = ChatRequest.model_validate(payload)
    except ValidationError as exc:
        logger.info("Rejected chat request: %d validation error(s)", exc.error_count())
        return web.json_response(
            {
                "error": "Invalid request: messages required",
                "details": exc.errors(include_url=False, include_context=False, include_input=False),
            },
            status=400,
        )

    query = chat_request.latest_user_message()
    if query is None:
        return _error("No user message found", 400)

    pipeline = request.app[PIPELINE_KEY]
    try:
        turn = await pipeline.start_turn(owner_id, query, chat_request.conversation_id)
    except StoreUnavailable:
        logger.exception("Could not resolve conversation")
        return _error("Conversation store unavailable", 500)
    except UpstreamUnavailable:
        logger.exception("Could not open model stream")
        return _error("Model provider unavailable", 500)

    response = web.StreamResponse(
        status=200,
        headers={
            CONVERSATION_HEADER: turn.conversation_id,
            "X-Vercel-AI-Data-Stream": "v1",
        },
    )
    response.content_type = "text/plain"
    response.charset = "utf-8"

    try:
        await response.prepare(request)
        async with aclosing(turn.frames()) as frames:
            async for frame in frames:
                await response.write(encode_frame(frame).encode("utf-8"))
        await response.write_eof()
    except ConnectionResetError:
        logger.info("Client disconnected from %s mid-stream", turn.conversation_id)
    finally:
        await turn.finish()

    return response


# -- History -------------------------------------------------------------------


def _parse_limit(raw: str | None) -> int | None:
    if raw is None:
        return DEFAULT_HISTORY_LIMIT
    try:
        limit = int(raw)
    except ValueError:
        return None
    if not 1 <= limit <= MAX_HISTORY_LIMIT:
        return None
    return limit


async def _handle_list_conversations(request: web.Request) -> web.Response:
    """GET /conversations: the caller's conversation history list."""
    owner_id = request.app[IDENTITY_KEY](request)
    if not owner_id:
        return _error("Unauthorized", 401)

    limit = _parse_limit(request.query.get("limit"))
    if limit is None:
        return _error(f"limit must be an integer between 1 and {MAX_HISTORY_LIMIT}", 400)

    result = await request.app[PIPELINE_KEY].store.list_conversations(owner_id, limit)
    if not result.success:
        return _error("Conversation store unavailable", 503)

    return web.json_response({"conversations": [c.to_json() for c in result.value or []]})


async def _handle_conversation_messages(request: web.Request) -> web.Response:
    """GET /conversations/{conversation_id}/messages: one full thread."""
    owner_id = request.app[IDENTITY_KEY](request)
    if not owner_id:
        return _error("Unauthorized", 401)

    conversation_id = request.match_info["conversation_id"]
    result = await request.app[PIPELINE_KEY].store.conversation_messages(owner_id, conversation_id)
    if not result.success:
        return _error("Conversation store unavailable", 503)
    if result.value is None:
        return _error("Conversation not found", 404)

    return web.json_response({
        "conversationId": conversation_id,
        "messages": [
            {"id": m.id, "role": m.role, "content": m.content, "createdAt": m.created_at}
            for m in result.value
        ],
    })


# -- Plumbing ------------------------------------------------------------------


async def _health(request: web.Request) -> web.Response:
    """GET /health: basic liveness check."""
    return web.json_response({"status": "ok"})


async def _preflight(request: web.Request) -> web.Response:
    """Answer CORS preflight requests."""
    return web.Response(text="ok")


async def _add_cors_headers(request: web.Request, response: web.StreamResponse) -> None:
    response.headers["Access-Control-Allow-Origin"] = settings.allowed_origin
    response.headers["Access-Control-Allow-Headers"] = (
        f"authorization, content-type, {settings.identity_header.lower()}"
    )
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Expose-Headers"] = CONVERSATION_HEADER


async def _close_pipeline(app: web.Application) -> None:
    await app[PIPELINE_KEY].aclose()


def create_app(
    pipeline: ChatPipeline | None = None,
    identity: IdentityResolver | None = None,
) -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application()
    app[PIPELINE_KEY] = pipeline or ChatPipeline()
    app[IDENTITY_KEY] = identity or header_identity

    app.router.add_get("/health", _health)
    app.router.add_post("/chat", _handle_chat)
    app.router.add_get("/conversations", _handle_list_conversations)
    app.router.add_get(
        "/conversations/{conversation_id}/messages", _handle_conversation_messages
    )
    app.router.add_route("OPTIONS", "/{tail:.*}", _preflight)

    app.on_response_prepare.append(_add_cors_headers)
    app.on_cleanup.append(_close_pipeline)
    return app


class ChatServer:
    """Manages the aiohttp server lifecycle."""

    def __init__(self, port: int | None = None, host: str | None = None) -> None:
        self.port = port or settings.server_port
        self.host = host or settings.server_host
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start listening for chat requests."""
        app = create_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Chat server listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Shut down the server gracefully."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Chat server stopped")
