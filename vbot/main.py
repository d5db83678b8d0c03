"""VBot chat service entry point."""

import asyncio
import logging

from vbot.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


async def _serve() -> None:
    from vbot.server import ChatServer

    server = ChatServer()
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def main() -> None:
    """Start the chat server and run until interrupted."""
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is empty; model calls will be rejected upstream")

    logger.info("Starting VBot chat service with model %s...", settings.chat_model)
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
