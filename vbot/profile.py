"""Profile/activity summary folded into the coach's system prompt.

The summary itself is assembled by the rest of the app; this module only
defines the seam and a file-backed default.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"

_SAFE_OWNER_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

DEFAULT_PERSONA = (
    "You are VBot, an intelligent AI fitness coach for V-Life. You have access to the "
    "user's fitness data and provide personalized advice, motivation, and insights.\n\n"
    "Focus on the current conversation. Use memories from previous conversations only "
    "when they are relevant.\n\n"
    "Keep responses concise, supportive, and actionable."
)


class DomainSummaryProvider(Protocol):
    """Supplies the profile/domain block for a user."""

    async def summary(self, owner_id: str) -> str: ...


class MarkdownProfileProvider:
    """Reads the persona and per-user profile blocks from markdown files.

    ``COACH.md`` holds the coach persona; ``profiles/<owner_id>.md`` holds the
    user's profile and recent activity, written by the app's profile service.
    Missing files are fine: the persona falls back to a built-in default and
    the profile section is simply omitted.
    """

    def __init__(self, config_dir: Path | None = None) -> None:
        self._config_dir = config_dir or CONFIG_DIR

    def _read(self, relative: str) -> str:
        path = self._config_dir / relative
        if path.exists():
            return path.read_text(encoding="utf-8").strip()
        return ""

    async def summary(self, owner_id: str) -> str:
        persona = self._read("COACH.md") or DEFAULT_PERSONA

        profile = ""
        if _SAFE_OWNER_ID.match(owner_id):
            profile = self._read(f"profiles/{owner_id}.md")
        else:
            logger.warning("Skipping profile lookup for unsafe owner id")

        if not profile:
            return persona
        return f"{persona}\n\nUSER PROFILE:\n{profile}"
