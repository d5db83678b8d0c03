"""Request models for the chat endpoint."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    """One entry of the client's view of the conversation."""

    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    """Body of ``POST /chat``."""

    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessage] = Field(min_length=1)
    conversation_id: str | None = Field(default=None, alias="conversationId")

    def latest_user_message(self) -> str | None:
        """Return the content of the last ``user`` entry, the turn's query."""
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return None
