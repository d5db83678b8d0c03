"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """VBot configuration. All values come from environment variables."""

    # OpenAI-compatible provider (chat completions + embeddings)
    openai_api_key: str = Field(default="")
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    chat_model: str = Field(default="gpt-4o-mini")
    embedding_model: str = Field(default="text-embedding-3-small")
    max_output_tokens: int = Field(default=1000)
    temperature: float = Field(default=0.7)

    # Database
    database_path: Path = Field(default=Path("data/vbot.db"))

    # Turso (hosted libSQL). When set, overrides local database_path
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # HTTP server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8080)
    allowed_origin: str = Field(default="*")

    # Header set by the authenticating gateway in front of the service
    identity_header: str = Field(default="X-User-Id")

    # Token budget (estimated tokens, see vbot.memory.tokens)
    system_prompt_tokens: int = Field(default=2500)
    current_conversation_tokens: int = Field(default=2500)
    retrieved_context_tokens: int = Field(default=800)
    total_tokens: int = Field(default=5800)

    # Retrieval
    retrieval_threshold: float = Field(default=0.6)
    retrieval_top_k: int = Field(default=5)
    # Newest embedded messages scored per turn; bounds retrieval cost
    retrieval_candidate_limit: int = Field(default=500)
    recent_message_limit: int = Field(default=10)

    # Timeouts (seconds)
    embedding_timeout_seconds: float = Field(default=10.0)
    upstream_connect_timeout_seconds: float = Field(default=10.0)
    upstream_read_timeout_seconds: float = Field(default=60.0)
    store_timeout_seconds: float = Field(default=10.0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_chat_completions_url(self) -> str:
        """Full URL of the streaming chat completions endpoint."""
        return self.openai_base_url.rstrip("/") + "/chat/completions"


settings = Settings()
