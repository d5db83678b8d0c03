"""Shared test fixtures."""

from pathlib import Path

import pytest

from vbot.db import _reset_schema_cache
from vbot.memory.embeddings import EmbeddingClient
from vbot.memory.store import ConversationStore


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Keep module-level singletons from leaking between tests."""
    ConversationStore._reset()
    EmbeddingClient._reset()
    _reset_schema_cache()
    yield
    ConversationStore._reset()
    EmbeddingClient._reset()
    _reset_schema_cache()


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("vbot.config.settings.turso_database_url", "")


@pytest.fixture
def store(tmp_path: Path, _no_turso) -> ConversationStore:
    """Create a ConversationStore backed by a temp database."""
    return ConversationStore(db_path=tmp_path / "test.db")
