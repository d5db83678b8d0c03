"""Conversation memory: storage, embeddings, retrieval and context budgeting."""

from vbot.memory.context import AssembledContext, ContextBudget, assemble_context
from vbot.memory.embeddings import EmbeddingClient
from vbot.memory.models import Conversation, ConversationSummary, Message, RetrievedMemory
from vbot.memory.retrieval import RetrievalEngine
from vbot.memory.store import ConversationStore
from vbot.memory.tokens import estimate_tokens

__all__ = [
    "AssembledContext",
    "ContextBudget",
    "Conversation",
    "ConversationStore",
    "ConversationSummary",
    "EmbeddingClient",
    "Message",
    "RetrievalEngine",
    "RetrievedMemory",
    "assemble_context",
    "estimate_tokens",
]
