"""Database models for the context engine."""

from coach_context.models.conversation import ConversationMemory, ConversationTurnRecord
from coach_context.models.knowledge import KnowledgeChunkRecord, KnowledgeDocumentRecord
from coach_context.models.metrics import RAGSearchMetric

__all__ = [
    # Knowledge
    "KnowledgeDocumentRecord",
    "KnowledgeChunkRecord",
    # Conversation
    "ConversationMemory",
    "ConversationTurnRecord",
    # Telemetry
    "RAGSearchMetric",
]
