"""Knowledge base module for RAG-based retrieval.

Loads, chunks, embeds and stores coaching knowledge documents, and searches
them by semantic, keyword or hybrid scoring.
"""

from coach_context.knowledge.cache import SearchCache
from coach_context.knowledge.models import (
    KnowledgeChunk,
    KnowledgeDocument,
    RAGResponse,
    RetrievalResult,
    SearchMethod,
)
from coach_context.knowledge.reembed import ALL_DOCUMENTS, Reembedder, create_reembedder
from coach_context.knowledge.retriever import KnowledgeRetriever, create_retriever
from coach_context.knowledge.store import KnowledgeStore

__all__ = [
    "ALL_DOCUMENTS",
    "KnowledgeChunk",
    "KnowledgeDocument",
    "KnowledgeRetriever",
    "KnowledgeStore",
    "RAGResponse",
    "Reembedder",
    "RetrievalResult",
    "SearchCache",
    "SearchMethod",
    "create_reembedder",
    "create_retriever",
]
