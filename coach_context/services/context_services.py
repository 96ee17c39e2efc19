"""Wiring for the context engine components.

Builds the store, embedder, retriever, re-embedder and context engine from
settings so the API and the CLI scripts share one construction path.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coach_context.context.engine import ContextEngine
from coach_context.conversation.repository import ConversationRepository
from coach_context.core.config import Settings, get_settings
from coach_context.knowledge.cache import SearchCache
from coach_context.knowledge.embeddings import EmbedderClient, EmbeddingProvider, create_embedder
from coach_context.knowledge.reembed import Reembedder, create_reembedder
from coach_context.knowledge.retriever import KnowledgeRetriever, create_retriever
from coach_context.knowledge.store import KnowledgeStore
from coach_context.observability import (
    ContextObserver,
    MetricsBackend,
    build_default_observer,
)

logger = logging.getLogger(__name__)


@dataclass
class ContextServices:
    """All long-lived components of one process."""

    settings: Settings
    store: KnowledgeStore
    embedder: EmbedderClient
    cache: SearchCache | None
    retriever: KnowledgeRetriever
    reembedder: Reembedder
    repository: ConversationRepository
    engine: ContextEngine
    observer: ContextObserver


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    provider: EmbeddingProvider | None = None,
    observer: ContextObserver | None = None,
    metrics: MetricsBackend | None = None,
) -> ContextServices:
    """Create the component graph.

    Args:
        session_factory: Session factory for the knowledge and conversation tables.
        settings: Settings (defaults to the cached process settings).
        provider: Embedding provider override (tests inject a fake).
        observer: Observer sink override. Defaults to logging + metrics.
        metrics: Metrics backend for the default observer.
    """
    settings = settings or get_settings()
    observer = observer or build_default_observer(session_factory, metrics)

    store = KnowledgeStore(session_factory, dimensions=settings.embedding_dimensions)
    embedder = create_embedder(settings, observer=observer, provider=provider)
    cache = (
        SearchCache(
            ttl_seconds=settings.rag_cache_ttl_seconds,
            max_entries=settings.rag_cache_max_entries,
        )
        if settings.rag_cache_enabled
        else None
    )
    retriever = create_retriever(store, embedder, settings, observer=observer, cache=cache)
    reembedder = create_reembedder(store, embedder, settings, cache=cache)
    repository = ConversationRepository(session_factory)
    engine = ContextEngine(retriever, repository, settings)

    logger.info(
        "Context services ready (provider=%s, model=%s, cache=%s)",
        embedder.provider.name,
        embedder.model,
        "on" if cache is not None else "off",
    )

    return ContextServices(
        settings=settings,
        store=store,
        embedder=embedder,
        cache=cache,
        retriever=retriever,
        reembedder=reembedder,
        repository=repository,
        engine=engine,
        observer=observer,
    )
