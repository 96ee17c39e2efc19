"""Hybrid knowledge retriever for RAG.

Combines FAISS cosine similarity from the knowledge store with keyword
overlap scoring, then packs the best chunks into a character-budgeted
context string.
"""

import logging
import time
from typing import Iterable

from coach_context.core.config import Settings, get_settings
from coach_context.core.exceptions import EmbeddingCallFailed
from coach_context.core.tokens import estimate_tokens
from coach_context.knowledge.cache import SearchCache
from coach_context.knowledge.embeddings import EmbedderClient
from coach_context.knowledge.lexical import lexical_score, tokenize
from coach_context.knowledge.models import (
    KnowledgeChunk,
    RAGResponse,
    RetrievalResult,
    SearchFilter,
    SearchMethod,
)
from coach_context.knowledge.store import KnowledgeStore
from coach_context.observability import ContextObserver, NullObserver, SearchRecord, notify

logger = logging.getLogger(__name__)

CONTEXT_SEPARATOR = "\n\n"


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class KnowledgeRetriever:
    """Searches the knowledge store by semantic, keyword or hybrid scoring."""

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: EmbedderClient,
        semantic_weight: float = 0.7,
        keyword_weight: float = 0.3,
        relevance_floor: float = 0.3,
        unrestricted_owner_tags: Iterable[str] = (),
        cache: SearchCache | None = None,
        observer: ContextObserver | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.semantic_weight = semantic_weight
        self.keyword_weight = keyword_weight
        self.relevance_floor = relevance_floor
        self.unrestricted_owner_tags = frozenset(unrestricted_owner_tags)
        self.cache = cache
        self.observer = observer or NullObserver()

    async def search(
        self,
        query: str,
        owner_tag: str | None = None,
        method: SearchMethod | str = SearchMethod.HYBRID,
        max_results: int = 5,
        context_char_budget: int = 2000,
    ) -> RAGResponse:
        """Search for relevant knowledge chunks.

        Args:
            query: Search query text.
            owner_tag: Restrict to one persona's knowledge. ``None`` or an
                unrestricted tag searches the whole corpus.
            method: ``semantic``, ``keyword`` or ``hybrid``.
            max_results: Maximum number of ranked results.
            context_char_budget: Maximum length of the context string.

        Returns:
            RAGResponse; ``is_valid`` is False when nothing relevant was found.

        Raises:
            ValueError: If ``max_results`` or ``context_char_budget`` is negative.
        """
        if max_results < 0:
            raise ValueError("max_results must be >= 0")
        if context_char_budget < 0:
            raise ValueError("context_char_budget must be >= 0")

        method = SearchMethod(method)
        start = time.perf_counter()

        cache_key = (query, owner_tag, method.value, max_results, context_char_budget)
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug("RAG cache hit for query: %s...", query[:50])
                response = cached.model_copy(
                    update={
                        "cache_hit": True,
                        "response_time_ms": (time.perf_counter() - start) * 1000,
                    }
                )
                self._report(response)
                return response

        search_filter = self._filter_for(owner_tag)
        embedding_tokens = 0

        if method is SearchMethod.KEYWORD:
            results = await self._keyword_results(query, search_filter)
        else:
            try:
                query_vector = await self.embedder.embed_query(query)
                embedding_tokens = estimate_tokens(query)
            except EmbeddingCallFailed as exc:
                logger.warning("Query embedding failed, degrading %s search: %s", method.value, exc)
                query_vector = None

            if query_vector is None:
                # Semantic search has nothing to rank without a query vector
                results = (
                    []
                    if method is SearchMethod.SEMANTIC
                    else await self._keyword_results(query, search_filter)
                )
            elif method is SearchMethod.SEMANTIC:
                results = await self._semantic_results(query_vector, max_results, search_filter)
            else:
                results = await self._hybrid_results(query, query_vector, search_filter)

        results = self._rank(results)[:max_results]
        context, context_results = self._build_context(results, context_char_budget)

        top_score = results[0].combined_score if results else 0.0
        relevance_score = (
            round(sum(r.combined_score for r in results) / len(results), 2) if results else 0.0
        )

        response = RAGResponse(
            query=query,
            owner_tag=owner_tag,
            search_method=method,
            results=results,
            context_results=context_results,
            context=context,
            relevance_score=relevance_score,
            top_score=top_score,
            is_valid=bool(results) and top_score > self.relevance_floor,
            response_time_ms=(time.perf_counter() - start) * 1000,
            embedding_tokens=embedding_tokens,
        )

        if self.cache is not None:
            self.cache.set(cache_key, response)

        self._report(response)
        return response

    def _filter_for(self, owner_tag: str | None) -> SearchFilter | None:
        if owner_tag is None or owner_tag in self.unrestricted_owner_tags:
            return None
        return SearchFilter(owner_tag=owner_tag)

    async def _semantic_results(
        self,
        query_vector: list[float],
        max_results: int,
        search_filter: SearchFilter | None,
    ) -> list[RetrievalResult]:
        scored = await self.store.nearest(query_vector, max_results, search_filter)
        results = []
        for item in scored:
            similarity = _clamp(item.similarity)
            results.append(_to_result(item.chunk, similarity, None, similarity))
        return results

    async def _keyword_results(
        self,
        query: str,
        search_filter: SearchFilter | None,
    ) -> list[RetrievalResult]:
        terms = tokenize(query)
        if not terms:
            return []

        results = []
        for chunk in await self.store.candidates(search_filter):
            score = lexical_score(terms, chunk)
            if score <= 0:
                continue
            results.append(_to_result(chunk, 0.0, score, score))
        return results

    async def _hybrid_results(
        self,
        query: str,
        query_vector: list[float],
        search_filter: SearchFilter | None,
    ) -> list[RetrievalResult]:
        terms = tokenize(query)
        results = []
        for item in await self.store.similarities(query_vector, search_filter):
            similarity = _clamp(item.similarity)
            lexical = lexical_score(terms, item.chunk)
            combined = _clamp(self.semantic_weight * similarity + self.keyword_weight * lexical)
            results.append(_to_result(item.chunk, similarity, lexical, combined))
        return results

    @staticmethod
    def _rank(results: list[RetrievalResult]) -> list[RetrievalResult]:
        return sorted(
            results,
            key=lambda r: (
                -r.combined_score,
                -r.similarity_score,
                r.chunk_ref.chunk_index,
                r.chunk_ref.document_id,
            ),
        )

    @staticmethod
    def _build_context(
        results: list[RetrievalResult],
        budget: int,
    ) -> tuple[str, list[RetrievalResult]]:
        """Join whole chunk texts until the next one would exceed the budget."""
        parts: list[str] = []
        included: list[RetrievalResult] = []
        length = 0
        for result in results:
            added = len(result.text) + (len(CONTEXT_SEPARATOR) if parts else 0)
            if length + added > budget:
                break
            parts.append(result.text)
            included.append(result)
            length += added
        return CONTEXT_SEPARATOR.join(parts), included

    def _report(self, response: RAGResponse) -> None:
        notify(
            self.observer.on_search,
            SearchRecord(
                search_method=response.search_method.value,
                results_count=response.results_count,
                response_time_ms=response.response_time_ms,
                relevance_score=response.relevance_score,
                context_length=response.context_length,
                owner_tag=response.owner_tag,
                query_text=response.query[:100],
                is_valid=response.is_valid,
                cache_hit=response.cache_hit,
                embedding_tokens=response.embedding_tokens,
            ),
        )


def _to_result(
    chunk: KnowledgeChunk,
    similarity: float,
    lexical: float | None,
    combined: float,
) -> RetrievalResult:
    return RetrievalResult(
        chunk_ref=chunk.ref,
        text=chunk.text,
        similarity_score=similarity,
        lexical_score=lexical,
        combined_score=combined,
        source_title=chunk.metadata.title,
        source_category=chunk.metadata.category,
        owner_tag=chunk.metadata.owner_tag,
    )


def create_retriever(
    store: KnowledgeStore,
    embedder: EmbedderClient,
    settings: Settings | None = None,
    observer: ContextObserver | None = None,
    cache: SearchCache | None = None,
) -> KnowledgeRetriever:
    """Build a retriever configured from settings.

    A cache is created from settings when enabled and none is passed in.
    """
    settings = settings or get_settings()
    if cache is None and settings.rag_cache_enabled:
        cache = SearchCache(
            ttl_seconds=settings.rag_cache_ttl_seconds,
            max_entries=settings.rag_cache_max_entries,
        )
    return KnowledgeRetriever(
        store=store,
        embedder=embedder,
        semantic_weight=settings.rag_semantic_weight,
        keyword_weight=settings.rag_keyword_weight,
        relevance_floor=settings.rag_relevance_floor,
        unrestricted_owner_tags=settings.rag_unrestricted_owner_tags,
        cache=cache,
        observer=observer,
    )
