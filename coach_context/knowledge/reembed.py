"""Re-embedding pipeline for the knowledge corpus.

Documents are processed in outer batches with a fixed pause between them;
inside a batch a small worker pool embeds documents concurrently, and each
document's chunks are embedded sequentially by the embedder client. A
document whose chunks cannot all be embedded keeps its previous chunk set.
"""

import asyncio
import logging
from datetime import datetime, timezone

from coach_context.core.config import Settings, get_settings
from coach_context.core.exceptions import StoreWriteFailed
from coach_context.knowledge.cache import SearchCache
from coach_context.knowledge.chunker import DEFAULT_MAX_CHARS, chunk_text
from coach_context.knowledge.embeddings import EmbedderClient
from coach_context.knowledge.models import (
    ChunkMetadata,
    FailedItem,
    KnowledgeChunk,
    KnowledgeDocument,
    ReembedSummary,
)
from coach_context.knowledge.store import KnowledgeStore

logger = logging.getLogger(__name__)

ALL_DOCUMENTS = "all"


def build_embedding_input(document: KnowledgeDocument, text: str) -> str:
    """Prefix chunk text with document fields to give the embedding more context."""
    return (
        f"Title: {document.title}\n"
        f"Category: {document.category}\n"
        f"Owner: {document.owner_tag}\n"
        f"Content: {text}"
    )


class Reembedder:
    """Chunks, embeds and stores knowledge documents."""

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: EmbedderClient,
        chunk_max_chars: int = DEFAULT_MAX_CHARS,
        concurrency: int = 5,
        batch_size: int = 10,
        batch_pause_seconds: float = 1.5,
        store_write_retries: int = 2,
        cache: SearchCache | None = None,
    ) -> None:
        if concurrency < 1 or batch_size < 1:
            raise ValueError("concurrency and batch_size must be at least 1")
        self.store = store
        self.embedder = embedder
        self.chunk_max_chars = chunk_max_chars
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.batch_pause_seconds = batch_pause_seconds
        self.store_write_retries = store_write_retries
        self.cache = cache

    async def reembed(self, target: str = ALL_DOCUMENTS) -> ReembedSummary:
        """Rebuild chunks for one document, or for every document with ``"all"``.

        Safe to call repeatedly.

        Raises:
            LookupError: If a single document id is unknown.
            StoreWriteFailed: If any document could not be written after
                retries. The remaining documents are still processed and the
                exception carries the run summary.
        """
        if target == ALL_DOCUMENTS:
            document_ids = await self.store.list_document_ids()
        else:
            if await self.store.get_document(target) is None:
                raise LookupError(f"Unknown document: {target}")
            document_ids = [target]
        return await self._run(document_ids)

    async def backfill_missing(self) -> ReembedSummary:
        """Embed only documents that currently have no chunks."""
        document_ids = await self.store.all_missing_embeddings()
        logger.info("Backfilling %d documents without embeddings", len(document_ids))
        return await self._run(document_ids)

    async def _run(self, document_ids: list[str]) -> ReembedSummary:
        summary = ReembedSummary(total=len(document_ids))
        semaphore = asyncio.Semaphore(self.concurrency)

        for batch_start in range(0, len(document_ids), self.batch_size):
            if batch_start > 0 and self.batch_pause_seconds > 0:
                await asyncio.sleep(self.batch_pause_seconds)

            batch = document_ids[batch_start : batch_start + self.batch_size]
            await asyncio.gather(
                *(self._process_with_limit(doc_id, semaphore, summary) for doc_id in batch)
            )
            logger.info(
                "Re-embed progress: %d/%d processed, %d failed",
                summary.processed,
                summary.total,
                summary.failed,
            )

        summary.finished_at = datetime.now(timezone.utc)

        if self.cache is not None and summary.chunks_written:
            self.cache.clear()

        logger.info(
            "Re-embed finished: %d/%d processed (%d%%), %d failed, %d chunks written",
            summary.processed,
            summary.total,
            summary.percentage,
            summary.failed,
            summary.chunks_written,
        )

        if summary.store_failures:
            failed_ids = sorted({f.document_id for f in summary.store_failures})
            raise StoreWriteFailed(
                f"Failed to store chunks for {len(failed_ids)} document(s): {', '.join(failed_ids)}",
                summary=summary,
            )
        return summary

    async def _process_with_limit(
        self,
        document_id: str,
        semaphore: asyncio.Semaphore,
        summary: ReembedSummary,
    ) -> None:
        async with semaphore:
            try:
                await self._process_document(document_id, summary)
            except Exception as exc:
                logger.exception("Unexpected error re-embedding %s", document_id)
                summary.failed += 1
                summary.failures.append(
                    FailedItem(document_id=document_id, stage="store", error=str(exc))
                )

    async def _process_document(self, document_id: str, summary: ReembedSummary) -> None:
        document = await self.store.get_document(document_id)
        if document is None:
            # Deleted while the run was in progress
            logger.warning("Document %s disappeared before re-embedding", document_id)
            summary.failed += 1
            summary.failures.append(
                FailedItem(document_id=document_id, stage="store", error="Document not found")
            )
            return

        texts = chunk_text(document.body, self.chunk_max_chars)
        outcomes = await self.embedder.embed_batch(
            [build_embedding_input(document, text) for text in texts],
            document_id=document.id,
        )

        failed = [o for o in outcomes if not o.ok]
        if failed:
            logger.warning(
                "Skipping store write for %s: %d of %d chunks failed to embed",
                document.id,
                len(failed),
                len(outcomes),
            )
            summary.failed += 1
            summary.failures.extend(
                FailedItem(
                    document_id=document.id,
                    chunk_index=o.index,
                    stage="embedding",
                    error=o.error or "unknown error",
                )
                for o in failed
            )
            return

        chunks = [
            KnowledgeChunk(
                document_id=document.id,
                chunk_index=outcome.index,
                text=texts[outcome.index],
                embedding_vector=outcome.vector or [],
                metadata=ChunkMetadata(
                    title=document.title,
                    owner_tag=document.owner_tag,
                    category=document.category,
                    subtype=document.subtype,
                    char_count=len(texts[outcome.index]),
                    embedding_model=self.embedder.model,
                ),
            )
            for outcome in outcomes
        ]

        last_error: StoreWriteFailed | None = None
        for attempt in range(self.store_write_retries + 1):
            try:
                await self.store.replace_chunks(document.id, chunks)
            except StoreWriteFailed as exc:
                last_error = exc
                logger.warning(
                    "Store write for %s failed (attempt %d/%d): %s",
                    document.id,
                    attempt + 1,
                    self.store_write_retries + 1,
                    exc,
                )
                continue
            break
        else:
            summary.failed += 1
            summary.failures.append(
                FailedItem(document_id=document.id, stage="store", error=str(last_error))
            )
            return

        summary.processed += 1
        summary.chunks_written += len(chunks)


def create_reembedder(
    store: KnowledgeStore,
    embedder: EmbedderClient,
    settings: Settings | None = None,
    cache: SearchCache | None = None,
) -> Reembedder:
    """Build a re-embedder configured from settings."""
    settings = settings or get_settings()
    return Reembedder(
        store=store,
        embedder=embedder,
        chunk_max_chars=settings.chunk_max_chars,
        concurrency=settings.reembed_concurrency,
        batch_size=settings.reembed_batch_size,
        batch_pause_seconds=settings.reembed_batch_pause_seconds,
        store_write_retries=settings.store_write_retries,
        cache=cache,
    )
