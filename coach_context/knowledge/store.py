"""SQL-backed knowledge store with FAISS similarity search.

Chunks, vectors and metadata are persisted through SQLAlchemy. Similarity
search loads the filtered candidate vectors and ranks them with a FAISS
inner-product index over L2-normalized vectors (cosine similarity).
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coach_context.core.exceptions import StoreWriteFailed
from coach_context.knowledge.models import (
    ChunkMetadata,
    KnowledgeChunk,
    KnowledgeDocument,
    ScoredChunk,
    SearchFilter,
)
from coach_context.models.knowledge import KnowledgeChunkRecord, KnowledgeDocumentRecord

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class KnowledgeStore:
    """Persists knowledge documents and their embedded chunks."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dimensions: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.dimensions = dimensions
        # Serializes replace_chunks per document id; dropped once no writer holds or waits
        self._document_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = defaultdict(int)

    # ---------------------------------------------------------------------
    # Documents
    # ---------------------------------------------------------------------

    async def upsert_document(self, document: KnowledgeDocument) -> None:
        """Insert or update a corpus document."""
        async with self._session_factory() as session:
            async with session.begin():
                await session.merge(
                    KnowledgeDocumentRecord(
                        id=document.id,
                        owner_tag=document.owner_tag,
                        title=document.title,
                        body=document.body,
                        category=document.category,
                        subtype=document.subtype,
                        document_updated_at=document.updated_at,
                    )
                )

    async def get_document(self, document_id: str) -> KnowledgeDocument | None:
        async with self._session_factory() as session:
            record = await session.get(KnowledgeDocumentRecord, document_id)
            if record is None:
                return None
            return _document_from_record(record)

    async def list_document_ids(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(KnowledgeDocumentRecord.id).order_by(KnowledgeDocumentRecord.id)
            )
            return list(result.scalars().all())

    async def all_missing_embeddings(self) -> list[str]:
        """Return ids of documents that have no chunks at all."""
        async with self._session_factory() as session:
            has_chunks = (
                select(KnowledgeChunkRecord.id)
                .where(KnowledgeChunkRecord.document_id == KnowledgeDocumentRecord.id)
                .exists()
            )
            result = await session.execute(
                select(KnowledgeDocumentRecord.id)
                .where(~has_chunks)
                .order_by(KnowledgeDocumentRecord.id)
            )
            return list(result.scalars().all())

    # ---------------------------------------------------------------------
    # Chunks
    # ---------------------------------------------------------------------

    async def replace_chunks(self, document_id: str, chunks: list[KnowledgeChunk]) -> None:
        """Atomically replace every chunk of a document.

        The delete and the inserts run in one transaction; on any failure the
        transaction is rolled back and the previous chunk set stays visible.

        Raises:
            StoreWriteFailed: If validation or the write fails.
        """
        self._validate_chunks(document_id, chunks)

        async with self._document_lock(document_id):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        document = await session.get(KnowledgeDocumentRecord, document_id)
                        if document is None:
                            raise StoreWriteFailed(
                                f"Document {document_id} does not exist",
                                document_id=document_id,
                            )
                        await session.execute(
                            delete(KnowledgeChunkRecord).where(
                                KnowledgeChunkRecord.document_id == document_id
                            )
                        )
                        session.add_all(self._build_records(chunks))
                        await session.flush()
            except StoreWriteFailed:
                raise
            except Exception as exc:
                logger.error("Chunk replacement failed for %s: %s", document_id, exc)
                raise StoreWriteFailed(
                    f"Failed to replace chunks for {document_id}: {exc}",
                    document_id=document_id,
                ) from exc

        logger.debug("Replaced chunks for %s (%d chunks)", document_id, len(chunks))

    async def get_chunks(self, document_id: str) -> list[KnowledgeChunk]:
        """Return a document's chunks in chunk_index order."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(KnowledgeChunkRecord)
                .where(KnowledgeChunkRecord.document_id == document_id)
                .order_by(KnowledgeChunkRecord.chunk_index)
            )
            return [_chunk_from_record(r) for r in result.scalars().all()]

    async def chunk_count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(KnowledgeChunkRecord.id)))
            return int(result.scalar_one())

    async def candidates(self, search_filter: SearchFilter | None = None) -> list[KnowledgeChunk]:
        """Return all chunks matching the filter, in a stable order."""
        stmt = select(KnowledgeChunkRecord).order_by(
            KnowledgeChunkRecord.document_id,
            KnowledgeChunkRecord.chunk_index,
        )
        if search_filter is not None:
            if search_filter.owner_tag is not None:
                stmt = stmt.where(KnowledgeChunkRecord.owner_tag == search_filter.owner_tag)
            if search_filter.category is not None:
                stmt = stmt.where(KnowledgeChunkRecord.category == search_filter.category)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_chunk_from_record(r) for r in result.scalars().all()]

    async def similarities(
        self,
        query_vector: list[float],
        search_filter: SearchFilter | None = None,
    ) -> list[ScoredChunk]:
        """Score every candidate chunk against the query vector.

        Returns:
            Scored chunks in candidate order (not ranked).
        """
        import faiss

        chunks = [
            c for c in await self.candidates(search_filter)
            if len(c.embedding_vector) == len(query_vector)
        ]
        if not chunks:
            return []

        matrix: "NDArray[np.float32]" = np.array(
            [c.embedding_vector for c in chunks], dtype=np.float32
        )
        query: "NDArray[np.float32]" = np.array([query_vector], dtype=np.float32)

        # Inner product over normalized vectors is cosine similarity
        faiss.normalize_L2(matrix)
        faiss.normalize_L2(query)
        index = faiss.IndexFlatIP(matrix.shape[1])
        index.add(matrix)
        scores, indices = index.search(query, len(chunks))

        similarity_by_position: dict[int, float] = {}
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0:  # FAISS returns -1 for missing results
                continue
            similarity_by_position[int(idx)] = float(score)

        return [
            ScoredChunk(chunk=chunk, similarity=similarity_by_position.get(i, 0.0))
            for i, chunk in enumerate(chunks)
        ]

    async def nearest(
        self,
        query_vector: list[float],
        k: int,
        search_filter: SearchFilter | None = None,
    ) -> list[ScoredChunk]:
        """Return the top-k chunks by cosine similarity."""
        if k <= 0:
            return []
        scored = await self.similarities(query_vector, search_filter)
        scored.sort(
            key=lambda s: (-s.similarity, s.chunk.chunk_index, s.chunk.document_id)
        )
        return scored[:k]

    # ---------------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------------

    @asynccontextmanager
    async def _document_lock(self, document_id: str) -> AsyncIterator[None]:
        lock = self._document_locks.setdefault(document_id, asyncio.Lock())
        self._lock_users[document_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[document_id] -= 1
            if self._lock_users[document_id] == 0:
                del self._lock_users[document_id]
                del self._document_locks[document_id]

    def _validate_chunks(self, document_id: str, chunks: list[KnowledgeChunk]) -> None:
        if not chunks:
            raise StoreWriteFailed(
                f"Refusing to write an empty chunk set for {document_id}",
                document_id=document_id,
            )

        for position, chunk in enumerate(sorted(chunks, key=lambda c: c.chunk_index)):
            if chunk.document_id != document_id:
                raise StoreWriteFailed(
                    f"Chunk belongs to {chunk.document_id}, expected {document_id}",
                    document_id=document_id,
                )
            if chunk.chunk_index != position:
                raise StoreWriteFailed(
                    f"Chunk indexes for {document_id} are not contiguous from 0",
                    document_id=document_id,
                )
            if not chunk.embedding_vector:
                raise StoreWriteFailed(
                    f"Chunk {chunk.ref} has no embedding",
                    document_id=document_id,
                )
            if self.dimensions is not None and len(chunk.embedding_vector) != self.dimensions:
                raise StoreWriteFailed(
                    f"Chunk {chunk.ref} has dimension {len(chunk.embedding_vector)}, "
                    f"expected {self.dimensions}",
                    document_id=document_id,
                )

    def _build_records(self, chunks: list[KnowledgeChunk]) -> list[KnowledgeChunkRecord]:
        return [
            KnowledgeChunkRecord(
                document_id=chunk.document_id,
                chunk_index=chunk.chunk_index,
                text=chunk.text,
                embedding=list(chunk.embedding_vector),
                owner_tag=chunk.metadata.owner_tag,
                category=chunk.metadata.category,
                chunk_metadata=chunk.metadata.model_dump(),
            )
            for chunk in chunks
        ]


def _document_from_record(record: KnowledgeDocumentRecord) -> KnowledgeDocument:
    return KnowledgeDocument(
        id=record.id,
        owner_tag=record.owner_tag,
        title=record.title,
        body=record.body,
        category=record.category,
        subtype=record.subtype,
        updated_at=record.document_updated_at,
    )


def _chunk_from_record(record: KnowledgeChunkRecord) -> KnowledgeChunk:
    return KnowledgeChunk(
        document_id=record.document_id,
        chunk_index=record.chunk_index,
        text=record.text,
        embedding_vector=list(record.embedding),
        metadata=ChunkMetadata(**record.chunk_metadata),
    )
