"""Test doubles and builders shared across the test suite."""

import hashlib
import re

from coach_context.core.exceptions import JobQueueUnavailable
from coach_context.knowledge.models import ChunkMetadata, KnowledgeChunk, KnowledgeDocument
from coach_context.services.job_queue import BACKFILL_TASK, REEMBED_TASK, ReembedJobStatus
from coach_context.workers.reembed_worker import backfill_knowledge, reembed_knowledge

DIMENSIONS = 8


# -------------------------------------------------------------------------
# Fake embedding provider
# -------------------------------------------------------------------------


class FakeEmbeddingProvider:
    """Deterministic bag-of-words embeddings; no network."""

    name = "fake"
    model = "fake-embedding"

    def __init__(self, dimensions: int = DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.vectors: dict[str, list[float]] = {}
        self.fail_on: set[str] = set()
        self.calls: list[str] = []

    async def embed(self, text: str, task_type: str = "retrieval_document") -> list[float]:
        self.calls.append(text)
        for marker in self.fail_on:
            if marker in text:
                raise RuntimeError(f"upstream rejected input containing {marker!r}")
        if text in self.vectors:
            return list(self.vectors[text])
        return hashed_vector(text, self.dimensions)


def hashed_vector(text: str, dimensions: int = DIMENSIONS) -> list[float]:
    vector = [0.0] * dimensions
    for word in re.findall(r"\w+", text.lower()):
        digest = hashlib.md5(word.encode("utf-8")).digest()
        vector[digest[0] % dimensions] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


def make_chunk(
    document_id: str,
    chunk_index: int,
    text: str,
    vector: list[float],
    title: str = "Untitled",
    owner_tag: str = "coach",
    category: str = "general",
) -> KnowledgeChunk:
    """Build a chunk with an explicit embedding."""
    return KnowledgeChunk(
        document_id=document_id,
        chunk_index=chunk_index,
        text=text,
        embedding_vector=vector,
        metadata=ChunkMetadata(
            title=title,
            owner_tag=owner_tag,
            category=category,
            char_count=len(text),
            embedding_model="fake-embedding",
        ),
    )


def make_document(
    document_id: str,
    body: str,
    title: str = "Untitled",
    owner_tag: str = "coach",
    category: str = "general",
) -> KnowledgeDocument:
    return KnowledgeDocument(
        id=document_id,
        owner_tag=owner_tag,
        title=title,
        body=body,
        category=category,
    )


def unit(*components: float) -> list[float]:
    """Pad components with zeros to DIMENSIONS."""
    return list(components) + [0.0] * (DIMENSIONS - len(components))


async def seed(store, document: KnowledgeDocument, chunks: list[KnowledgeChunk]) -> None:
    """Insert a document and its chunks directly."""
    await store.upsert_document(document)
    await store.replace_chunks(document.id, chunks)


# -------------------------------------------------------------------------
# Fake job queue
# -------------------------------------------------------------------------


class FakeJobQueue:
    """Runs queued re-embedding tasks in-process instead of on a worker."""

    def __init__(self, services=None) -> None:
        self.services = services
        self.jobs: dict[str, ReembedJobStatus] = {}
        self.enqueued: list[tuple[str, dict]] = []
        self.unavailable = False
        self.closed = False

    async def enqueue_reembed(self, target: str) -> str:
        return await self._run(REEMBED_TASK, reembed_knowledge, target=target)

    async def enqueue_backfill(self) -> str:
        return await self._run(BACKFILL_TASK, backfill_knowledge)

    async def job_status(self, job_id: str) -> ReembedJobStatus | None:
        if self.unavailable:
            raise JobQueueUnavailable("Job queue unavailable: connection refused")
        return self.jobs.get(job_id)

    async def close(self) -> None:
        self.closed = True

    async def _run(self, name: str, task, **kwargs) -> str:
        if self.unavailable:
            raise JobQueueUnavailable(f"Failed to enqueue {name}: connection refused")
        job_id = f"job-{len(self.jobs) + 1}"
        self.enqueued.append((name, kwargs))
        result = await task({"services": self.services}, **kwargs)
        self.jobs[job_id] = ReembedJobStatus(
            job_id=job_id, status="complete", success=result["success"], result=result
        )
        return job_id
