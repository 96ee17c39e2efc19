"""Data models for knowledge documents, chunks and retrieval results."""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

CHUNK_METADATA_VERSION = 1


class SearchMethod(str, Enum):
    """Supported retrieval strategies."""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class KnowledgeDocument(BaseModel):
    """One authored unit of domain knowledge.

    Read-only to the retrieval path; editing a document means its chunks
    have to be rebuilt with ``reembed``.
    """

    id: str = Field(..., description="Stable identifier (e.g., 'protein_timing')")
    owner_tag: str = Field(..., description="Persona/domain the document belongs to")
    title: str
    body: str
    category: str = "general"
    subtype: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChunkMetadata(BaseModel):
    """Denormalized document fields stored next to each chunk.

    Closed schema: unknown keys are rejected so readers always know what is
    present. Bump ``CHUNK_METADATA_VERSION`` when fields change.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: Literal[1] = CHUNK_METADATA_VERSION
    title: str
    owner_tag: str
    category: str
    subtype: Optional[str] = None
    char_count: int = Field(..., ge=0)
    embedding_model: Optional[str] = None


class ChunkRef(BaseModel):
    """Reference to a chunk by owning document and position."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    chunk_index: int = Field(..., ge=0)

    def __str__(self) -> str:
        return f"{self.document_id}#{self.chunk_index}"


class KnowledgeChunk(BaseModel):
    """A contiguous slice of a document body together with its embedding."""

    document_id: str
    chunk_index: int = Field(..., ge=0, description="0-based, unique within document_id")
    text: str
    embedding_vector: list[float] = Field(default_factory=list)
    metadata: ChunkMetadata

    @property
    def ref(self) -> ChunkRef:
        return ChunkRef(document_id=self.document_id, chunk_index=self.chunk_index)


class SearchFilter(BaseModel):
    """Optional restriction applied to store lookups."""

    model_config = ConfigDict(frozen=True)

    owner_tag: Optional[str] = None
    category: Optional[str] = None

class ScoredChunk(BaseModel):
    """A stored chunk with its cosine similarity to a query vector."""

    chunk: KnowledgeChunk
    similarity: float


class RetrievalResult(BaseModel):
    """A ranked search hit."""

    chunk_ref: ChunkRef
    text: str
    similarity_score: float = Field(..., ge=0.0, le=1.0)
    lexical_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    combined_score: float = Field(..., ge=0.0, le=1.0)
    source_title: str
    source_category: str
    owner_tag: str


class RAGResponse(BaseModel):
    """Result of a knowledge search, including the budgeted context string."""

    query: str
    owner_tag: Optional[str] = None
    search_method: SearchMethod
    results: list[RetrievalResult] = Field(default_factory=list)
    context_results: list[RetrievalResult] = Field(default_factory=list)
    context: str = ""
    relevance_score: float = 0.0
    top_score: float = 0.0
    is_valid: bool = False
    response_time_ms: float = 0.0
    embedding_tokens: int = 0
    cache_hit: bool = False

    @property
    def results_count(self) -> int:
        return len(self.results)

    @property
    def context_length(self) -> int:
        return len(self.context)


class EmbeddingOutcome(BaseModel):
    """Per-item result of a batch embedding call."""

    index: int
    vector: Optional[list[float]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.vector is not None and self.error is None


class FailedItem(BaseModel):
    """Enough detail about a failed item to retry it later."""

    document_id: str
    chunk_index: Optional[int] = None
    stage: Literal["embedding", "store"] = "embedding"
    error: str


class ReembedSummary(BaseModel):
    """Partial-success report of a re-embedding run."""

    total: int = 0
    processed: int = 0
    failed: int = 0
    chunks_written: int = 0
    failures: list[FailedItem] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 0
        return round(self.processed / self.total * 100)

    @property
    def store_failures(self) -> list[FailedItem]:
        return [f for f in self.failures if f.stage == "store"]
