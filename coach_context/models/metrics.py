"""Persisted search telemetry."""

from typing import Optional

from sqlalchemy import Boolean, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from coach_context.models.base import BaseModel


class RAGSearchMetric(BaseModel):
    """One knowledge search, recorded best-effort for dashboards."""

    __tablename__ = "rag_search_metrics"

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_tag: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    # First 100 chars only
    query_text: Mapped[str] = mapped_column(String(100))
    search_method: Mapped[str] = mapped_column(String(20))
    results_count: Mapped[int] = mapped_column(Integer, default=0)
    response_time_ms: Mapped[float] = mapped_column(Float)
    relevance_score: Mapped[float] = mapped_column(Float, default=0.0)
    context_length: Mapped[int] = mapped_column(Integer, default=0)
    cache_hit: Mapped[bool] = mapped_column(Boolean, default=False)
    embedding_tokens: Mapped[int] = mapped_column(Integer, default=0)

    def __repr__(self) -> str:
        return f"<RAGSearchMetric(id={self.id}, method={self.search_method})>"
