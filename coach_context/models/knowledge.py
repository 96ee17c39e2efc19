"""Knowledge document and chunk tables."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coach_context.models.base import BaseModel


class KnowledgeDocumentRecord(BaseModel):
    """Authored knowledge document (the corpus)."""

    __tablename__ = "knowledge_documents"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    owner_tag: Mapped[str] = mapped_column(String(50), index=True)
    title: Mapped[str] = mapped_column(String(300))
    body: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(100), default="general", index=True)
    subtype: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    document_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    chunks: Mapped[list["KnowledgeChunkRecord"]] = relationship(
        "KnowledgeChunkRecord",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="KnowledgeChunkRecord.chunk_index",
    )

    def __repr__(self) -> str:
        return f"<KnowledgeDocumentRecord(id={self.id}, owner_tag={self.owner_tag})>"


class KnowledgeChunkRecord(BaseModel):
    """Embedded slice of a knowledge document."""

    __tablename__ = "knowledge_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_knowledge_chunk_position"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    document_id: Mapped[str] = mapped_column(
        ForeignKey("knowledge_documents.id", ondelete="CASCADE"),
        index=True,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(JSON, nullable=False)
    # Denormalized for filtering without a join
    owner_tag: Mapped[str] = mapped_column(String(50), index=True)
    category: Mapped[str] = mapped_column(String(100), index=True)
    chunk_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    document: Mapped["KnowledgeDocumentRecord"] = relationship(
        "KnowledgeDocumentRecord",
        back_populates="chunks",
    )

    def __repr__(self) -> str:
        return f"<KnowledgeChunkRecord(document_id={self.document_id}, chunk_index={self.chunk_index})>"
