"""Conversation memory and turn tables."""

from typing import Optional

from sqlalchemy import ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coach_context.models.base import BaseModel


class ConversationMemory(BaseModel):
    """One coach/user conversation with its rolling summary."""

    __tablename__ = "conversation_memories"
    __table_args__ = (
        UniqueConstraint("user_id", "owner_tag", name="uq_conversation_user_owner"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100), index=True)
    owner_tag: Mapped[str] = mapped_column(String(50))
    # Produced elsewhere; stored and budgeted, never parsed
    rolling_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    turns: Mapped[list["ConversationTurnRecord"]] = relationship(
        "ConversationTurnRecord",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationTurnRecord.id",
    )

    def __repr__(self) -> str:
        return f"<ConversationMemory(id={self.id}, user_id={self.user_id}, owner_tag={self.owner_tag})>"


class ConversationTurnRecord(BaseModel):
    """One user message with the coach's response."""

    __tablename__ = "conversation_turns"

    id: Mapped[int] = mapped_column(primary_key=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversation_memories.id", ondelete="CASCADE"),
        index=True,
    )
    user_message: Mapped[str] = mapped_column(Text, nullable=False)
    agent_response: Mapped[str] = mapped_column(Text, nullable=False)

    conversation: Mapped["ConversationMemory"] = relationship(
        "ConversationMemory",
        back_populates="turns",
    )

    def __repr__(self) -> str:
        return f"<ConversationTurnRecord(id={self.id}, conversation_id={self.conversation_id})>"
