"""Data models for conversation turns and token-budgeted windows."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversationTurn(BaseModel):
    """One user message paired with the coach's response. Immutable."""

    model_config = ConfigDict(frozen=True)

    user_message: str
    agent_response: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WindowResult(BaseModel):
    """Turns selected for the prompt plus token accounting."""

    model_config = ConfigDict(frozen=True)

    turns: tuple[ConversationTurn, ...] = ()
    summary: Optional[str] = None
    summary_tokens: int = 0
    available_for_turns: int = 0
    tokens_used: int = 0
    total_turns: int = 0
    trimmed_count: int = 0
    max_tokens: int = 0
    # The recency floor pushed tokens_used past max_tokens
    over_budget: bool = False

    @property
    def selected_count(self) -> int:
        return len(self.turns)
