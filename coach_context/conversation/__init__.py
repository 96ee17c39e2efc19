"""Conversation history windowing and persistence."""

from coach_context.conversation.models import ConversationTurn, WindowResult
from coach_context.conversation.repository import ConversationRepository
from coach_context.conversation.windower import build_window, turn_cost

__all__ = [
    "ConversationRepository",
    "ConversationTurn",
    "WindowResult",
    "build_window",
    "turn_cost",
]
