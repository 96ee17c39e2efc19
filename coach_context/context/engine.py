"""Context engine: retrieval + conversation window -> prompt context."""

import logging
from datetime import datetime
from typing import Sequence

from coach_context.context.formatter import FormattedContext, assemble
from coach_context.conversation.models import ConversationTurn
from coach_context.conversation.repository import ConversationRepository
from coach_context.conversation.windower import build_window
from coach_context.core.config import Settings, get_settings
from coach_context.knowledge.models import RAGResponse, SearchMethod
from coach_context.knowledge.retriever import KnowledgeRetriever

logger = logging.getLogger(__name__)


class ContextEngine:
    """Builds the context for one conversational turn.

    Missing knowledge, summary or turns never fail assembly; the
    corresponding block is simply left out.
    """

    def __init__(
        self,
        retriever: KnowledgeRetriever | None,
        repository: ConversationRepository | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.retriever = retriever
        self.repository = repository
        self.settings = settings or get_settings()

    async def build_context(
        self,
        query: str,
        owner_tag: str | None = None,
        user_id: str | None = None,
        turns: Sequence[ConversationTurn] | None = None,
        summary: str | None = None,
        method: SearchMethod | str | None = None,
        max_tokens: int | None = None,
        now: datetime | None = None,
    ) -> FormattedContext:
        """Retrieve knowledge and window the conversation.

        Args:
            query: The user's current message.
            owner_tag: Coach persona; restricts the knowledge search.
            user_id: Load stored history for this user when ``turns`` is None.
            turns: Explicit history, oldest first.
            summary: Explicit rolling summary (used with ``turns``).
            method: Search method override.
            max_tokens: Window budget override.
            now: Reference time for relative labels.
        """
        settings = self.settings
        retrieval = await self._retrieve(query, owner_tag, method)

        if turns is None:
            turns, summary = await self._load_history(user_id, owner_tag)

        window = build_window(
            turns,
            summary,
            max_tokens if max_tokens is not None else settings.window_max_tokens,
            summary_token_cap=settings.window_summary_token_cap,
            min_recent_turns=settings.window_min_recent_turns,
        )
        if window.over_budget:
            logger.info(
                "Conversation window over budget at recency floor: %d/%d tokens (%d turns)",
                window.tokens_used,
                window.max_tokens,
                window.selected_count,
            )

        return assemble(retrieval, window, now)

    async def _retrieve(
        self,
        query: str,
        owner_tag: str | None,
        method: SearchMethod | str | None,
    ) -> RAGResponse | None:
        if self.retriever is None or not query.strip():
            return None
        try:
            return await self.retriever.search(
                query,
                owner_tag=owner_tag,
                method=method or self.settings.rag_default_method,
                max_results=self.settings.rag_max_results,
                context_char_budget=self.settings.rag_context_char_budget,
            )
        except Exception as e:
            logger.error("Knowledge search failed, continuing without knowledge: %s", e)
            return None

    async def _load_history(
        self,
        user_id: str | None,
        owner_tag: str | None,
    ) -> tuple[list[ConversationTurn], str | None]:
        if self.repository is None or user_id is None or owner_tag is None:
            return [], None
        try:
            return await self.repository.load_history(user_id, owner_tag)
        except Exception as e:
            logger.error("Failed to load conversation history for %s: %s", user_id, e)
            return [], None
