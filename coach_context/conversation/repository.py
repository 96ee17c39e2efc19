"""Persistence for conversation turns and rolling summaries."""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coach_context.conversation.models import ConversationTurn
from coach_context.models.conversation import ConversationMemory, ConversationTurnRecord

logger = logging.getLogger(__name__)


class ConversationRepository:
    """Reads and appends conversation history per (user, coach) pair."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load_history(
        self,
        user_id: str,
        owner_tag: str,
        limit: int | None = None,
    ) -> tuple[list[ConversationTurn], str | None]:
        """Return turns (oldest first) and the rolling summary.

        Args:
            user_id: User identifier.
            owner_tag: Coach persona.
            limit: Only load the newest ``limit`` turns.
        """
        async with self._session_factory() as session:
            memory = await self._find(session, user_id, owner_tag)
            if memory is None:
                return [], None

            stmt = (
                select(ConversationTurnRecord)
                .where(ConversationTurnRecord.conversation_id == memory.id)
                .order_by(ConversationTurnRecord.id.desc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            records = list(result.scalars().all())

        records.reverse()
        return [_turn_from_record(r) for r in records], memory.rolling_summary

    async def append_turn(
        self,
        user_id: str,
        owner_tag: str,
        user_message: str,
        agent_response: str,
        created_at: datetime | None = None,
    ) -> ConversationTurn:
        """Store a completed exchange."""
        async with self._session_factory() as session:
            async with session.begin():
                memory = await self._get_or_create(session, user_id, owner_tag)
                record = ConversationTurnRecord(
                    conversation_id=memory.id,
                    user_message=user_message,
                    agent_response=agent_response,
                )
                if created_at is not None:
                    record.created_at = created_at
                session.add(record)
                await session.flush()
                turn = _turn_from_record(record)
        return turn

    async def set_summary(self, user_id: str, owner_tag: str, summary: str | None) -> None:
        """Replace the rolling summary (produced elsewhere)."""
        async with self._session_factory() as session:
            async with session.begin():
                memory = await self._get_or_create(session, user_id, owner_tag)
                memory.rolling_summary = summary
        logger.debug("Updated rolling summary for %s/%s", user_id, owner_tag)

    async def _find(
        self,
        session: AsyncSession,
        user_id: str,
        owner_tag: str,
    ) -> ConversationMemory | None:
        result = await session.execute(
            select(ConversationMemory).where(
                ConversationMemory.user_id == user_id,
                ConversationMemory.owner_tag == owner_tag,
            )
        )
        return result.scalar_one_or_none()

    async def _get_or_create(
        self,
        session: AsyncSession,
        user_id: str,
        owner_tag: str,
    ) -> ConversationMemory:
        memory = await self._find(session, user_id, owner_tag)
        if memory is None:
            memory = ConversationMemory(user_id=user_id, owner_tag=owner_tag)
            session.add(memory)
            await session.flush()
        return memory


def _turn_from_record(record: ConversationTurnRecord) -> ConversationTurn:
    created_at = record.created_at
    # SQLite drops tzinfo
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return ConversationTurn(
        user_message=record.user_message,
        agent_response=record.agent_response,
        created_at=created_at,
    )
