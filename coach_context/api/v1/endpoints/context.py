"""Prompt context endpoints.

Paths:
  POST /api/v1/context/assemble - knowledge + conversation window for a turn
  POST /api/v1/context/turns    - record a completed exchange
"""

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from coach_context.api.deps import Services
from coach_context.context.formatter import ContextTrace
from coach_context.conversation.models import ConversationTurn
from coach_context.knowledge.models import SearchMethod

router = APIRouter()


class ContextAssembleRequest(BaseModel):
    """Context assembly request.

    Either pass ``turns`` (and optionally ``summary``) explicitly, or a
    ``user_id`` to load stored history.
    """

    query: str = Field(..., max_length=2000)
    owner_tag: str | None = None
    user_id: str | None = None
    turns: list[ConversationTurn] | None = None
    summary: str | None = None
    method: SearchMethod | None = None
    max_tokens: int | None = Field(default=None, ge=0)
    include_debug: bool = False


class ContextAssembleResponse(BaseModel):
    """Formatted context for the prompt layer."""

    knowledge_block: str
    history_block: str
    context: str
    trace: ContextTrace
    debug_report: str | None = None


class TurnCreateRequest(BaseModel):
    """A completed user/coach exchange."""

    user_id: str = Field(..., min_length=1)
    owner_tag: str = Field(..., min_length=1)
    user_message: str
    agent_response: str


@router.post("/assemble", response_model=ContextAssembleResponse)
async def assemble_context(
    request: ContextAssembleRequest,
    services: Services,
) -> ContextAssembleResponse:
    """Assemble knowledge and conversation history for one turn."""
    formatted = await services.engine.build_context(
        request.query,
        owner_tag=request.owner_tag,
        user_id=request.user_id,
        turns=request.turns,
        summary=request.summary,
        method=request.method,
        max_tokens=request.max_tokens,
    )
    return ContextAssembleResponse(
        knowledge_block=formatted.knowledge_block,
        history_block=formatted.history_block,
        context=formatted.render(),
        trace=formatted.trace,
        debug_report=formatted.debug_report() if request.include_debug else None,
    )


@router.post("/turns", response_model=ConversationTurn, status_code=status.HTTP_201_CREATED)
async def record_turn(
    request: TurnCreateRequest,
    services: Services,
) -> ConversationTurn:
    """Store a completed exchange in the conversation history."""
    return await services.repository.append_turn(
        request.user_id,
        request.owner_tag,
        request.user_message,
        request.agent_response,
    )
