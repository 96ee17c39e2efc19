"""Prompt context assembly.

Turns a retrieval response and a conversation window into the two text
blocks handed to the prompt layer, plus a trace of how they were built.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from coach_context.conversation.models import ConversationTurn, WindowResult
from coach_context.knowledge.models import RAGResponse

KNOWLEDGE_START = "### KNOWLEDGE ###"
KNOWLEDGE_END = "### END KNOWLEDGE ###"
HISTORY_START = "### CONVERSATION HISTORY ###"
HISTORY_END = "### END CONVERSATION HISTORY ###"


class ResultTrace(BaseModel):
    """Scores of one retrieval result."""

    chunk_ref: str
    source_title: str
    similarity_score: float
    lexical_score: Optional[float] = None
    combined_score: float
    in_context: bool = False


class WindowTrace(BaseModel):
    """Token accounting of the conversation window."""

    total_turns: int = 0
    selected_turns: int = 0
    trimmed_count: int = 0
    summary_tokens: int = 0
    available_for_turns: int = 0
    tokens_used: int = 0
    max_tokens: int = 0
    over_budget: bool = False


class ContextTrace(BaseModel):
    """Intermediate artifacts of one assembly, for debugging and audit only."""

    query: Optional[str] = None
    search_method: Optional[str] = None
    owner_tag: Optional[str] = None
    retrieval_valid: bool = False
    relevance_score: float = 0.0
    top_score: float = 0.0
    cache_hit: bool = False
    retrieval_time_ms: float = 0.0
    results: list[ResultTrace] = Field(default_factory=list)
    knowledge_included: bool = False
    window: WindowTrace = Field(default_factory=WindowTrace)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class FormattedContext(BaseModel):
    """Knowledge and history blocks ready for the prompt layer."""

    knowledge_block: str = ""
    history_block: str = ""
    trace: ContextTrace = Field(default_factory=ContextTrace)

    @property
    def has_knowledge(self) -> bool:
        return bool(self.knowledge_block)

    def render(self) -> str:
        """Both blocks joined, skipping empty ones."""
        return "\n\n".join(b for b in (self.knowledge_block, self.history_block) if b)

    def debug_report(self) -> str:
        """Human-readable dump of the trace."""
        t = self.trace
        lines = [
            "=== Context Trace ===",
            f"Query: {t.query!r}",
            f"Method: {t.search_method}  Owner: {t.owner_tag}  Cache hit: {t.cache_hit}",
            (
                f"Retrieval valid: {t.retrieval_valid}  Top score: {t.top_score:.3f}  "
                f"Relevance: {t.relevance_score:.2f}  Time: {t.retrieval_time_ms:.1f}ms"
            ),
            f"Knowledge included: {t.knowledge_included}",
        ]
        for i, r in enumerate(t.results, 1):
            lexical = "-" if r.lexical_score is None else f"{r.lexical_score:.3f}"
            marker = "*" if r.in_context else " "
            lines.append(
                f"  {marker}[{i}] {r.chunk_ref} {r.source_title!r} "
                f"sim={r.similarity_score:.3f} lex={lexical} combined={r.combined_score:.3f}"
            )
        w = t.window
        lines.extend(
            [
                (
                    f"Window: {w.selected_turns}/{w.total_turns} turns "
                    f"(trimmed {w.trimmed_count})"
                ),
                (
                    f"Tokens: {w.tokens_used}/{w.max_tokens} used, summary {w.summary_tokens}, "
                    f"available for turns {w.available_for_turns}"
                ),
            ]
        )
        if w.over_budget:
            lines.append("Window exceeds budget (recent-turn floor)")
        return "\n".join(lines)


def relative_time_label(created_at: datetime, now: datetime | None = None) -> str:
    """Coarse label such as ``5 minutes ago``."""
    now = now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)

    seconds = (now - created_at).total_seconds()
    if seconds < 60:
        return "just now"
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    if days == 1:
        return "yesterday"
    if days < 7:
        return f"{days} days ago"
    weeks = days // 7
    if weeks == 1:
        return "last week"
    if weeks < 4:
        return f"{weeks} weeks ago"
    # 28 and 29 days still count as one month
    months = max(days // 30, 1)
    if months == 1:
        return "last month"
    if months < 12:
        return f"{months} months ago"
    years = months // 12
    if years == 1:
        return "last year"
    return f"{years} years ago"


def format_knowledge_block(retrieval: RAGResponse) -> str:
    """Knowledge block for a valid retrieval, or an empty string."""
    if not retrieval.is_valid or not retrieval.context_results:
        return ""

    sections = [
        f"[{i}] {r.source_title} ({r.source_category})\n{r.text}"
        for i, r in enumerate(retrieval.context_results, 1)
    ]
    return "\n".join([KNOWLEDGE_START, "\n\n".join(sections), KNOWLEDGE_END])


def format_history_block(window: WindowResult, now: datetime | None = None) -> str:
    """Summary first, then turns oldest to newest. Empty if there is neither."""
    if not window.summary and not window.turns:
        return ""

    parts = [HISTORY_START]
    if window.summary:
        parts.append(f"Summary of earlier conversation:\n{window.summary}")
    parts.extend(_format_turn(turn, now) for turn in window.turns)
    parts.append(HISTORY_END)
    return "\n\n".join(parts)


def _format_turn(turn: ConversationTurn, now: datetime | None) -> str:
    label = relative_time_label(turn.created_at, now)
    return f"[{label}]\nUser: {turn.user_message}\nCoach: {turn.agent_response}"


def assemble(
    retrieval: RAGResponse | None,
    window: WindowResult,
    now: datetime | None = None,
) -> FormattedContext:
    """Build the prompt context from retrieval and window results.

    Args:
        retrieval: Knowledge search response, or None when no search ran.
        window: Selected conversation turns and summary.
        now: Reference time for relative labels (defaults to current UTC).
    """
    now = now or datetime.now(timezone.utc)
    knowledge_block = format_knowledge_block(retrieval) if retrieval is not None else ""

    trace = ContextTrace(
        knowledge_included=bool(knowledge_block),
        window=WindowTrace(
            total_turns=window.total_turns,
            selected_turns=window.selected_count,
            trimmed_count=window.trimmed_count,
            summary_tokens=window.summary_tokens,
            available_for_turns=window.available_for_turns,
            tokens_used=window.tokens_used,
            max_tokens=window.max_tokens,
            over_budget=window.over_budget,
        ),
        generated_at=now,
    )
    if retrieval is not None:
        in_context = {r.chunk_ref for r in retrieval.context_results}
        trace.query = retrieval.query
        trace.search_method = retrieval.search_method.value
        trace.owner_tag = retrieval.owner_tag
        trace.retrieval_valid = retrieval.is_valid
        trace.relevance_score = retrieval.relevance_score
        trace.top_score = retrieval.top_score
        trace.cache_hit = retrieval.cache_hit
        trace.retrieval_time_ms = retrieval.response_time_ms
        trace.results = [
            ResultTrace(
                chunk_ref=str(r.chunk_ref),
                source_title=r.source_title,
                similarity_score=r.similarity_score,
                lexical_score=r.lexical_score,
                combined_score=r.combined_score,
                in_context=r.chunk_ref in in_context,
            )
            for r in retrieval.results
        ]

    return FormattedContext(
        knowledge_block=knowledge_block,
        history_block=format_history_block(window, now),
        trace=trace,
    )
