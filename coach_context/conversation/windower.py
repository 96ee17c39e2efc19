"""Token-budgeted conversation windowing.

Selects the most recent turns that fit a token budget after reserving room
for the rolling summary. The newest ``min_recent_turns`` turns are always
kept, even when they alone exceed the budget.
"""

from typing import Sequence

from coach_context.conversation.models import ConversationTurn, WindowResult
from coach_context.core.tokens import CHARS_PER_TOKEN, estimate_tokens

DEFAULT_SUMMARY_TOKEN_CAP = 500
DEFAULT_MIN_RECENT_TURNS = 3


def turn_cost(turn: ConversationTurn) -> int:
    """Estimated tokens for a turn (message and response counted separately)."""
    return estimate_tokens(turn.user_message) + estimate_tokens(turn.agent_response)


def build_window(
    turns: Sequence[ConversationTurn],
    summary: str | None,
    max_tokens: int,
    *,
    summary_token_cap: int = DEFAULT_SUMMARY_TOKEN_CAP,
    min_recent_turns: int = DEFAULT_MIN_RECENT_TURNS,
) -> WindowResult:
    """Select a contiguous suffix of ``turns`` that fits ``max_tokens``.

    Args:
        turns: Conversation turns, oldest first.
        summary: Rolling summary of older history, if any.
        max_tokens: Total budget for summary and turns.
        summary_token_cap: Maximum tokens reserved for the summary. Longer
            summaries are truncated to ``summary_token_cap * 4`` characters.
        min_recent_turns: Newest turns kept regardless of the budget.

    Returns:
        WindowResult with the selected turns in chronological order.
    """
    summary = summary or None
    summary_tokens = estimate_tokens(summary)
    if summary_tokens > summary_token_cap:
        summary = summary[: summary_token_cap * CHARS_PER_TOKEN]
        summary_tokens = summary_token_cap

    available = max_tokens - summary_tokens

    selected: list[ConversationTurn] = []
    running = 0
    for turn in reversed(turns):
        cost = turn_cost(turn)
        if running + cost <= available or len(selected) < min_recent_turns:
            selected.append(turn)
            running += cost
        else:
            # Everything older is dropped too; the window stays contiguous
            break

    selected.reverse()
    tokens_used = running + summary_tokens

    return WindowResult(
        turns=tuple(selected),
        summary=summary,
        summary_tokens=summary_tokens,
        available_for_turns=available,
        tokens_used=tokens_used,
        total_turns=len(turns),
        trimmed_count=len(turns) - len(selected),
        max_tokens=max_tokens,
        over_budget=tokens_used > max_tokens,
    )
