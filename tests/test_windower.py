"""Tests for token-budgeted conversation windowing."""

from datetime import datetime, timedelta, timezone

import pytest

from coach_context.conversation.models import ConversationTurn
from coach_context.conversation.windower import build_window, turn_cost

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_turns(count: int, tokens_each: int) -> list[ConversationTurn]:
    """Turns costing exactly ``tokens_each`` tokens, oldest first."""
    user_chars = (tokens_each // 2) * 4
    agent_chars = (tokens_each - tokens_each // 2) * 4
    return [
        ConversationTurn(
            user_message=f"{i}".ljust(user_chars, "u"),
            agent_response=f"{i}".ljust(agent_chars, "a"),
            created_at=BASE_TIME + timedelta(minutes=i),
        )
        for i in range(count)
    ]


class TestBuildWindow:
    """Tests for the window selection algorithm."""

    def test_turn_cost_counts_message_and_response_separately(self):
        turn = ConversationTurn(user_message="abcde", agent_response="abc")
        assert turn_cost(turn) == 2 + 1

    def test_floor_dominates_budget(self):
        turns = make_turns(10, 50)

        window = build_window(turns, None, max_tokens=120)

        assert list(window.turns) == turns[-3:]
        assert window.trimmed_count == 7
        assert window.tokens_used == 150
        assert window.over_budget

    def test_everything_fits(self):
        turns = make_turns(10, 10)

        window = build_window(turns, None, max_tokens=1000)

        assert list(window.turns) == turns
        assert window.trimmed_count == 0
        assert window.tokens_used == 100
        assert not window.over_budget

    @pytest.mark.parametrize("count", [3, 4, 10])
    def test_zero_budget_keeps_exactly_floor(self, count):
        window = build_window(make_turns(count, 20), None, max_tokens=0)
        assert window.selected_count == 3

    def test_fewer_turns_than_floor(self):
        turns = make_turns(2, 500)
        window = build_window(turns, None, max_tokens=0)
        assert list(window.turns) == turns

    def test_no_turns(self):
        window = build_window([], None, max_tokens=100)
        assert window.turns == ()
        assert window.total_turns == 0
        assert window.tokens_used == 0

    def test_summary_is_reserved_first(self):
        turns = make_turns(10, 10)
        summary = "s" * 200  # 50 tokens

        window = build_window(turns, summary, max_tokens=100)

        assert window.summary_tokens == 50
        assert window.available_for_turns == 50
        assert window.selected_count == 5
        assert window.tokens_used == 100

    def test_summary_capped_and_truncated(self):
        summary = "s" * 4000  # 1000 tokens

        window = build_window([], summary, max_tokens=2000, summary_token_cap=500)

        assert window.summary_tokens == 500
        assert window.summary == "s" * 2000
        assert window.available_for_turns == 1500

    def test_scan_stops_at_first_rejection(self):
        cheap = make_turns(6, 10)
        expensive = ConversationTurn(
            user_message="x" * 400,
            agent_response="y" * 400,
            created_at=BASE_TIME,
        )
        # oldest: cheap[0], cheap[1], expensive, cheap[2..5]
        turns = cheap[:2] + [expensive] + cheap[2:]

        window = build_window(turns, None, max_tokens=60, min_recent_turns=1)

        assert list(window.turns) == cheap[2:]
        assert window.trimmed_count == 3

    def test_selection_is_contiguous_suffix(self):
        turns = make_turns(4, 10) + make_turns(1, 300) + make_turns(5, 10)

        window = build_window(turns, "summary text", max_tokens=90)

        selected = list(window.turns)
        assert selected == turns[len(turns) - len(selected):]

    def test_deterministic(self):
        turns = make_turns(12, 37)
        first = build_window(turns, "a rolling summary", max_tokens=200)
        second = build_window(turns, "a rolling summary", max_tokens=200)
        assert first == second

    def test_custom_floor(self):
        window = build_window(make_turns(10, 50), None, max_tokens=0, min_recent_turns=5)
        assert window.selected_count == 5
