"""Token estimation shared by retrieval and conversation windowing."""

import math

# Rough average for English text
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """Estimate tokens as ceil(len(text) / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
