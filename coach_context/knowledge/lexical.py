"""Keyword overlap scoring for knowledge search."""

import re

from coach_context.knowledge.models import KnowledgeChunk

_WORD = re.compile(r"\w+", re.UNICODE)

# Terms of this length or shorter are ignored
MIN_TERM_LENGTH = 2


def tokenize(text: str) -> list[str]:
    """Lower-case words longer than ``MIN_TERM_LENGTH``, in order, de-duplicated."""
    seen: dict[str, None] = {}
    for word in _WORD.findall(text.lower()):
        if len(word) > MIN_TERM_LENGTH:
            seen.setdefault(word, None)
    return list(seen)


def lexical_score(query_terms: list[str], chunk: KnowledgeChunk) -> float:
    """Fraction of query terms found in the chunk title or text.

    Returns 0.0 when the query has no usable terms.
    """
    if not query_terms:
        return 0.0
    haystack = f"{chunk.metadata.title} {chunk.text}".lower()
    matches = sum(1 for term in query_terms if term in haystack)
    return matches / len(query_terms)
