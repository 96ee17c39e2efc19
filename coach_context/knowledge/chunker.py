"""Sentence-respecting text chunker.

Splits knowledge text into bounded-length chunks suitable for embedding.
Concatenating the chunks of a text in order gives back the original text,
except where a single sentence had to be truncated to fit.
"""

import re
import warnings

from coach_context.core.exceptions import ChunkTooLarge

# Default chunk configuration
DEFAULT_MAX_CHARS = 8000  # characters

# Split after a run of sentence delimiters; whitespace stays with the next sentence
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])(?![.!?])")


def split_sentences(text: str) -> list[str]:
    """Split text into sentences on '.', '!' and '?'.

    No characters are dropped: ``"".join(split_sentences(t)) == t``.
    """
    return [piece for piece in _SENTENCE_BOUNDARY.split(text) if piece]


def chunk_text(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> list[str]:
    """Split text into chunks of at most ``max_chars`` characters.

    Sentences are packed greedily: a chunk is flushed when adding the next
    sentence would exceed ``max_chars``. A sentence longer than ``max_chars``
    is truncated and emitted as its own chunk (a ``ChunkTooLarge`` warning is
    issued).

    Args:
        text: Text to split.
        max_chars: Maximum characters per chunk.

    Returns:
        Ordered list of chunks. Never empty; empty input yields ``[""]``.

    Raises:
        ValueError: If max_chars is smaller than 1.
    """
    if max_chars < 1:
        raise ValueError(f"max_chars must be positive, got {max_chars}")

    sentences = split_sentences(text)
    if not sentences:
        return [text[:max_chars]]

    chunks: list[str] = []
    buffer = ""

    for sentence in sentences:
        if len(sentence) > max_chars:
            if buffer:
                chunks.append(buffer)
                buffer = ""
            warnings.warn(ChunkTooLarge(len(sentence), max_chars), stacklevel=2)
            chunks.append(sentence[:max_chars])
            continue

        if len(buffer) + len(sentence) > max_chars:
            chunks.append(buffer)
            buffer = sentence
        else:
            buffer += sentence

    if buffer:
        chunks.append(buffer)

    return chunks
