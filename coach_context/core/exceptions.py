"""Custom exceptions for the context engine."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from coach_context.knowledge.models import ReembedSummary


class CoachContextError(Exception):
    """Base class for context engine errors."""

    pass


class ChunkTooLarge(UserWarning):
    """Issued when a single sentence exceeds the chunk size and is truncated."""

    def __init__(self, sentence_length: int, max_chars: int) -> None:
        super().__init__(
            f"Sentence of {sentence_length} chars truncated to {max_chars} chars"
        )
        self.sentence_length = sentence_length
        self.max_chars = max_chars


class EmbeddingCallFailed(CoachContextError):
    """Raised when an embedding request fails or returns an unusable vector."""

    def __init__(
        self,
        message: str,
        document_id: str | None = None,
        chunk_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.document_id = document_id
        self.chunk_index = chunk_index

class StoreWriteFailed(CoachContextError):
    """Raised when the atomic chunk replacement for a document cannot complete.

    The previous chunk set for the document is left intact.
    """

    def __init__(
        self,
        message: str,
        document_id: str | None = None,
        summary: "ReembedSummary | None" = None,
    ) -> None:
        super().__init__(message)
        self.document_id = document_id
        self.summary = summary


class JobQueueUnavailable(CoachContextError):
    """Raised when the background job queue (Redis) cannot be reached."""

    pass
