"""Embedding generation for knowledge chunks and queries.

Supports OpenAI (text-embedding-3-small) and Google (text-embedding-004) models.
Calls are made one text at a time with a fixed delay between them, a bounded
timeout, and per-item failure capture so one bad chunk never aborts a batch.
"""

import asyncio
import logging
import time
from typing import Any, Protocol

from coach_context.core.config import Settings, get_settings
from coach_context.core.exceptions import EmbeddingCallFailed
from coach_context.knowledge.models import EmbeddingOutcome
from coach_context.observability import ContextObserver, EmbeddingRecord, NullObserver, notify

logger = logging.getLogger(__name__)

TASK_DOCUMENT = "retrieval_document"
TASK_QUERY = "retrieval_query"


class EmbeddingProvider(Protocol):
    """Upstream embedding service for a single text."""

    name: str
    model: str

    async def embed(self, text: str, task_type: str = TASK_DOCUMENT) -> list[float]:
        ...


class OpenAIEmbeddingProvider:
    """OpenAI embeddings API."""

    name = "openai"

    def __init__(self, api_key: str | None = None, model: str | None = None) -> None:
        self._api_key = api_key
        self._client: Any = None
        self.model = model or "text-embedding-3-small"

    @property
    def client(self) -> Any:
        # Created on first use so a missing key fails the call, not startup
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self._api_key) if self._api_key else AsyncOpenAI()
        return self._client

    async def embed(self, text: str, task_type: str = TASK_DOCUMENT) -> list[float]:
        response = await self.client.embeddings.create(
            model=self.model,
            input=text,
            encoding_format="float",
        )
        return list(response.data[0].embedding)


class GoogleEmbeddingProvider:
    """Google Generative AI embeddings."""

    name = "google"

    def __init__(self, api_key: str | None = None, model: str | None = None) -> None:
        import google.generativeai as genai

        if api_key:
            genai.configure(api_key=api_key)
        self._genai = genai
        self.model = model or "text-embedding-004"

    async def embed(self, text: str, task_type: str = TASK_DOCUMENT) -> list[float]:
        # The SDK call is blocking
        result = await asyncio.to_thread(
            self._genai.embed_content,
            model=f"models/{self.model}",
            content=text,
            task_type=task_type,
        )
        return list(result["embedding"])


def create_provider(settings: Settings | None = None) -> EmbeddingProvider:
    """Build the configured embedding provider.

    Raises:
        ValueError: If the provider is not supported.
    """
    settings = settings or get_settings()
    if settings.embedding_provider == "openai":
        return OpenAIEmbeddingProvider(settings.openai_api_key, settings.openai_embedding_model)
    elif settings.embedding_provider == "google":
        return GoogleEmbeddingProvider(settings.google_ai_api_key, settings.google_embedding_model)
    else:
        raise ValueError(f"Unsupported embedding provider: {settings.embedding_provider}")


class EmbedderClient:
    """Rate-limited, failure-tolerant wrapper around an embedding provider."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        dimensions: int | None = None,
        timeout_seconds: float = 30.0,
        delay_seconds: float = 0.1,
        observer: ContextObserver | None = None,
    ) -> None:
        self.provider = provider
        self.dimensions = dimensions
        self.timeout_seconds = timeout_seconds
        self.delay_seconds = delay_seconds
        self.observer = observer or NullObserver()

    @property
    def model(self) -> str:
        return self.provider.model

    async def embed_batch(
        self,
        texts: list[str],
        document_id: str | None = None,
    ) -> list[EmbeddingOutcome]:
        """Embed texts one after another, preserving order.

        Args:
            texts: Texts to embed.
            document_id: Owning document, used in failure details.

        Returns:
            One outcome per input text. Failed items carry an error instead
            of a vector.
        """
        outcomes: list[EmbeddingOutcome] = []
        for index, text in enumerate(texts):
            if index > 0 and self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)

            try:
                vector = await self._embed_one(text, TASK_DOCUMENT)
            except EmbeddingCallFailed as exc:
                exc.document_id = document_id
                exc.chunk_index = index
                logger.warning(
                    "Embedding failed for %s chunk %d: %s", document_id, index, exc
                )
                outcomes.append(EmbeddingOutcome(index=index, error=str(exc)))
                continue

            outcomes.append(EmbeddingOutcome(index=index, vector=vector))

        return outcomes

    async def embed_query(self, query: str) -> list[float]:
        """Embed a search query.

        Raises:
            EmbeddingCallFailed: If the upstream call fails or times out.
        """
        return await self._embed_one(query, TASK_QUERY)

    async def _embed_one(self, text: str, task_type: str) -> list[float]:
        start = time.perf_counter()
        error: str | None = None
        try:
            raw = await asyncio.wait_for(
                self.provider.embed(text, task_type),
                timeout=self.timeout_seconds,
            )
            return self._validate(raw)
        except asyncio.TimeoutError:
            error = f"Embedding call timed out after {self.timeout_seconds}s"
            raise EmbeddingCallFailed(error) from None
        except EmbeddingCallFailed as exc:
            error = str(exc)
            raise
        except Exception as exc:
            error = f"Embedding call failed: {exc}"
            raise EmbeddingCallFailed(error) from exc
        finally:
            notify(
                self.observer.on_embedding,
                EmbeddingRecord(
                    provider=self.provider.name,
                    model=self.provider.model,
                    success=error is None,
                    duration_ms=(time.perf_counter() - start) * 1000,
                    input_chars=len(text),
                    error=error,
                ),
            )

    def _validate(self, raw: Any) -> list[float]:
        if not isinstance(raw, (list, tuple)) or not raw:
            raise EmbeddingCallFailed("Malformed embedding response: empty or not a list")
        try:
            vector = [float(value) for value in raw]
        except (TypeError, ValueError) as exc:
            raise EmbeddingCallFailed(f"Malformed embedding response: {exc}") from exc
        if self.dimensions is not None and len(vector) != self.dimensions:
            raise EmbeddingCallFailed(
                f"Embedding dimension {len(vector)} does not match expected {self.dimensions}"
            )
        return vector


def create_embedder(
    settings: Settings | None = None,
    observer: ContextObserver | None = None,
    provider: EmbeddingProvider | None = None,
) -> EmbedderClient:
    """Build an embedder client from settings."""
    settings = settings or get_settings()
    return EmbedderClient(
        provider=provider or create_provider(settings),
        dimensions=settings.embedding_dimensions,
        timeout_seconds=settings.embed_timeout_seconds,
        delay_seconds=settings.embed_delay_seconds,
        observer=observer,
    )
