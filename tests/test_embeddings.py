"""Tests for the embedder client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from coach_context.core.config import Settings
from coach_context.core.exceptions import EmbeddingCallFailed
from coach_context.core.tokens import estimate_tokens
from coach_context.knowledge.embeddings import (
    EmbedderClient,
    GoogleEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_provider,
)
from tests.factories import DIMENSIONS


class TestEmbedBatch:
    """Tests for batch embedding with per-item failure capture."""

    @pytest.mark.asyncio
    async def test_order_preserved(self, embedder, fake_provider):
        outcomes = await embedder.embed_batch(["first text", "second text", "third text"])

        assert [o.index for o in outcomes] == [0, 1, 2]
        assert all(o.ok for o in outcomes)
        assert fake_provider.calls == ["first text", "second text", "third text"]

    @pytest.mark.asyncio
    async def test_failed_item_does_not_abort_batch(self, embedder, fake_provider):
        fake_provider.fail_on.add("poison")

        outcomes = await embedder.embed_batch(["good one", "poison pill", "good two"], document_id="doc")

        assert [o.ok for o in outcomes] == [True, False, True]
        assert "poison" in outcomes[1].error
        assert outcomes[1].vector is None

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_failure(self, fake_provider):
        fake_provider.vectors["short"] = [1.0, 2.0]
        client = EmbedderClient(fake_provider, dimensions=DIMENSIONS, delay_seconds=0)

        outcomes = await client.embed_batch(["short"])

        assert not outcomes[0].ok
        assert "dimension" in outcomes[0].error

    @pytest.mark.asyncio
    async def test_malformed_response_is_failure(self):
        provider = MagicMock()
        provider.name = "mock"
        provider.model = "mock-model"
        provider.embed = AsyncMock(return_value=["not", "numbers"])
        client = EmbedderClient(provider, delay_seconds=0)

        outcomes = await client.embed_batch(["text"])

        assert not outcomes[0].ok
        assert "Malformed" in outcomes[0].error

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self):
        async def slow_embed(text, task_type="retrieval_document"):
            await asyncio.sleep(1)
            return [1.0]

        provider = MagicMock()
        provider.name = "mock"
        provider.model = "mock-model"
        provider.embed = slow_embed
        client = EmbedderClient(provider, timeout_seconds=0.01, delay_seconds=0)

        outcomes = await client.embed_batch(["text"])

        assert not outcomes[0].ok
        assert "timed out" in outcomes[0].error

    @pytest.mark.asyncio
    async def test_delay_between_calls(self, fake_provider):
        client = EmbedderClient(fake_provider, delay_seconds=0.05)

        with patch("coach_context.knowledge.embeddings.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await client.embed_batch(["a", "b", "c"])

        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.05)

    @pytest.mark.asyncio
    async def test_calls_reported_to_observer(self, embedder, fake_provider, observer):
        fake_provider.fail_on.add("bad")

        await embedder.embed_batch(["fine", "bad"])

        assert [r.success for r in observer.embeddings] == [True, False]
        assert observer.embeddings[0].provider == "fake"
        assert observer.embeddings[1].error is not None


class TestEmbedQuery:
    """Tests for query embedding."""

    @pytest.mark.asyncio
    async def test_returns_vector(self, embedder):
        vector = await embedder.embed_query("protein timing")
        assert len(vector) == DIMENSIONS

    @pytest.mark.asyncio
    async def test_raises_on_failure(self, embedder, fake_provider):
        fake_provider.fail_on.add("protein")

        with pytest.raises(EmbeddingCallFailed):
            await embedder.embed_query("protein timing")


class TestProviders:
    """Tests for provider construction."""

    def test_create_openai_provider(self):
        settings = Settings(_env_file=None, embedding_provider="openai", openai_api_key="sk-test")
        provider = create_provider(settings)
        assert isinstance(provider, OpenAIEmbeddingProvider)
        assert provider.model == "text-embedding-3-small"

    def test_create_google_provider(self):
        settings = Settings(_env_file=None, embedding_provider="google", google_ai_api_key="key")
        with patch("google.generativeai.configure"):
            provider = create_provider(settings)
        assert isinstance(provider, GoogleEmbeddingProvider)
        assert provider.model == "text-embedding-004"

    def test_unknown_provider(self):
        settings = Settings(_env_file=None, embedding_provider="nope")
        with pytest.raises(ValueError):
            create_provider(settings)

    @pytest.mark.asyncio
    async def test_openai_request_shape(self):
        provider = OpenAIEmbeddingProvider(api_key="sk-test", model="text-embedding-3-small")
        response = MagicMock()
        response.data = [MagicMock(embedding=[0.1, 0.2])]
        fake_client = MagicMock()
        fake_client.embeddings.create = AsyncMock(return_value=response)
        provider._client = fake_client

        vector = await provider.embed("hello")

        assert vector == [0.1, 0.2]
        fake_client.embeddings.create.assert_awaited_once_with(
            model="text-embedding-3-small",
            input="hello",
            encoding_format="float",
        )


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2

