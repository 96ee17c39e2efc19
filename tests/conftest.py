"""Pytest configuration and fixtures for context engine tests."""

from typing import AsyncGenerator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from coach_context.core.config import Settings
from coach_context.core.database import Base
from coach_context.knowledge.embeddings import EmbedderClient
from coach_context.knowledge.reembed import Reembedder
from coach_context.knowledge.retriever import KnowledgeRetriever
from coach_context.knowledge.store import KnowledgeStore
from coach_context.observability import InMemoryObserver, MetricsCollector
from tests.factories import DIMENSIONS, FakeEmbeddingProvider, FakeJobQueue

# Import all models to ensure they're registered with Base
import coach_context.models  # noqa: F401


# -------------------------------------------------------------------------
# Database Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


# -------------------------------------------------------------------------
# Component Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and .env file."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        embedding_dimensions=DIMENSIONS,
        embed_delay_seconds=0.0,
        reembed_batch_pause_seconds=0.0,
        reembed_concurrency=1,
        rag_cache_enabled=False,
        persist_search_metrics=False,
    )


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def observer() -> InMemoryObserver:
    return InMemoryObserver()


@pytest.fixture
def embedder(fake_provider: FakeEmbeddingProvider, observer: InMemoryObserver) -> EmbedderClient:
    return EmbedderClient(
        fake_provider,
        dimensions=DIMENSIONS,
        timeout_seconds=5.0,
        delay_seconds=0.0,
        observer=observer,
    )


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> KnowledgeStore:
    return KnowledgeStore(session_factory, dimensions=DIMENSIONS)


@pytest.fixture
def retriever(
    store: KnowledgeStore,
    embedder: EmbedderClient,
    observer: InMemoryObserver,
) -> KnowledgeRetriever:
    return KnowledgeRetriever(store, embedder, observer=observer)


@pytest.fixture
def reembedder(store: KnowledgeStore, embedder: EmbedderClient) -> Reembedder:
    # Sessions share one SQLite connection under StaticPool, so documents run one at a time
    return Reembedder(store, embedder, concurrency=1, batch_pause_seconds=0.0)


# -------------------------------------------------------------------------
# HTTP Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def job_queue() -> FakeJobQueue:
    return FakeJobQueue()


@pytest.fixture
def app(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    fake_provider: FakeEmbeddingProvider,
    observer: InMemoryObserver,
    metrics: MetricsCollector,
    job_queue: FakeJobQueue,
) -> FastAPI:
    """Create a FastAPI app wired to the test database and fake provider."""
    from coach_context.main import create_app
    from coach_context.services.context_services import build_services

    services = build_services(
        session_factory,
        settings,
        provider=fake_provider,
        observer=observer,
    )
    job_queue.services = services
    return create_app(services=services, metrics_backend=metrics, job_queue=job_queue)


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
