"""Tests for the background re-embedding queue and worker tasks."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from arq.jobs import JobStatus
from redis.exceptions import ConnectionError as RedisConnectionError

from coach_context.core.exceptions import JobQueueUnavailable, StoreWriteFailed
from coach_context.knowledge.models import ReembedSummary
from coach_context.services.context_services import build_services
from coach_context.services.job_queue import (
    BACKFILL_TASK,
    REEMBED_TASK,
    ReembedJobQueue,
    redis_settings_from_url,
)
from coach_context.workers.reembed_worker import (
    WorkerSettings,
    backfill_knowledge,
    reembed_knowledge,
)
from tests.factories import make_document


@pytest.fixture
def pool() -> MagicMock:
    pool = MagicMock()
    pool.enqueue_job = AsyncMock(return_value=MagicMock(job_id="abc123"))
    pool.aclose = AsyncMock()
    return pool


@pytest.fixture
def job_queue() -> ReembedJobQueue:
    return ReembedJobQueue(redis_settings_from_url("redis://localhost:6379/0"), queue_name="test_queue")


@pytest.fixture
def services(session_factory, settings, fake_provider, observer):
    return build_services(session_factory, settings, provider=fake_provider, observer=observer)


def test_redis_settings_from_url():
    redis_settings = redis_settings_from_url("redis://:secret@cache.internal:6380/2")

    assert redis_settings.host == "cache.internal"
    assert redis_settings.port == 6380
    assert redis_settings.database == 2
    assert redis_settings.password == "secret"


def test_redis_settings_defaults():
    redis_settings = redis_settings_from_url("redis://")

    assert redis_settings.host == "localhost"
    assert redis_settings.port == 6379
    assert redis_settings.database == 0


def test_worker_settings():
    assert WorkerSettings.functions == [reembed_knowledge, backfill_knowledge]
    assert [f.__name__ for f in WorkerSettings.functions] == [REEMBED_TASK, BACKFILL_TASK]
    assert WorkerSettings.max_jobs == 1


class TestReembedJobQueue:
    """Tests for enqueueing and job lookup against a mocked Redis pool."""

    @pytest.mark.asyncio
    async def test_enqueue_reembed(self, job_queue, pool):
        with patch(
            "coach_context.services.job_queue.create_pool", new_callable=AsyncMock, return_value=pool
        ) as create:
            job_id = await job_queue.enqueue_reembed("all")

        assert job_id == "abc123"
        create.assert_awaited_once()
        assert create.call_args.kwargs["default_queue_name"] == "test_queue"
        pool.enqueue_job.assert_awaited_once_with(REEMBED_TASK, _queue_name="test_queue", target="all")

    @pytest.mark.asyncio
    async def test_pool_reused(self, job_queue, pool):
        with patch(
            "coach_context.services.job_queue.create_pool", new_callable=AsyncMock, return_value=pool
        ) as create:
            await job_queue.enqueue_reembed("all")
            await job_queue.enqueue_backfill()

        create.assert_awaited_once()
        assert pool.enqueue_job.call_args.args == (BACKFILL_TASK,)

    @pytest.mark.asyncio
    async def test_redis_down(self, job_queue):
        with patch(
            "coach_context.services.job_queue.create_pool",
            new_callable=AsyncMock,
            side_effect=RedisConnectionError("connection refused"),
        ):
            with pytest.raises(JobQueueUnavailable):
                await job_queue.enqueue_backfill()

    @pytest.mark.asyncio
    async def test_duplicate_job_rejected(self, job_queue, pool):
        pool.enqueue_job.return_value = None

        with patch("coach_context.services.job_queue.create_pool", new_callable=AsyncMock, return_value=pool):
            with pytest.raises(JobQueueUnavailable):
                await job_queue.enqueue_reembed("all")

    @pytest.mark.asyncio
    async def test_status_of_running_job(self, job_queue, pool):
        job = MagicMock()
        job.status = AsyncMock(return_value=JobStatus.in_progress)

        with patch("coach_context.services.job_queue.create_pool", new_callable=AsyncMock, return_value=pool):
            with patch("coach_context.services.job_queue.Job", return_value=job) as job_class:
                status = await job_queue.job_status("abc123")

        assert status.status == "in_progress"
        assert status.result is None
        assert job_class.call_args.kwargs["_queue_name"] == "test_queue"

    @pytest.mark.asyncio
    async def test_status_of_completed_job(self, job_queue, pool):
        result = {"success": False, "target": "all", "error": "db down"}
        job = MagicMock()
        job.status = AsyncMock(return_value=JobStatus.complete)
        job.result_info = AsyncMock(return_value=MagicMock(success=True, result=result))

        with patch("coach_context.services.job_queue.create_pool", new_callable=AsyncMock, return_value=pool):
            with patch("coach_context.services.job_queue.Job", return_value=job):
                status = await job_queue.job_status("abc123")

        assert status.status == "complete"
        assert status.success is False
        assert status.result == result

    @pytest.mark.asyncio
    async def test_unknown_job(self, job_queue, pool):
        job = MagicMock()
        job.status = AsyncMock(return_value=JobStatus.not_found)

        with patch("coach_context.services.job_queue.create_pool", new_callable=AsyncMock, return_value=pool):
            with patch("coach_context.services.job_queue.Job", return_value=job):
                assert await job_queue.job_status("missing") is None

    @pytest.mark.asyncio
    async def test_close(self, job_queue, pool):
        with patch("coach_context.services.job_queue.create_pool", new_callable=AsyncMock, return_value=pool):
            await job_queue.enqueue_backfill()
        await job_queue.close()
        await job_queue.close()

        pool.aclose.assert_awaited_once()


@pytest.mark.rag
class TestWorkerTasks:
    """Tests for the task functions the worker runs."""

    @pytest.mark.asyncio
    async def test_reembed_all(self, services):
        for i in range(2):
            await services.store.upsert_document(make_document(f"doc{i}", f"Document {i} body."))

        result = await reembed_knowledge({"services": services}, "all")

        assert result["success"] is True
        assert result["target"] == "all"
        assert result["percentage"] == 100
        assert result["summary"]["processed"] == 2
        assert await services.store.all_missing_embeddings() == []

    @pytest.mark.asyncio
    async def test_unknown_target(self, services):
        result = await reembed_knowledge({"services": services}, "nope")

        assert result["success"] is False
        assert "nope" in result["error"]

    @pytest.mark.asyncio
    async def test_embedding_failures_reported(self, services, fake_provider):
        await services.store.upsert_document(make_document("doc0", "Document zero body."))
        fake_provider.fail_on.add("zero")

        result = await reembed_knowledge({"services": services})

        assert result["success"] is False
        assert result["summary"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_keeps_summary(self, services):
        summary = ReembedSummary(total=2, processed=1, failed=1)
        services.reembedder.reembed = AsyncMock(
            side_effect=StoreWriteFailed("db down", document_id="doc1", summary=summary)
        )

        result = await reembed_knowledge({"services": services}, "all")

        assert result["success"] is False
        assert result["percentage"] == 50
        assert result["summary"]["total"] == 2

    @pytest.mark.asyncio
    async def test_backfill(self, services):
        await services.store.upsert_document(make_document("doc0", "Document zero body."))

        result = await backfill_knowledge({"services": services})

        assert result["success"] is True
        assert result["target"] == "missing"
        assert result["summary"]["total"] == 1
        assert await services.store.all_missing_embeddings() == []

    @pytest.mark.asyncio
    async def test_backfill_store_failure(self, services):
        services.reembedder.backfill_missing = AsyncMock(side_effect=StoreWriteFailed("db down"))

        result = await backfill_knowledge({"services": services})

        assert result == {"success": False, "target": "missing", "error": "db down"}
