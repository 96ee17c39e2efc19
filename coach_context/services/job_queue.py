"""Background job queue for corpus-wide re-embedding.

Re-embedding every document can take minutes, so the API hands it to an
ARQ worker (see ``coach_context.workers.reembed_worker``) and returns a
job id the caller can poll.
"""

import logging
from typing import Any
from urllib.parse import urlparse

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job, JobStatus
from pydantic import BaseModel
from redis.exceptions import RedisError

from coach_context.core.config import Settings, get_settings
from coach_context.core.exceptions import JobQueueUnavailable

logger = logging.getLogger(__name__)

REEMBED_TASK = "reembed_knowledge"
BACKFILL_TASK = "backfill_knowledge"


def redis_settings_from_url(url: str) -> RedisSettings:
    """Parse Redis URL into RedisSettings."""
    parsed = urlparse(url)
    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        database=int(parsed.path.lstrip("/") or 0),
        password=parsed.password,
    )


class ReembedJobStatus(BaseModel):
    """State of a queued re-embedding job."""

    job_id: str
    status: str
    success: bool | None = None
    result: Any = None


class ReembedJobQueue:
    """Enqueues re-embedding jobs and reports their state."""

    def __init__(self, redis_settings: RedisSettings, queue_name: str):
        self.redis_settings = redis_settings
        self.queue_name = queue_name
        self._pool: ArqRedis | None = None

    async def enqueue_reembed(self, target: str) -> str:
        """Queue a re-embedding run for ``target`` and return the job id."""
        return await self._enqueue(REEMBED_TASK, target=target)

    async def enqueue_backfill(self) -> str:
        """Queue a backfill of documents without chunks and return the job id."""
        return await self._enqueue(BACKFILL_TASK)

    async def job_status(self, job_id: str) -> ReembedJobStatus | None:
        """Look up a job. Returns None if Redis does not know the id."""
        pool = await self._get_pool()
        job = Job(job_id, pool, _queue_name=self.queue_name)
        try:
            state = await job.status()
        except (OSError, RedisError) as e:
            raise JobQueueUnavailable(f"Job queue unavailable: {e}") from e

        if state == JobStatus.not_found:
            return None
        if state != JobStatus.complete:
            return ReembedJobStatus(job_id=job_id, status=state.value)

        info = await job.result_info()
        if info is None:
            return ReembedJobStatus(job_id=job_id, status=state.value)
        result = info.result
        if isinstance(result, BaseException):
            result = {"success": False, "error": str(result)}
        success = info.success
        if isinstance(result, dict):
            success = success and bool(result.get("success", True))
        return ReembedJobStatus(job_id=job_id, status=state.value, success=success, result=result)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None

    async def _enqueue(self, task: str, **kwargs: Any) -> str:
        pool = await self._get_pool()
        try:
            job = await pool.enqueue_job(task, _queue_name=self.queue_name, **kwargs)
        except (OSError, RedisError) as e:
            raise JobQueueUnavailable(f"Failed to enqueue {task}: {e}") from e
        if job is None:
            # ARQ returns None only when the job id is already taken
            raise JobQueueUnavailable(f"Failed to enqueue {task}: duplicate job id")
        logger.info("Enqueued %s job %s", task, job.job_id)
        return job.job_id

    async def _get_pool(self) -> ArqRedis:
        if self._pool is None:
            try:
                self._pool = await create_pool(
                    self.redis_settings, default_queue_name=self.queue_name
                )
            except (OSError, RedisError) as e:
                raise JobQueueUnavailable(f"Job queue unavailable: {e}") from e
        return self._pool


def create_job_queue(settings: Settings | None = None) -> ReembedJobQueue:
    """Create the job queue from settings. No connection is made until first use."""
    settings = settings or get_settings()
    return ReembedJobQueue(
        redis_settings_from_url(settings.redis_url),
        queue_name=settings.reembed_queue_name,
    )
