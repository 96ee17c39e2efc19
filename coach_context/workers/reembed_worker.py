"""ARQ worker for corpus-wide knowledge re-embedding.

This module defines the ARQ worker configuration and the tasks that rebuild
knowledge chunks outside the request cycle.

Usage:
    # Start the worker
    arq coach_context.workers.reembed_worker.WorkerSettings

    # Or with environment-specific settings
    REDIS_URL=redis://localhost:6379/0 arq coach_context.workers.reembed_worker.WorkerSettings
"""

import logging
from typing import Any

from coach_context.core.config import get_settings
from coach_context.core.database import create_engine, create_session_factory, init_models
from coach_context.core.exceptions import StoreWriteFailed
from coach_context.knowledge.models import ReembedSummary
from coach_context.knowledge.reembed import ALL_DOCUMENTS
from coach_context.observability import configure_logging, drain_observers
from coach_context.services.context_services import ContextServices, build_services
from coach_context.services.job_queue import redis_settings_from_url

settings = get_settings()
logger = logging.getLogger(__name__)


def _report(target: str, summary: ReembedSummary) -> dict[str, Any]:
    return {
        "success": summary.failed == 0,
        "target": target,
        "percentage": summary.percentage,
        "summary": summary.model_dump(mode="json"),
    }


async def reembed_knowledge(ctx: dict, target: str = ALL_DOCUMENTS) -> dict[str, Any]:
    """Re-chunk and re-embed one document or the whole corpus.

    Args:
        ctx: ARQ context (holds the services built at startup).
        target: Document id or "all".

    Returns:
        Result dictionary with the run summary.
    """
    services: ContextServices = ctx["services"]
    logger.info("Re-embedding job started (target=%s)", target)

    try:
        summary = await services.reembedder.reembed(target)
    except LookupError as e:
        logger.warning("Re-embedding target not found: %s", target)
        return {"success": False, "target": target, "error": str(e)}
    except StoreWriteFailed as e:
        logger.error("Re-embedding finished with store failures: %s", e)
        result = {"success": False, "target": target, "error": str(e)}
        if e.summary is not None:
            result.update(percentage=e.summary.percentage, summary=e.summary.model_dump(mode="json"))
        return result

    logger.info(
        "Re-embedding job complete: processed=%d, failed=%d, total=%d",
        summary.processed,
        summary.failed,
        summary.total,
    )
    return _report(target, summary)


async def backfill_knowledge(ctx: dict) -> dict[str, Any]:
    """Embed only documents that currently have no chunks."""
    services: ContextServices = ctx["services"]
    logger.info("Backfill job started")

    try:
        summary = await services.reembedder.backfill_missing()
    except StoreWriteFailed as e:
        logger.error("Backfill finished with store failures: %s", e)
        result = {"success": False, "target": "missing", "error": str(e)}
        if e.summary is not None:
            result.update(percentage=e.summary.percentage, summary=e.summary.model_dump(mode="json"))
        return result

    logger.info("Backfill job complete: processed=%d, total=%d", summary.processed, summary.total)
    return _report("missing", summary)


async def startup(ctx: dict) -> None:
    """Worker startup hook."""
    configure_logging(settings.log_level)
    engine = create_engine()
    await init_models(engine)
    ctx["engine"] = engine
    ctx["services"] = build_services(create_session_factory(engine), settings)
    logger.info("Re-embedding worker starting up")


async def shutdown(ctx: dict) -> None:
    """Worker shutdown hook."""
    logger.info("Re-embedding worker shutting down")
    await drain_observers()
    engine = ctx.get("engine")
    if engine is not None:
        await engine.dispose()


class WorkerSettings:
    """ARQ worker configuration."""

    # Redis connection
    redis_settings = redis_settings_from_url(settings.redis_url)

    # Task functions
    functions = [
        reembed_knowledge,
        backfill_knowledge,
    ]

    # Worker settings
    on_startup = startup
    on_shutdown = shutdown

    # Job settings (one corpus run at a time)
    max_jobs = 1
    job_timeout = settings.reembed_job_timeout_seconds
    keep_result = settings.reembed_job_keep_result_seconds
    queue_name = settings.reembed_queue_name
