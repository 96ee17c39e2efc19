"""Knowledge search and re-embedding endpoints.

Paths:
  POST /api/v1/knowledge/search         - hybrid/semantic/keyword search
  POST /api/v1/knowledge/reembed        - rebuild one document inline, or queue "all"
  POST /api/v1/knowledge/backfill       - queue embedding of documents without chunks
  GET  /api/v1/knowledge/jobs/{job_id}  - state of a queued re-embedding job
  GET  /api/v1/knowledge/missing        - documents without chunks
"""

import logging
from typing import Awaitable

from fastapi import APIRouter, HTTPException, Response, status
from pydantic import BaseModel, Field

from coach_context.api.deps import JobQueue, Services
from coach_context.core.exceptions import JobQueueUnavailable, StoreWriteFailed
from coach_context.knowledge.models import RAGResponse, ReembedSummary, SearchMethod
from coach_context.knowledge.reembed import ALL_DOCUMENTS
from coach_context.services.job_queue import ReembedJobStatus

router = APIRouter()
logger = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Request / Response Models
# -------------------------------------------------------------------------


class KnowledgeSearchRequest(BaseModel):
    """Knowledge search request."""

    query: str = Field(..., min_length=1, max_length=2000)
    owner_tag: str | None = None
    method: SearchMethod | None = None  # None = configured default
    max_results: int | None = Field(default=None, ge=1, le=50)
    context_char_budget: int | None = Field(default=None, ge=0, le=50000)


class ReembedRequest(BaseModel):
    """Re-embedding trigger."""

    target: str = Field(default=ALL_DOCUMENTS, description="Document id or 'all'")


class ReembedResponse(BaseModel):
    """Partial-success report of a re-embedding run."""

    summary: ReembedSummary
    percentage: int


class ReembedJobResponse(BaseModel):
    """Handle for a re-embedding run queued on the background worker."""

    job_id: str
    target: str
    status: str = "queued"


class MissingEmbeddingsResponse(BaseModel):
    """Documents with zero chunks."""

    document_ids: list[str]
    count: int


# -------------------------------------------------------------------------
# Endpoints
# -------------------------------------------------------------------------


@router.post("/search", response_model=RAGResponse)
async def search_knowledge(
    request: KnowledgeSearchRequest,
    services: Services,
) -> RAGResponse:
    """Search the knowledge corpus.

    A response with ``is_valid=false`` means nothing relevant was found.
    """
    settings = services.settings
    return await services.retriever.search(
        request.query,
        owner_tag=request.owner_tag,
        method=request.method or settings.rag_default_method,
        max_results=request.max_results or settings.rag_max_results,
        context_char_budget=(
            request.context_char_budget
            if request.context_char_budget is not None
            else settings.rag_context_char_budget
        ),
    )


@router.post(
    "/reembed",
    response_model=ReembedResponse | ReembedJobResponse,
    responses={status.HTTP_202_ACCEPTED: {"model": ReembedJobResponse}},
)
async def reembed_documents(
    request: ReembedRequest,
    response: Response,
    services: Services,
    job_queue: JobQueue,
) -> ReembedResponse | ReembedJobResponse:
    """Re-chunk and re-embed one document or the whole corpus.

    A single document is rebuilt inline. The whole corpus ("all") is handed
    to the background worker and answered with 202 and a job id.

    Raises:
        HTTPException: 404 for an unknown document, 500 if chunks could not
            be stored (the summary is included), 503 if the job queue is down.
    """
    if request.target == ALL_DOCUMENTS:
        job_id = await _enqueue(job_queue.enqueue_reembed(ALL_DOCUMENTS))
        response.status_code = status.HTTP_202_ACCEPTED
        return ReembedJobResponse(job_id=job_id, target=ALL_DOCUMENTS)

    try:
        summary = await services.reembedder.reembed(request.target)
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except StoreWriteFailed as e:
        raise _store_failure(e) from e
    return ReembedResponse(summary=summary, percentage=summary.percentage)


@router.post("/backfill", response_model=ReembedJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def backfill_missing(job_queue: JobQueue) -> ReembedJobResponse:
    """Queue embedding of documents that currently have no chunks."""
    job_id = await _enqueue(job_queue.enqueue_backfill())
    return ReembedJobResponse(job_id=job_id, target="missing")


@router.get("/jobs/{job_id}", response_model=ReembedJobStatus)
async def reembed_job_status(job_id: str, job_queue: JobQueue) -> ReembedJobStatus:
    """Report the state of a queued job, with its summary once complete."""
    try:
        job_status = await job_queue.job_status(job_id)
    except JobQueueUnavailable as e:
        raise _queue_unavailable(e) from e
    if job_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return job_status


@router.get("/missing", response_model=MissingEmbeddingsResponse)
async def missing_embeddings(services: Services) -> MissingEmbeddingsResponse:
    """List documents without any chunks."""
    document_ids = await services.store.all_missing_embeddings()
    return MissingEmbeddingsResponse(document_ids=document_ids, count=len(document_ids))


async def _enqueue(enqueue: Awaitable[str]) -> str:
    try:
        return await enqueue
    except JobQueueUnavailable as e:
        raise _queue_unavailable(e) from e


def _queue_unavailable(error: JobQueueUnavailable) -> HTTPException:
    logger.error("Job queue unavailable: %s", error)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error))


def _store_failure(error: StoreWriteFailed) -> HTTPException:
    logger.error("Re-embedding finished with store failures: %s", error)
    detail: dict = {"message": str(error)}
    if error.summary is not None:
        detail["summary"] = error.summary.model_dump(mode="json")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)
