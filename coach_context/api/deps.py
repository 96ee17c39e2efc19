"""FastAPI dependencies for the context engine components."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from coach_context.services.context_services import ContextServices
from coach_context.services.job_queue import ReembedJobQueue


def get_services(request: Request) -> ContextServices:
    """Return the component graph built at startup.

    Raises:
        HTTPException: 503 if startup has not completed.
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Context services are not initialized",
        )
    return services


Services = Annotated[ContextServices, Depends(get_services)]


def get_job_queue(request: Request) -> ReembedJobQueue:
    """Return the background job queue.

    Raises:
        HTTPException: 503 if no queue is configured.
    """
    job_queue = getattr(request.app.state, "job_queue", None)
    if job_queue is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue is not configured",
        )
    return job_queue


JobQueue = Annotated[ReembedJobQueue, Depends(get_job_queue)]
