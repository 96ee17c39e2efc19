"""Service layer for the context engine.

Services wire the knowledge, conversation and context components together.
"""

from coach_context.services.context_services import ContextServices, build_services
from coach_context.services.job_queue import (
    ReembedJobQueue,
    ReembedJobStatus,
    create_job_queue,
)

__all__ = [
    "ContextServices",
    "ReembedJobQueue",
    "ReembedJobStatus",
    "build_services",
    "create_job_queue",
]
