"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from coach_context.api.v1.router import api_router
from coach_context.core.config import get_settings
from coach_context.core.database import get_engine, get_session_factory, init_models
from coach_context.observability import (
    MetricsBackend,
    RequestLoggingMiddleware,
    configure_logging,
    drain_observers,
    get_metrics_backend,
)
from coach_context.services.context_services import ContextServices, build_services
from coach_context.services.job_queue import ReembedJobQueue, create_job_queue

settings = get_settings()


def create_app(
    services: ContextServices | None = None,
    metrics_backend: MetricsBackend | None = None,
    job_queue: ReembedJobQueue | None = None,
) -> FastAPI:
    """Create the API application.

    Args:
        services: Prebuilt components (tests). Built from settings at
            startup when omitted.
        metrics_backend: Metrics backend shared by middleware and observers.
        job_queue: Queue for corpus-wide re-embedding jobs. Built from
            settings when omitted.
    """
    metrics_backend = metrics_backend or get_metrics_backend()
    job_queue = job_queue or create_job_queue(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan events."""
        # Startup
        if getattr(app.state, "services", None) is None:
            await init_models(get_engine())
            app.state.services = build_services(get_session_factory(), metrics=metrics_backend)
        yield
        # Shutdown
        await drain_observers()
        await app.state.job_queue.close()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.job_queue = job_queue

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",  # Vite dev server
            "http://localhost:3000",  # Alternative dev port
            "http://127.0.0.1:5173",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware, metrics=metrics_backend)

    # Include API router
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> PlainTextResponse:
        """Prometheus-style metrics endpoint."""
        return PlainTextResponse(metrics_backend.render_prometheus())

    return app


configure_logging(settings.log_level)
app = create_app()
