"""Lightweight observability helpers (logging, metrics and the observer sink)."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
import uuid
from collections import defaultdict
from contextvars import ContextVar
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Callable, Iterable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from coach_context.core.config import get_settings

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
logger = logging.getLogger(__name__)

DEFAULT_BUCKETS_MS = [50, 100, 250, 500, 1000, 2500, 5000, 10000]


def get_request_id() -> str | None:
    """Return the current request id if set by middleware."""
    return request_id_ctx.get()


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for scripts and the API process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# -------------------------------------------------------------------------
# Observation records
# -------------------------------------------------------------------------


@dataclass(frozen=True)
class SearchRecord:
    """One knowledge search, as reported to the observer sink."""

    search_method: str
    results_count: int
    response_time_ms: float
    relevance_score: float
    context_length: int
    owner_tag: str | None = None
    query_text: str = ""
    is_valid: bool = False
    cache_hit: bool = False
    embedding_tokens: int = 0
    request_id: str | None = field(default_factory=get_request_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EmbeddingRecord:
    """One upstream embedding call."""

    provider: str
    model: str
    success: bool
    duration_ms: float
    input_chars: int
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# -------------------------------------------------------------------------
# Metrics backends
# -------------------------------------------------------------------------


class MetricsBackend(Protocol):
    """Metrics backend interface."""

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        ...

    def observe_search(self, record: SearchRecord) -> None:
        ...

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        ...

    def render_prometheus(self) -> str:
        ...


class MetricsCollector:
    """In-process metrics collector with Prometheus text output."""

    def __init__(self, buckets_ms: Iterable[int] | None = None) -> None:
        self._lock = Lock()
        self._request_counts: dict[tuple[str, str, str], int] = defaultdict(int)
        self._duration_sum_ms: dict[tuple[str, str], float] = defaultdict(float)
        self._duration_count: dict[tuple[str, str], int] = defaultdict(int)
        self._duration_buckets: dict[tuple[str, str], dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._search_counts: dict[tuple[str, str], int] = defaultdict(int)
        self._search_duration_sum_ms: dict[str, float] = defaultdict(float)
        self._search_duration_count: dict[str, int] = defaultdict(int)
        self._search_duration_buckets: dict[str, dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._search_results_total: dict[str, int] = defaultdict(int)
        self._external_counts: dict[tuple[str, str, str], int] = defaultdict(int)
        self._external_duration_sum_ms: dict[tuple[str, str], float] = defaultdict(float)
        self._external_duration_count: dict[tuple[str, str], int] = defaultdict(int)
        self._external_duration_buckets: dict[tuple[str, str], dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._buckets_ms = list(buckets_ms or DEFAULT_BUCKETS_MS)

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        """Record a single request observation."""
        count_key = (method, path, str(status_code))
        duration_key = (method, path)
        bucket_key = self._bucket_for(duration_ms)

        with self._lock:
            self._request_counts[count_key] += 1
            self._duration_sum_ms[duration_key] += duration_ms
            self._duration_count[duration_key] += 1
            self._duration_buckets[duration_key][bucket_key] += 1

    def observe_search(self, record: SearchRecord) -> None:
        """Record a knowledge search observation."""
        outcome = "valid" if record.is_valid else "empty"
        bucket_key = self._bucket_for(record.response_time_ms)

        with self._lock:
            self._search_counts[(record.search_method, outcome)] += 1
            self._search_duration_sum_ms[record.search_method] += record.response_time_ms
            self._search_duration_count[record.search_method] += 1
            self._search_duration_buckets[record.search_method][bucket_key] += 1
            self._search_results_total[record.search_method] += record.results_count

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        """Record an external API call observation."""
        duration_key = (provider, operation)
        bucket_key = self._bucket_for(duration_ms)
        status = str(status_code)

        with self._lock:
            self._external_counts[(provider, operation, status)] += 1
            self._external_duration_sum_ms[duration_key] += duration_ms
            self._external_duration_count[duration_key] += 1
            self._external_duration_buckets[duration_key][bucket_key] += 1

    def render_prometheus(self) -> str:
        """Render metrics in Prometheus text format."""
        lines: list[str] = [
            "# HELP http_requests_total Total HTTP requests",
            "# TYPE http_requests_total counter",
        ]
        with self._lock:
            for (method, path, status), count in sorted(self._request_counts.items()):
                lines.append(
                    f'http_requests_total{{method="{method}",path="{path}",status="{status}"}} {count}'
                )

            lines.extend(
                [
                    "# HELP http_request_duration_ms Request duration in milliseconds",
                    "# TYPE http_request_duration_ms histogram",
                ]
            )
            for (method, path), total in sorted(self._duration_sum_ms.items()):
                labels = f'method="{method}",path="{path}"'
                lines.extend(
                    self._histogram_lines(
                        "http_request_duration_ms",
                        labels,
                        self._duration_buckets[(method, path)],
                        total,
                        self._duration_count[(method, path)],
                    )
                )

            lines.extend(
                [
                    "# HELP rag_searches_total Knowledge searches",
                    "# TYPE rag_searches_total counter",
                ]
            )
            for (method, outcome), count in sorted(self._search_counts.items()):
                lines.append(
                    f'rag_searches_total{{method="{method}",outcome="{outcome}"}} {count}'
                )

            lines.extend(
                [
                    "# HELP rag_search_duration_ms Knowledge search duration in milliseconds",
                    "# TYPE rag_search_duration_ms histogram",
                ]
            )
            for method, total in sorted(self._search_duration_sum_ms.items()):
                lines.extend(
                    self._histogram_lines(
                        "rag_search_duration_ms",
                        f'method="{method}"',
                        self._search_duration_buckets[method],
                        total,
                        self._search_duration_count[method],
                    )
                )

            lines.extend(
                [
                    "# HELP rag_search_results_total Results returned by knowledge searches",
                    "# TYPE rag_search_results_total counter",
                ]
            )
            for method, count in sorted(self._search_results_total.items()):
                lines.append(f'rag_search_results_total{{method="{method}"}} {count}')

            lines.extend(
                [
                    "# HELP external_api_requests_total External API requests",
                    "# TYPE external_api_requests_total counter",
                ]
            )
            for (provider, operation, status), count in sorted(self._external_counts.items()):
                lines.append(
                    "external_api_requests_total"
                    f'{{provider="{provider}",operation="{operation}",status="{status}"}} {count}'
                )

            lines.extend(
                [
                    "# HELP external_api_duration_ms External API duration in milliseconds",
                    "# TYPE external_api_duration_ms histogram",
                ]
            )
            for (provider, operation), total in sorted(self._external_duration_sum_ms.items()):
                lines.extend(
                    self._histogram_lines(
                        "external_api_duration_ms",
                        f'provider="{provider}",operation="{operation}"',
                        self._external_duration_buckets[(provider, operation)],
                        total,
                        self._external_duration_count[(provider, operation)],
                    )
                )
        return "\n".join(lines) + "\n"

    def _histogram_lines(
        self,
        name: str,
        labels: str,
        buckets: dict[str, int],
        total: float,
        count: int,
    ) -> list[str]:
        lines: list[str] = []
        cumulative = 0
        for bound in self._buckets_ms:
            cumulative += buckets.get(str(bound), 0)
            lines.append(f'{name}_bucket{{{labels},le="{bound}"}} {cumulative}')
        cumulative += buckets.get("+Inf", 0)
        lines.append(f'{name}_bucket{{{labels},le="+Inf"}} {cumulative}')
        lines.append(f"{name}_sum{{{labels}}} {total:.2f}")
        lines.append(f"{name}_count{{{labels}}} {count}")
        return lines

    def _bucket_for(self, duration_ms: float) -> str:
        for bound in self._buckets_ms:
            if duration_ms <= bound:
                return str(bound)
        return "+Inf"


class PrometheusMetrics:
    """Prometheus client-based metrics backend."""

    def __init__(self, buckets_ms: Iterable[int]) -> None:
        from prometheus_client import CollectorRegistry, Counter, Histogram

        self._registry = CollectorRegistry()
        self._buckets_ms = list(buckets_ms)

        self._http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "path", "status"],
            registry=self._registry,
        )
        self._http_request_duration_ms = Histogram(
            "http_request_duration_ms",
            "Request duration in milliseconds",
            ["method", "path"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )
        self._rag_searches_total = Counter(
            "rag_searches_total",
            "Knowledge searches",
            ["method", "outcome"],
            registry=self._registry,
        )
        self._rag_search_duration_ms = Histogram(
            "rag_search_duration_ms",
            "Knowledge search duration in milliseconds",
            ["method"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )
        self._rag_search_results_total = Counter(
            "rag_search_results_total",
            "Results returned by knowledge searches",
            ["method"],
            registry=self._registry,
        )
        self._external_api_requests_total = Counter(
            "external_api_requests_total",
            "External API requests",
            ["provider", "operation", "status"],
            registry=self._registry,
        )
        self._external_api_duration_ms = Histogram(
            "external_api_duration_ms",
            "External API duration in milliseconds",
            ["provider", "operation"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        self._http_requests_total.labels(method, path, str(status_code)).inc()
        self._http_request_duration_ms.labels(method, path).observe(duration_ms)

    def observe_search(self, record: SearchRecord) -> None:
        outcome = "valid" if record.is_valid else "empty"
        self._rag_searches_total.labels(record.search_method, outcome).inc()
        self._rag_search_duration_ms.labels(record.search_method).observe(
            record.response_time_ms
        )
        self._rag_search_results_total.labels(record.search_method).inc(record.results_count)

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        self._external_api_requests_total.labels(
            provider, operation, str(status_code)
        ).inc()
        self._external_api_duration_ms.labels(provider, operation).observe(duration_ms)

    def render_prometheus(self) -> str:
        from prometheus_client import generate_latest

        return generate_latest(self._registry).decode("utf-8")


_metrics_backend: MetricsBackend | None = None


def get_metrics_backend() -> MetricsBackend:
    """Return a cached metrics backend instance."""
    global _metrics_backend
    if _metrics_backend is None:
        settings = get_settings()
        _metrics_backend = _build_metrics_backend(settings.metrics_backend)
    return _metrics_backend


def _build_metrics_backend(backend: str) -> MetricsBackend:
    if backend == "prometheus":
        return PrometheusMetrics(DEFAULT_BUCKETS_MS)
    return MetricsCollector(DEFAULT_BUCKETS_MS)


# -------------------------------------------------------------------------
# Observer sink
# -------------------------------------------------------------------------


class ContextObserver(Protocol):
    """Sink every component reports through. Implementations may be async."""

    def on_search(self, record: SearchRecord) -> Any:
        ...

    def on_embedding(self, record: EmbeddingRecord) -> Any:
        ...


class NullObserver:
    """Discards all observations."""

    def on_search(self, record: SearchRecord) -> None:
        return None

    def on_embedding(self, record: EmbeddingRecord) -> None:
        return None


class InMemoryObserver:
    """Keeps observations in lists."""

    def __init__(self) -> None:
        self.searches: list[SearchRecord] = []
        self.embeddings: list[EmbeddingRecord] = []

    def on_search(self, record: SearchRecord) -> None:
        self.searches.append(record)

    def on_embedding(self, record: EmbeddingRecord) -> None:
        self.embeddings.append(record)


class LoggingObserver:
    """Writes one JSON log line per observation."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("coach_context.telemetry")

    def on_search(self, record: SearchRecord) -> None:
        self.logger.info(json.dumps({"event": "rag_search", **record.to_dict()}))

    def on_embedding(self, record: EmbeddingRecord) -> None:
        level = logging.DEBUG if record.success else logging.WARNING
        self.logger.log(level, json.dumps({"event": "embedding_call", **record.to_dict()}))


class MetricsObserver:
    """Feeds observations into a metrics backend."""

    def __init__(self, metrics: MetricsBackend | None = None) -> None:
        self.metrics = metrics or get_metrics_backend()

    def on_search(self, record: SearchRecord) -> None:
        self.metrics.observe_search(record)

    def on_embedding(self, record: EmbeddingRecord) -> None:
        self.metrics.observe_external_api(
            record.provider,
            "embeddings",
            200 if record.success else 500,
            record.duration_ms,
        )


class SQLSearchMetricsObserver:
    """Persists search observations to the ``rag_search_metrics`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def on_search(self, record: SearchRecord) -> None:
        from coach_context.models.metrics import RAGSearchMetric

        async with self._session_factory() as session:
            session.add(
                RAGSearchMetric(
                    owner_tag=record.owner_tag,
                    query_text=record.query_text[:100],
                    search_method=record.search_method,
                    results_count=record.results_count,
                    response_time_ms=record.response_time_ms,
                    relevance_score=record.relevance_score,
                    context_length=record.context_length,
                    cache_hit=record.cache_hit,
                    embedding_tokens=record.embedding_tokens,
                )
            )
            await session.commit()

    def on_embedding(self, record: EmbeddingRecord) -> None:
        return None


class CompositeObserver:
    """Fans observations out to several observers."""

    def __init__(self, observers: Iterable[ContextObserver]) -> None:
        self.observers = list(observers)

    def on_search(self, record: SearchRecord) -> None:
        for observer in self.observers:
            notify(observer.on_search, record)

    def on_embedding(self, record: EmbeddingRecord) -> None:
        for observer in self.observers:
            notify(observer.on_embedding, record)


# Strong references to in-flight fire-and-forget tasks
_background_tasks: set[asyncio.Task[Any]] = set()


def notify(callback: Callable[[Any], Any], record: Any) -> None:
    """Deliver a record to an observer callback without ever raising.

    Coroutine results are scheduled on the running loop and not awaited.
    """
    try:
        result = callback(record)
    except Exception as exc:
        logger.warning("Observer %r failed: %s", callback, exc)
        return

    if inspect.isawaitable(result):
        try:
            loop = asyncio.get_running_loop()
            task = asyncio.ensure_future(result, loop=loop)
        except RuntimeError as exc:
            # No running loop; drop the observation
            logger.debug("Observer %r skipped: %s", callback, exc)
            if inspect.iscoroutine(result):
                result.close()
            return
        _background_tasks.add(task)
        task.add_done_callback(_on_background_done)


def _on_background_done(task: asyncio.Task[Any]) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Background observer failed: %s", exc)


async def drain_observers() -> None:
    """Wait for in-flight observer tasks (used on shutdown and in tests)."""
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


def build_default_observer(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    metrics: MetricsBackend | None = None,
) -> ContextObserver:
    """Logging + metrics, plus SQL persistence when enabled in settings."""
    settings = get_settings()
    observers: list[ContextObserver] = [LoggingObserver(), MetricsObserver(metrics)]
    if settings.persist_search_metrics and session_factory is not None:
        observers.append(SQLSearchMetricsObserver(session_factory))
    return CompositeObserver(observers)


# -------------------------------------------------------------------------
# HTTP middleware
# -------------------------------------------------------------------------


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Attach request_id, log request/response, and emit metrics."""

    def __init__(
        self,
        app: ASGIApp,
        metrics: MetricsBackend | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(app)
        self.metrics = metrics or get_metrics_backend()
        self.logger = logger or logging.getLogger("coach_context.request")

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(request_id)
        request.state.request_id = request_id

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            status_code = response.status_code if response else 500

            if response is not None:
                response.headers["X-Request-ID"] = request_id

            route = request.scope.get("route")
            route_path = getattr(route, "path", None)
            # Normalize unmatched paths to avoid label cardinality explosion
            path = route_path or "/__unknown__"

            if self.metrics:
                self.metrics.observe_request(
                    request.method,
                    path,
                    status_code,
                    duration_ms,
                )

            log_payload = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route_path,
                "status_code": status_code,
                "elapsed_ms": round(duration_ms, 2),
                "client": request.client.host if request.client else None,
            }
            self.logger.info(json.dumps(log_payload))
            request_id_ctx.reset(token)
