from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration

from .cache import close_cache, init_cache
from .db.core import init_db
from .errors import IndexBuildError, IndexUnavailable, ReviewNotFound, StorageUnavailable
from .health import HealthChecker
from .index import FaissVenueIndex, set_index
from .logging_config import configure_structlog, get_logger
from .metrics import PrometheusMiddleware, get_metrics
from .openai_async import close_async_client
from .pipeline.extraction import ReviewExtractor
from .pipeline.worker import PipelineMonitor, WorkerPool
from .schemas import ReviewSubmittedResponse, SearchRequest, SearchResponse
from .service import SearchService, build_search_service, default_completion
from .settings import settings
from .storage import SqlVenueStore, get_store
from .utils import add_request_id_tracing

# Configure structured logging (must be done before any logging calls)
configure_structlog()

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=settings.SENTRY_RELEASE or "vicinity@dev",
        integrations=[FastApiIntegration()],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )

logger = get_logger(__name__)


async def _build_index(store) -> None:
    try:
        index = await FaissVenueIndex.from_store(store)
    except (IndexBuildError, StorageUnavailable) as exc:
        # Searches answer 503 until an index is available
        logger.error("index_build_failed", error=str(exc))
        return
    set_index(index)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_cache()
    store = get_store()
    if isinstance(store, SqlVenueStore):
        await init_db()
    await _build_index(store)

    service = build_search_service(store)
    monitor = PipelineMonitor()
    app.state.service = service
    app.state.health = HealthChecker(service.queue, monitor)

    stop = asyncio.Event()
    worker_task: asyncio.Task | None = None
    completion = default_completion()
    if settings.RUN_WORKERS_IN_APP and completion is not None:
        pool = WorkerPool(service.queue, ReviewExtractor(completion, store), monitor=monitor)
        worker_task = asyncio.create_task(pool.run(stop))
    elif settings.RUN_WORKERS_IN_APP:
        logger.warning("extraction_workers_disabled", reason="no completion provider configured")

    logger.info("startup_complete")
    try:
        yield
    finally:
        stop.set()
        if worker_task is not None:
            worker_task.cancel()
            await asyncio.gather(worker_task, return_exceptions=True)
        await close_async_client()
        await close_cache()


app = FastAPI(
    title="Vicinity Search API",
    version="0.1.0",
    description="Venue retrieval and ranking for natural-language queries",
    lifespan=lifespan,
)
add_request_id_tracing(app)
app.add_middleware(PrometheusMiddleware)

v1_router = APIRouter(prefix="/v1", tags=["v1"])


def _service(request: Request) -> SearchService:
    return request.app.state.service


@app.exception_handler(IndexUnavailable)
@app.exception_handler(StorageUnavailable)
async def infrastructure_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("infrastructure_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"detail": "Search is temporarily unavailable", "retryable": True},
    )


@v1_router.post("/search", response_model=SearchResponse)
async def search(payload: SearchRequest, request: Request) -> SearchResponse:
    return await _service(request).search(
        payload.query, payload.location, payload.filters, payload.limit
    )


@v1_router.post(
    "/reviews/{review_id}/submitted",
    response_model=ReviewSubmittedResponse,
    status_code=202,
)
async def review_submitted(review_id: str, request: Request) -> ReviewSubmittedResponse:
    try:
        return await _service(request).on_review_submitted(review_id)
    except ReviewNotFound as exc:
        raise HTTPException(404, str(exc)) from exc


app.include_router(v1_router)


@app.get("/health")
async def health(request: Request) -> JSONResponse:
    """Return service health including index, redis, upstream circuits and pipeline liveness."""
    checker: HealthChecker = request.app.state.health
    health_status = await checker.check_all()
    status_code = 200 if health_status["status"] == "healthy" else 503
    body: dict[str, Any] = {
        "status": health_status["status"],
        "timestamp": health_status["timestamp"],
        "checks": health_status["checks"],
        "service": "vicinity",
        "version": "0.1.0",
    }
    return JSONResponse(content=body, status_code=status_code)


@app.get("/metrics")
def metrics():
    """Expose Prometheus metrics."""
    return get_metrics()
