from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import structlog
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from rama_api import __version__, metrics
from rama_api.browser_pool import BrowserPool
from rama_api.cache import ResultCache
from rama_api.config import Settings, get_settings
from rama_api.exceptions import InvalidRadicado
from rama_api.jobs import JobState, JobStore
from rama_api.logging_config import configure_logging
from rama_api.models import (
    ErrorResponse,
    HealthResponse,
    JobFailedResponse,
    JobPendingResponse,
    JobSubmitResponse,
    merge_result,
)
from rama_api.scheduler import Executor, Scheduler
from rama_api.scraper import RamaJudicialScraper, normalize_radicado


logger = structlog.get_logger(__name__)


@dataclass
class Engine:
    settings: Settings
    pool: BrowserPool
    store: JobStore
    cache: ResultCache
    scheduler: Scheduler


def build_engine(
    settings: Settings,
    *,
    executor: Optional[Executor] = None,
    pool: Optional[BrowserPool] = None,
) -> Engine:
    pool = pool or BrowserPool(headless=settings.browser_headless)
    if executor is None:
        executor = RamaJudicialScraper(
            pool,
            consulta_url=settings.consulta_url,
            navigation_timeout_ms=settings.navigation_timeout_ms,
            result_wait_timeout_ms=settings.result_wait_timeout_ms,
            tab_wait_timeout_ms=settings.tab_wait_timeout_ms,
        )
    store = JobStore(ttl_seconds=settings.job_ttl_seconds)
    cache = ResultCache(ttl_seconds=settings.cache_ttl_seconds)
    scheduler = Scheduler(
        executor,
        store,
        max_concurrency=settings.max_concurrency,
        execution_timeout=settings.execution_timeout_seconds,
        cache=cache if settings.cache_enabled else None,
    )
    return Engine(settings=settings, pool=pool, store=store, cache=cache, scheduler=scheduler)


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


# -----------------------
# App factory
# -----------------------

def create_app(
    settings: Optional[Settings] = None,
    *,
    executor: Optional[Executor] = None,
    pool: Optional[BrowserPool] = None,
) -> FastAPI:
    settings = settings or get_settings()
    engine = build_engine(settings, executor=executor, pool=pool)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        sweeper = asyncio.create_task(engine.scheduler.run_sweeper(settings.sweep_interval_seconds))
        logger.info(
            "api_ready",
            max_concurrency=settings.max_concurrency,
            job_ttl_seconds=settings.job_ttl_seconds,
        )
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await engine.scheduler.aclose()
            await engine.pool.shutdown()

    app = FastAPI(title="API Rama Judicial Colombia", version=__version__, lifespan=lifespan)
    app.state.engine = engine
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    @app.get("/")
    def home() -> Dict[str, Any]:
        return {
            "message": "API Rama Judicial Colombia",
            "version": __version__,
            "endpoints": {
                "/health": "Estado de la API",
                "/buscar?numero_radicacion=XXXXX": "Iniciar búsqueda (devuelve jobId)",
                "/resultado/:jobId": "Consultar resultado de búsqueda",
                "/metrics": "Métricas Prometheus",
            },
        }

    @app.get("/health", response_model=HealthResponse)
    async def health(engine: Engine = Depends(get_engine)) -> HealthResponse:
        stats = engine.scheduler.stats()
        return HealthResponse(
            active_jobs=stats["active"],
            queued_jobs=stats["queued"],
            tracked_jobs=len(engine.store),
            max_concurrency=stats["max_concurrency"],
            cached_results=len(engine.cache),
            browser=engine.pool.state,
            jobs_by_state=engine.store.count_by_state(),
        )

    @app.get("/metrics")
    def prometheus_metrics():
        return metrics.metrics_response()

    @app.get(
        "/buscar",
        response_model=JobSubmitResponse,
        responses={400: {"model": ErrorResponse}},
    )
    async def buscar(
        numero_radicacion: Optional[str] = Query(None),
        engine: Engine = Depends(get_engine),
    ) -> Union[JobSubmitResponse, JSONResponse]:
        """
        Start a lookup and return a job id immediately. The scrape runs in the
        background; poll /resultado/{jobId} for the outcome.
        """
        try:
            radicado = normalize_radicado(numero_radicacion)
        except InvalidRadicado as exc:
            return JSONResponse(status_code=400, content=ErrorResponse(error=exc.message).model_dump())

        if engine.settings.cache_enabled:
            cached = engine.cache.lookup(radicado)
            if cached is not None:
                metrics.cache_hits_total.inc()
                logger.info("cache_hit", radicado=radicado)
                return JSONResponse(
                    content=merge_result(
                        {
                            "success": True,
                            "status": JobState.COMPLETED.value,
                            "cached": True,
                            "numero_radicacion": radicado,
                        },
                        cached,
                    )
                )

        job_id = engine.scheduler.submit(radicado)
        return JobSubmitResponse(
            job_id=job_id,
            numero_radicacion=radicado,
            poll_url=f"/resultado/{job_id}",
        )

    @app.get(
        "/resultado/{job_id}",
        responses={
            200: {"model": JobPendingResponse},
            404: {"model": ErrorResponse},
            500: {"model": JobFailedResponse},
        },
    )
    async def resultado(job_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
        job = engine.store.get(job_id)
        if job is None:
            return JSONResponse(
                status_code=404,
                content=ErrorResponse(error="Job no encontrado o expirado").model_dump(),
            )

        if job.state is JobState.QUEUED:
            body = JobPendingResponse(
                job_id=job.job_id,
                status="queued",
                numero_radicacion=job.request_key,
                message="La búsqueda está en cola. Consulte nuevamente en unos segundos.",
                queue_position=engine.scheduler.queue_position(job.job_id),
            )
            return JSONResponse(content=body.model_dump(by_alias=True))

        if job.state is JobState.PROCESSING:
            body = JobPendingResponse(
                job_id=job.job_id,
                status="processing",
                numero_radicacion=job.request_key,
                message="La búsqueda está en proceso. Consulte nuevamente en unos segundos.",
            )
            return JSONResponse(content=body.model_dump(by_alias=True, exclude_none=True))

        if job.state is JobState.COMPLETED:
            return JSONResponse(
                content=merge_result(
                    {"success": True, "jobId": job.job_id, "status": job.state.value},
                    job.result or {},
                )
            )

        failed = JobFailedResponse(
            job_id=job.job_id,
            error=job.error.message if job.error else "Error desconocido",
            error_kind=job.error.kind.value if job.error else "internal_error",
        )
        return JSONResponse(status_code=500, content=failed.model_dump(by_alias=True))


app = create_app()
