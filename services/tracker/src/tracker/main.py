from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager

import httpx
from common.utils import now_utc_iso, parse_iso_datetime
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from tracker.errors import ParseError, PostingNotFound
from tracker.fetcher import DomainRateLimiter, Fetcher
from tracker.ingestion import CorpusEngine
from tracker.metrics import MetricsSnapshot, MetricsStore
from tracker.models import Company, CycleBatchResponse, CycleHistoryItem, CycleResult, JobPosting
from tracker.registry import SourceRegistry
from tracker.repository import CorpusRepository
from tracker.scheduler import InFlightRegistry, IngestionScheduler
from tracker.settings import TrackerSettings

LOGGER = logging.getLogger("jobcorpus.tracker")
UNMATCHED_ROUTE = "<unmatched>"


def route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


def record_request(
    request: Request,
    status_code: int,
    started: float,
    failure: Exception | None = None,
) -> None:
    duration_ms = (time.perf_counter() - started) * 1000
    route = route_template(request)
    request.app.state.metrics.observe(
        method=request.method,
        route=route,
        status_code=status_code,
        duration_ms=duration_ms,
    )
    entry = {
        "event": "request_complete",
        "request_id": request.state.request_id,
        "method": request.method,
        "route": route,
        "path": request.url.path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 3),
    }
    if failure is None:
        LOGGER.info(json.dumps(entry))
        return
    entry["error"] = str(failure)
    LOGGER.error(json.dumps(entry), exc_info=failure)


def create_app(
    settings: TrackerSettings | None = None,
    *,
    sources: SourceRegistry | None = None,
    http_client: httpx.Client | None = None,
) -> FastAPI:
    resolved_settings = settings or TrackerSettings.from_env()
    repository = CorpusRepository(database_path=resolved_settings.database_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        registry = sources
        if registry is None:
            registry = (
                SourceRegistry.from_file(resolved_settings.sources_path)
                if resolved_settings.sources_path
                else SourceRegistry()
            )
        await run_in_threadpool(registry.sync, repository)

        metrics = MetricsStore()
        fetcher = Fetcher(
            resolved_settings,
            DomainRateLimiter(resolved_settings.per_domain_interval_s),
            client=http_client,
        )
        engine = CorpusEngine(
            repository,
            registry,
            fetcher,
            InFlightRegistry(),
            metrics,
            resolved_settings,
        )
        scheduler = IngestionScheduler(engine, resolved_settings.worker_count)

        app.state.settings = resolved_settings
        app.state.repository = repository
        app.state.metrics = metrics
        app.state.engine = engine
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            scheduler.shutdown()
            fetcher.close()
            await run_in_threadpool(repository.close)

    app = FastAPI(title="Job Corpus Tracker", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()
        failure: Exception | None = None
        try:
            response = await call_next(request)
        except Exception as exc:
            failure = exc
            response = JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
            )
        response.headers["x-request-id"] = request_id
        record_request(request, response.status_code, started, failure)
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "tracker"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.get("/companies", response_model=list[Company])
    async def list_companies(
        request: Request,
        enabled_only: bool = Query(default=False),
    ) -> list[Company]:
        return await run_in_threadpool(request.app.state.repository.list_companies, enabled_only)

    @app.get("/companies/{company_id}", response_model=Company)
    async def get_company(company_id: str, request: Request) -> Company:
        company = await run_in_threadpool(request.app.state.repository.get_company, company_id)
        if company is None:
            raise HTTPException(status_code=404, detail="Unknown company_id")
        return company

    @app.post("/companies/{company_id}/cycles", response_model=CycleResult)
    async def run_company_cycle(company_id: str, request: Request) -> CycleResult:
        try:
            result = await run_in_threadpool(
                request.app.state.engine.run_ingestion_cycle,
                company_id,
            )
        except KeyError:
            raise HTTPException(status_code=404, detail="Unknown company_id") from None
        if result.status == "error":
            raise HTTPException(
                status_code=502,
                detail={
                    "company_id": result.company_id,
                    "error": result.error,
                    "error_type": result.error_type,
                },
            )
        return result

    @app.post("/cycles", response_model=CycleBatchResponse)
    async def run_all_cycles(request: Request) -> CycleBatchResponse:
        started_at = now_utc_iso()
        results: list[CycleResult] = await run_in_threadpool(
            request.app.state.scheduler.run_all
        )
        return CycleBatchResponse(
            started_at=started_at,
            requested=len(results),
            successful=sum(1 for result in results if result.status == "ok"),
            failed=sum(1 for result in results if result.status == "error"),
            skipped=sum(1 for result in results if result.status == "skipped"),
            results=results,
        )

    @app.get("/companies/{company_id}/cycles", response_model=list[CycleHistoryItem])
    async def company_cycle_history(
        company_id: str,
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> list[CycleHistoryItem]:
        company = await run_in_threadpool(request.app.state.repository.get_company, company_id)
        if company is None:
            raise HTTPException(status_code=404, detail="Unknown company_id")
        return await run_in_threadpool(
            request.app.state.repository.list_cycles,
            company_id=company_id,
            limit=limit,
        )

    @app.get("/postings", response_model=list[JobPosting])
    async def search_postings(
        request: Request,
        company_id: str | None = None,
        q: str | None = None,
        active: bool | None = None,
        since: str | None = None,
        limit: int | None = Query(default=None, ge=1, le=500),
    ) -> list[JobPosting]:
        if since and parse_iso_datetime(since) is None:
            raise HTTPException(status_code=422, detail="Invalid since timestamp")
        try:
            return await run_in_threadpool(
                request.app.state.engine.search,
                company_id=company_id,
                query=q,
                active=active,
                since=since,
                limit=limit,
            )
        except ParseError as exc:
            raise HTTPException(
                status_code=400,
                detail={"message": exc.message, "position": exc.position},
            ) from exc

    @app.get("/postings/{posting_id}", response_model=JobPosting)
    async def get_posting(posting_id: int, request: Request) -> JobPosting:
        try:
            return await run_in_threadpool(
                request.app.state.engine.get_posting_by_id,
                posting_id,
            )
        except PostingNotFound:
            raise HTTPException(status_code=404, detail="Unknown posting_id") from None

    return app


app = create_app()
