from __future__ import annotations

import asyncio
import inspect
import logging
import time
from contextlib import asynccontextmanager, suppress
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from portledger.config import settings
from portledger.core.agent_channel import AgentChannel
from portledger.core.cancellation import CancellationController
from portledger.core.errors import InvalidRequest, TargetNotFound
from portledger.core.guard import ConcurrencyGuard
from portledger.core.heartbeat import check_agent_health
from portledger.core.job_store import JobStore
from portledger.core.observability import configure_logging, log_event, metrics, render_prometheus_metrics
from portledger.core.progress import ProgressPublisher, encode_sse
from portledger.core.reconciler import StalenessReconciler
from portledger.core.scan_settings import load_scan_settings
from portledger.core.scheduler import PeriodicSweeper, Scheduler
from portledger.db.models import DownPortRead, ScanSettingsRead
from portledger.db.session import init_db

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

startup_hooks: list[Callable[[], Awaitable[None] | None]] = []
shutdown_hooks: list[Callable[[], Awaitable[None] | None]] = []
sweep_task: Optional[asyncio.Task] = None

job_store = JobStore()
guard = ConcurrencyGuard(job_store.session_factory)
scheduler = Scheduler(guard=guard, session_factory=job_store.session_factory)
cancellation = CancellationController(job_store)
publisher = ProgressPublisher(job_store)
reconciler = StalenessReconciler(job_store.session_factory)
agent_channel = AgentChannel(job_store, reconciler)
sweeper = PeriodicSweeper(scheduler, job_store.session_factory)


def register_startup_hook(fn: Callable[[], Awaitable[None] | None]) -> Callable[[], Awaitable[None] | None]:
    startup_hooks.append(fn)
    return fn


def register_shutdown_hook(fn: Callable[[], Awaitable[None] | None]) -> Callable[[], Awaitable[None] | None]:
    shutdown_hooks.append(fn)
    return fn


async def _run_hooks(hooks: list[Callable[[], Awaitable[None] | None]]) -> None:
    for hook in hooks:
        result = hook()
        if isinstance(result, asyncio.Task):
            continue
        if inspect.isawaitable(result):
            await result


@asynccontextmanager
async def lifespan(_: FastAPI):
    await _run_hooks(startup_hooks)
    try:
        yield
    finally:
        await _run_hooks(list(reversed(shutdown_hooks)))


app = FastAPI(title="Portledger Scan Orchestrator", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_observability(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
    request.state.request_id = request_id
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (time.perf_counter() - started) * 1000
        metrics.record_api_request(500, duration_ms)
        log_event(
            logger,
            "http_request",
            method=request.method,
            path=request.url.path,
            status=500,
            duration_ms=round(duration_ms, 2),
            request_id=request_id,
        )
        raise
    duration_ms = (time.perf_counter() - started) * 1000
    metrics.record_api_request(response.status_code, duration_ms)
    log_event(
        logger,
        "http_request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round(duration_ms, 2),
        request_id=request_id,
    )
    response.headers["X-Request-ID"] = request_id
    return response


@register_startup_hook
def on_startup() -> None:
    init_db()


@register_startup_hook
def start_sweep_loop() -> None:
    global sweep_task
    if not settings.sweep_timer_enabled:
        logger.info("Periodic sweep timer disabled via configuration")
        return
    if sweep_task and not sweep_task.done():
        return
    sweep_task = asyncio.get_running_loop().create_task(sweeper.run_forever())


@register_shutdown_hook
async def _stop_sweep_loop() -> None:
    global sweep_task
    if sweep_task is None:
        return
    sweep_task.cancel()
    with suppress(asyncio.CancelledError):
        await sweep_task
    sweep_task = None


class ScanRequest(BaseModel):
    server_id: int


class ScanCreateResponse(BaseModel):
    job_id: int
    already_running: bool
    message: str


class CancelRequest(BaseModel):
    job_id: int


class CancelResponse(BaseModel):
    message: str
    status: str


class SweepResponse(BaseModel):
    queued: int


class PortCleanupRequest(BaseModel):
    ids: List[int] = Field(default_factory=list)


class PortCleanupResponse(BaseModel):
    deleted: int


class ProgressReport(BaseModel):
    completed_units: int = Field(ge=0)
    found_units: int = Field(default=0, ge=0)


class CompletionReport(BaseModel):
    open_ports: List[int] = Field(default_factory=list)


class FailureReport(BaseModel):
    error: str = Field(min_length=1, max_length=2000)


class AgentWriteResponse(BaseModel):
    job_id: int
    accepted: bool
    status: str


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics")
def read_metrics() -> Dict[str, Any]:
    return metrics.snapshot(job_counts=job_store.status_counts())


@app.get("/metrics/prometheus", response_class=PlainTextResponse)
def read_prometheus_metrics() -> PlainTextResponse:
    snapshot = metrics.snapshot(job_counts=job_store.status_counts())
    return PlainTextResponse(render_prometheus_metrics(snapshot), media_type="text/plain; version=0.0.4")


@app.post("/scan", response_model=ScanCreateResponse)
def create_scan_job(payload: ScanRequest) -> ScanCreateResponse:
    try:
        admission = scheduler.request_scan(payload.server_id)
    except InvalidRequest as exc:
        raise _bad_request(exc) from exc
    except TargetNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    message = "Scan already in progress" if admission.already_running else "Scan queued"
    return ScanCreateResponse(job_id=admission.job_id, already_running=admission.already_running, message=message)


@app.post("/scan/cancel", response_model=CancelResponse)
def cancel_scan_job(payload: CancelRequest) -> CancelResponse:
    try:
        outcome = cancellation.cancel(payload.job_id)
    except InvalidRequest as exc:
        raise _bad_request(exc) from exc
    return CancelResponse(message="Canceled" if outcome.canceled else "Nothing to cancel", status=outcome.status)


@app.get("/scan/active")
def list_active_scan_jobs() -> Dict[str, List[Dict[str, Any]]]:
    return {"jobs": publisher.active()}


@app.get("/scan/stream")
def stream_scan_job(request: Request, job_id: Optional[int] = Query(default=None)):
    if job_id is None or job_id <= 0:
        raise HTTPException(status_code=400, detail="job_id is required")

    async def event_gen():
        async for message in publisher.subscribe(job_id, request.is_disconnected):
            yield encode_sse(message)

    headers = {"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"}
    return StreamingResponse(event_gen(), media_type="text/event-stream", headers=headers)


@app.get("/scan/{job_id}")
def get_scan_job(job_id: int) -> Dict[str, Any]:
    return publisher.snapshot(job_id)


@app.post("/scan/run-periodic", response_model=SweepResponse)
def run_periodic_sweep() -> SweepResponse:
    return SweepResponse(queued=scheduler.run_periodic_sweep())


@app.get("/settings/scan", response_model=ScanSettingsRead)
def read_scan_settings() -> ScanSettingsRead:
    return load_scan_settings(job_store.session_factory)


@app.get("/ports/cleanup")
def list_down_ports() -> Dict[str, List[DownPortRead]]:
    return {"ports": reconciler.down_ports()}


@app.post("/ports/cleanup", response_model=PortCleanupResponse)
def remove_down_ports(payload: PortCleanupRequest) -> PortCleanupResponse:
    try:
        deleted = reconciler.remove_ports(payload.ids)
    except InvalidRequest as exc:
        raise _bad_request(exc) from exc
    return PortCleanupResponse(deleted=deleted)


@app.get("/agent/health")
def agent_health() -> Dict[str, Any]:
    return check_agent_health().as_dict()


@app.post("/agent/jobs/claim")
def claim_scan_job() -> Dict[str, Any]:
    claim = agent_channel.claim()
    if claim is None:
        return {"job": None}
    return {"job": claim.job.model_dump(mode="json"), "target_ip": claim.target_ip}


@app.post("/agent/jobs/{job_id}/progress", response_model=AgentWriteResponse)
def report_scan_progress(job_id: int, payload: ProgressReport) -> AgentWriteResponse:
    try:
        outcome = agent_channel.progress(job_id, payload.completed_units, payload.found_units)
    except InvalidRequest as exc:
        raise _bad_request(exc) from exc
    return AgentWriteResponse(job_id=job_id, accepted=outcome.accepted, status=outcome.status)


@app.post("/agent/jobs/{job_id}/complete", response_model=AgentWriteResponse)
def complete_scan_job(job_id: int, payload: CompletionReport) -> AgentWriteResponse:
    try:
        outcome = agent_channel.complete(job_id, payload.open_ports)
    except InvalidRequest as exc:
        raise _bad_request(exc) from exc
    return AgentWriteResponse(job_id=job_id, accepted=outcome.accepted, status=outcome.status)


@app.post("/agent/jobs/{job_id}/fail", response_model=AgentWriteResponse)
def fail_scan_job(job_id: int, payload: FailureReport) -> AgentWriteResponse:
    try:
        outcome = agent_channel.fail(job_id, payload.error)
    except InvalidRequest as exc:
        raise _bad_request(exc) from exc
    return AgentWriteResponse(job_id=job_id, accepted=outcome.accepted, status=outcome.status)


def run_api() -> None:
    import uvicorn

    uvicorn.run("portledger.main:app", host="0.0.0.0", port=8000, log_config=None)
