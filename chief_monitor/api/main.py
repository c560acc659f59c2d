"""FastAPI backend for the monitor.

Receives telemetry from the upstream chief process, serves status and alert
views and manages alert email settings. The store, the service and the sweep
scheduler are built once at startup and shared across requests.
"""

import asyncio
import hmac
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field

from chief_monitor.config import get_settings
from chief_monitor.engine.alerts import CloseAlertResult
from chief_monitor.engine.summary import Summary
from chief_monitor.models import AlertRecord, TelemetryEventRecord
from chief_monitor.notify.email import build_email_sender
from chief_monitor.notify.notifier import ConfigurationError, EmailSettingsView, EmailTestResult
from chief_monitor.observability.metrics import APP_INFO, REQUEST_DURATION, REQUESTS_TOTAL
from chief_monitor.scheduler import SweepScheduler
from chief_monitor.service import IngestResult, JobDetails, JobStatus, MonitorService
from chief_monitor.store import open_store

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
DEFAULT_CLOSE_REASON = "manual"


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class CloseAlertRequest(BaseModel):
    """Request body for POST /v1/alerts/{alert_id}/close."""

    reason: str | None = Field(default=None, min_length=1, max_length=200)


class EmailSettingsRequest(BaseModel):
    """Request body for PUT /v1/settings/alerts/email."""

    model_config = ConfigDict(populate_by_name=True)

    recipients: list[str] = Field(default_factory=list)
    enabled_alert_types: list[str] = Field(default_factory=list, alias="enabledAlertTypes")


class EmailTestRequest(BaseModel):
    """Request body for POST /v1/settings/alerts/email/test."""

    model_config = ConfigDict(populate_by_name=True)

    requested_by: str | None = Field(default=None, max_length=200, alias="requestedBy")


class HealthResponse(BaseModel):
    """Response body for GET /v1/health."""

    status: str
    version: str
    scheduler_running: bool


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and start the sweeps at startup; stop sweeps before closing the store."""
    settings = get_settings()
    APP_INFO.info({"version": VERSION})

    store = open_store(settings.monitor_db_path)
    service = MonitorService.from_settings(store, build_email_sender(settings), settings)
    sweeps = SweepScheduler.from_settings(service, settings)
    app.state.service = service
    app.state.sweeps = sweeps
    logger.info("Monitor store ready at %s", settings.monitor_db_path)

    sweeps.start()
    try:
        yield
    finally:
        await sweeps.stop()
        store.close()
        logger.info("Shutting down monitor")


app = FastAPI(title="Chief Monitor", version=VERSION, lifespan=lifespan)


@app.middleware("http")
async def record_request_metrics(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    start = time.monotonic()
    status = "error"
    try:
        response = await call_next(request)
        status = "success" if response.status_code < 400 else "error"
        return response
    finally:
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        REQUESTS_TOTAL.labels(endpoint=endpoint, status=status).inc()
        REQUEST_DURATION.labels(endpoint=endpoint).observe(time.monotonic() - start)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def require_api_key(x_api_key: Annotated[str | None, Header()] = None) -> None:
    """Reject the request unless it carries the configured key. Open when no key is set."""
    expected = get_settings().monitor_api_key
    if not expected:
        return
    if x_api_key is None or not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def get_service(request: Request) -> MonitorService:
    return request.app.state.service


ServiceDep = Annotated[MonitorService, Depends(get_service)]


def _page_param(value: str | None) -> int | None:
    """Lenient paging parameter: anything that is not an integer means 'use the default'."""
    if value is None:
        return None
    try:
        return int(value.strip(), 10)
    except ValueError:
        return None


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        raise HTTPException(status_code=400, detail="Request body is required")
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Request body is not valid JSON") from exc


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/v1/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Liveness check. Never requires the API key."""
    sweeps: SweepScheduler = request.app.state.sweeps
    return HealthResponse(status="ok", version=VERSION, scheduler_running=sweeps.running)


@app.get("/metrics", dependencies=[Depends(require_api_key)])
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


v1 = APIRouter(prefix="/v1", dependencies=[Depends(require_api_key)])


# --- Ingestion ---


@v1.post("/events", status_code=202)
async def ingest_event(request: Request, service: ServiceDep) -> IngestResult:
    """Ingest a single event object."""
    body = await _json_body(request)
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return await asyncio.to_thread(service.ingest_events, [body])


@v1.post("/events/batch", status_code=202)
async def ingest_batch(request: Request, service: ServiceDep) -> IngestResult:
    """Ingest a batch, either a bare list or ``{"events": [...]}``."""
    body = await _json_body(request)
    if isinstance(body, dict):
        body = body.get("events")
    if not isinstance(body, list):
        raise HTTPException(status_code=400, detail="Expected a list of events or an object with an 'events' list")
    return await asyncio.to_thread(service.ingest_events, body)


# --- Status ---


@v1.get("/status/summary")
async def status_summary(service: ServiceDep) -> Summary:
    return await asyncio.to_thread(service.get_summary)


@v1.get("/status/jobs")
async def status_jobs(service: ServiceDep) -> list[JobStatus]:
    return await asyncio.to_thread(service.get_jobs_status)


@v1.get("/status/jobs/{job_name}")
async def status_job(job_name: str, service: ServiceDep) -> JobDetails:
    details = await asyncio.to_thread(service.get_job_details, job_name)
    if details is None:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_name}")
    return details


# --- Alerts and events ---


@v1.get("/alerts")
async def list_alerts(
    service: ServiceDep,
    job_name: Annotated[str | None, Query(alias="jobName")] = None,
    status: str | None = None,
    alert_type: Annotated[str | None, Query(alias="type")] = None,
    severity: str | None = None,
    limit: str | None = None,
    offset: str | None = None,
) -> list[AlertRecord]:
    return await asyncio.to_thread(
        lambda: service.list_alerts(
            job_name=job_name,
            status=status,
            alert_type=alert_type,
            severity=severity,
            limit=_page_param(limit),
            offset=_page_param(offset),
        )
    )


@v1.get("/events")
async def list_events(
    service: ServiceDep,
    job_name: Annotated[str | None, Query(alias="jobName")] = None,
    script_path: Annotated[str | None, Query(alias="scriptPath")] = None,
    level: str | None = None,
    event_type: Annotated[str | None, Query(alias="eventType")] = None,
    since: Annotated[str | None, Query(alias="from")] = None,
    until: Annotated[str | None, Query(alias="to")] = None,
    limit: str | None = None,
    offset: str | None = None,
) -> list[TelemetryEventRecord]:
    try:
        return await asyncio.to_thread(
            lambda: service.list_events(
                job_name=job_name,
                script_path=script_path,
                level=level,
                event_type=event_type,
                since=since,
                until=until,
                limit=_page_param(limit),
                offset=_page_param(offset),
            )
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@v1.post("/alerts/{alert_id}/close")
async def close_alert(
    alert_id: str, service: ServiceDep, request: CloseAlertRequest | None = None
) -> CloseAlertResult:
    """Close an alert by id. Closing an already closed alert succeeds with ``updated`` false."""
    parsed = _page_param(alert_id)
    if parsed is None or parsed <= 0:
        raise HTTPException(status_code=400, detail="Alert id must be a positive integer")
    reason = request.reason if request and request.reason else DEFAULT_CLOSE_REASON
    result = await asyncio.to_thread(service.close_alert, parsed, reason)
    if not result["found"]:
        raise HTTPException(status_code=404, detail=f"Alert {parsed} not found")
    return result


# --- Email settings ---


@v1.get("/settings/alerts/email")
async def get_email_settings(service: ServiceDep) -> EmailSettingsView:
    return await asyncio.to_thread(service.get_alert_email_settings)


@v1.put("/settings/alerts/email")
async def put_email_settings(request: EmailSettingsRequest, service: ServiceDep) -> EmailSettingsView:
    try:
        return await asyncio.to_thread(
            service.save_alert_email_settings, request.recipients, request.enabled_alert_types
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@v1.post("/settings/alerts/email/test", response_model=None)
async def send_test_email(
    service: ServiceDep, request: EmailTestRequest | None = None
) -> EmailTestResult | JSONResponse:
    requested_by = request.requested_by if request else None
    try:
        result = await asyncio.to_thread(service.send_test_alert_email, requested_by)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if result["failed"]:
        return JSONResponse(status_code=502, content=dict(result))
    return result


app.include_router(v1)
