"""
HTTP surface for Report Job Orchestrator

A FastAPI application exposing the report job, schedule and template
operations under ``/api/v2/reports`` with camelCase JSON envelopes
``{success, data, message?, pagination?}``. Install with the ``web`` extra.

The caller's identity is taken from the ``X-User-Id`` header; authentication
and authorization belong to the hosting application.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

from fastapi import APIRouter, Body, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from ..core.exceptions import (
    ConflictError,
    NotFoundError,
    ReportExpiredError,
    ReportOrchestratorError,
    ValidationError,
)
from ..core.orchestrator import ReportOrchestrator
from ..models.common import Page, isoformat
from ..utils.logger import get_logger


API_PREFIX = "/api/v2/reports"
ANONYMOUS_USER = "anonymous"

logger = get_logger(__name__)


def status_code_for(error: ReportOrchestratorError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ConflictError):
        return 409
    if isinstance(error, ReportExpiredError):
        return 410
    return 500


def envelope(data: Any = None, message: Optional[str] = None, page: Optional[Page] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    if page is not None:
        body["pagination"] = page.pagination()
    return body


def _query_dict(request: Request, list_keys: Sequence[str] = ()) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for key in request.query_params.keys():
        if key in list_keys:
            values: List[str] = []
            for value in request.query_params.getlist(key):
                values.extend(part for part in value.split(",") if part)
            query[key] = values
        else:
            query[key] = request.query_params[key]
    return query


def build_router(orchestrator: ReportOrchestrator) -> APIRouter:
    router = APIRouter(prefix=API_PREFIX)

    # Jobs
    @router.post("/jobs", status_code=201)
    async def submit_job(payload: Dict[str, Any] = Body(...), x_user_id: str = Header(ANONYMOUS_USER)):
        receipt = await orchestrator.submit_job(payload, x_user_id)
        return envelope(receipt, "Report job queued")

    @router.get("/jobs")
    async def list_jobs(request: Request):
        page = await orchestrator.list_jobs(_query_dict(request, ["status", "reportType"]))
        return envelope([job.to_summary() for job in page.items], page=page)

    @router.get("/jobs/{job_id}")
    async def get_job(job_id: str):
        job = await orchestrator.get_job(job_id)
        return envelope(job.to_dict())

    @router.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
        reason = (payload or {}).get("reason")
        job = await orchestrator.cancel_job(job_id, reason=reason)
        message = "Cancellation requested" if job.status.value == "running" else "Report job cancelled"
        return envelope({
            "id": job.id,
            "status": job.status.value,
            "cancelledAt": isoformat(job.cancelled_at),
            "cancelRequested": job.cancel_requested,
        }, message)

    @router.post("/jobs/{job_id}/retry")
    async def retry_job(job_id: str):
        job = await orchestrator.retry_job(job_id)
        return envelope({"id": job.id, "status": job.status.value, "retryCount": job.retry_count}, "Report job re-queued")

    @router.get("/jobs/{job_id}/download")
    async def download_report(job_id: str):
        handle = await orchestrator.download_report(job_id)
        headers = {"Content-Disposition": f'attachment; filename="{handle.filename}"'}
        if handle.size is not None:
            headers["Content-Length"] = str(handle.size)
        return StreamingResponse(handle.iter_chunks(), media_type=handle.content_type, headers=headers)

    # Schedules
    @router.post("/schedules", status_code=201)
    async def create_schedule(payload: Dict[str, Any] = Body(...), x_user_id: str = Header(ANONYMOUS_USER)):
        created = await orchestrator.create_schedule(payload, x_user_id)
        return envelope(created.to_dict(), "Schedule created")

    @router.get("/schedules")
    async def list_schedules(request: Request):
        page = await orchestrator.list_schedules(_query_dict(request))
        return envelope([item.to_dict() for item in page.items], page=page)

    @router.get("/schedules/{schedule_id}")
    async def get_schedule(schedule_id: str):
        found = await orchestrator.get_schedule(schedule_id)
        return envelope(found.to_dict())

    @router.patch("/schedules/{schedule_id}")
    async def update_schedule(schedule_id: str, payload: Dict[str, Any] = Body(...)):
        updated = await orchestrator.update_schedule(schedule_id, payload)
        return envelope(updated.to_dict(), "Schedule updated")

    @router.post("/schedules/{schedule_id}/pause")
    async def pause_schedule(schedule_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
        paused = await orchestrator.pause_schedule(schedule_id, reason=(payload or {}).get("reason"))
        return envelope(paused.to_dict(), "Schedule paused")

    @router.post("/schedules/{schedule_id}/resume")
    async def resume_schedule(schedule_id: str):
        resumed = await orchestrator.resume_schedule(schedule_id)
        return envelope(resumed.to_dict(), "Schedule resumed")

    # Templates
    @router.post("/templates", status_code=201)
    async def create_template(payload: Dict[str, Any] = Body(...), x_user_id: str = Header(ANONYMOUS_USER)):
        created = await orchestrator.create_template(payload, x_user_id)
        return envelope(created.to_dict(), "Template created")

    @router.get("/templates")
    async def list_templates(request: Request):
        page = await orchestrator.list_templates(_query_dict(request))
        return envelope([item.to_dict() for item in page.items], page=page)

    @router.get("/templates/{template_id}")
    async def get_template(template_id: str):
        found = await orchestrator.get_template(template_id)
        return envelope(found.to_dict())

    @router.patch("/templates/{template_id}")
    async def update_template(template_id: str, payload: Dict[str, Any] = Body(...)):
        updated = await orchestrator.update_template(template_id, payload)
        return envelope(updated.to_dict(), "Template updated")

    @router.delete("/templates/{template_id}")
    async def delete_template(template_id: str):
        await orchestrator.delete_template(template_id)
        return envelope(None, "Template deleted")

    @router.post("/templates/{template_id}/clone", status_code=201)
    async def clone_template(template_id: str, payload: Optional[Dict[str, Any]] = Body(None),
                             x_user_id: str = Header(ANONYMOUS_USER)):
        clone = await orchestrator.clone_template(template_id, x_user_id, name=(payload or {}).get("name"))
        return envelope(clone.to_dict(), "Template cloned")

    # Monitoring
    @router.get("/health")
    async def health():
        report = await orchestrator.get_system_health()
        return envelope(report.to_dict())

    return router


def create_app(orchestrator: ReportOrchestrator, manage_lifecycle: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        orchestrator: Orchestrator serving the routes
        manage_lifecycle: Start the orchestrator with the app and close it on shutdown
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await orchestrator.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await orchestrator.close()

    app = FastAPI(title="Report Job Orchestrator API", version="1.0.0", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.include_router(build_router(orchestrator))

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        return PlainTextResponse(orchestrator.render_metrics(), media_type="text/plain; version=0.0.4")

    @app.exception_handler(ReportOrchestratorError)
    async def handle_orchestrator_error(request: Request, exc: ReportOrchestratorError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"Request failed: {exc.message}", extra={"path": request.url.path})
        return JSONResponse(
            status_code=status_code,
            content={
                "success": False,
                "message": exc.message,
                "error": {"code": exc.error_code, "details": exc.details},
            },
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field_name = ".".join(str(part) for part in first.get("loc", ()) if part != "body") or "request"
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": f"Validation error for {field_name}: {first.get('msg', 'invalid request')}",
                "error": {"code": "VALIDATION_ERROR", "details": {"field": field_name}},
            },
        )

    return app
