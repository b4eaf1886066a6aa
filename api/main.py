from __future__ import annotations

from os import getenv
from typing import Any, Literal, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from accounts.settings import get_settings as get_account_settings
from accounts.settings import update_settings as update_account_settings
from content.dual_write import dual_write_stats
from content.review import ContentNotFoundError, content_for_review, update_content_status
from core.logger import configure_logging, get_logger
from db.models import JOB_STATUSES, JOB_TYPES
from pipeline import queue
from prompts import store as templates
from workflows import store as workflows
from workflows.runner import WorkflowError, available_variables, run_workflow, step_variables, try_template

configure_logging()
logger = get_logger(__name__)

app = FastAPI(title="Content Engine API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin for origin in getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _envelope(data: Any = None, *, message: str | None = None) -> dict:
    payload: dict[str, Any] = {"success": True, "data": jsonable_encoder(data)}
    if message:
        payload["message"] = message
    return payload


def _error(status_code: int, error: str, message: str | None = None, details: Any = None) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "error": error}
    if message:
        body["message"] = message
    if details is not None:
        body["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(HTTPException)
def _http_error(_request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
def _request_invalid(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(400, "validation_error", "request failed validation", exc.errors())


@app.exception_handler(templates.TemplateValidationError)
@app.exception_handler(workflows.WorkflowValidationError)
def _domain_invalid(_request: Request, exc) -> JSONResponse:
    return _error(400, "validation_error", str(exc), getattr(exc, "errors", None))


@app.exception_handler(ValueError)
def _bad_value(_request: Request, exc: ValueError) -> JSONResponse:
    return _error(400, "bad_request", str(exc))


@app.exception_handler(templates.TemplateNotFoundError)
@app.exception_handler(workflows.WorkflowNotFoundError)
@app.exception_handler(queue.JobNotFoundError)
@app.exception_handler(ContentNotFoundError)
def _not_found(_request: Request, exc: LookupError) -> JSONResponse:
    message = exc.args[0] if exc.args else "not found"
    return _error(404, "not_found", str(message))


@app.exception_handler(WorkflowError)
def _workflow_failed(_request: Request, exc: WorkflowError) -> JSONResponse:
    return _error(500, "workflow_failed", str(exc), {"step": getattr(exc, "step_name", None)})


@app.exception_handler(Exception)
def _internal(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_failed", error=str(exc))
    return _error(500, "internal_error", "unexpected server error")


def _paginate(limit: int, offset: int) -> tuple[int, int]:
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    return limit, offset


def _tenant(
    x_account_id: str | None = Header(default=None),
    account_id: str | None = Query(default=None),
) -> UUID:
    raw = x_account_id or account_id
    if not raw:
        raise HTTPException(status_code=400, detail="account_id_required")
    try:
        return UUID(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="account_id_invalid") from None


def _require_operator(x_operator_token: str | None = Header(default=None)) -> None:
    expected = getenv("OPERATOR_TOKEN", "")
    if not expected:
        if getenv("ALLOW_OPS_WITHOUT_TOKEN", "0") == "1":
            return
        raise HTTPException(status_code=503, detail="operator_token_missing")
    if x_operator_token != expected:
        raise HTTPException(status_code=401, detail="operator_token_required")


class JobCreateIn(BaseModel):
    type: Literal["content_generation", "full_cycle", "news_aggregation", "ai_analysis"]
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=0, ge=-100, le=100)
    created_by: str | None = None


class TemplateIn(BaseModel):
    name: str | None = None
    category: str | None = None
    description: str | None = None
    prompt: str | None = None
    system_message: str | None = None
    parameters: dict[str, Any] | None = None
    ui_config: dict[str, Any] | None = None
    io_schemas: dict[str, Any] | None = None
    notes: str | None = None
    active: bool | None = None


class VersionIn(BaseModel):
    prompt: str
    system_message: str | None = None
    parameters: dict[str, Any] | None = None
    notes: str | None = None
    make_current: bool = False


class TemplateTestIn(BaseModel):
    variables: dict[str, Any] = Field(default_factory=dict)
    version_id: int | None = None
    execute: bool = False


class WorkflowIn(BaseModel):
    name: str | None = None
    description: str | None = None
    steps: list[dict[str, Any]] | None = None
    input_sources: list[Any] | None = None
    output_destinations: list[Any] | None = None
    active: bool | None = None


class WorkflowExecuteIn(BaseModel):
    inputs: dict[str, Any] = Field(default_factory=dict)
    source_article_id: int | None = None


class ContentStatusIn(BaseModel):
    status: str
    final_content: Any = None


class StaleRecoveryIn(BaseModel):
    stale_after_s: int | None = Field(default=None, ge=1)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/settings")
def get_settings() -> dict:
    def flag(name: str, default: str = "") -> str:
        return getenv(name, default)

    return {
        "redis_url": flag("REDIS_URL", ""),
        "job_queue_backend": flag("JOB_QUEUE_BACKEND", "rq"),
        "max_concurrent_jobs": flag("MAX_CONCURRENT_JOBS", "1"),
        "worker_poll_interval_s": flag("WORKER_POLL_INTERVAL_S", "5"),
        "job_timeout_seconds": flag("JOB_TIMEOUT_SECONDS", "1800"),
        "job_stale_after_seconds": flag("JOB_STALE_AFTER_SECONDS", "600"),
        "llm_timeout_seconds": flag("LLM_TIMEOUT_SECONDS", "60"),
        "llm_default_provider": flag("LLM_DEFAULT_PROVIDER", "openai"),
        "llm_max_output_tokens": flag("LLM_MAX_OUTPUT_TOKENS", "2000"),
        "llm_temperature": flag("LLM_TEMPERATURE", "0.7"),
        "openai_model": flag("OPENAI_MODEL", ""),
        "openai_base_url": flag("OPENAI_BASE_URL", ""),
        "gemini_model": flag("GEMINI_MODEL", ""),
        "enable_dual_write": flag("ENABLE_DUAL_WRITE", "true"),
        "prioritize_modern": flag("PRIORITIZE_MODERN", "false"),
        "scraper_configured": flag("SCRAPER_URL", "") != "",
        "image_service_configured": flag("IMAGE_SERVICE_URL", "") != "",
        "operator_guard": flag("OPERATOR_TOKEN", "") != "",
        "log_level": flag("LOG_LEVEL", "INFO"),
    }


@app.post("/jobs", status_code=201)
def create_job(request: JobCreateIn, account_id: UUID = Depends(_tenant)) -> dict:
    job_id = queue.enqueue(
        request.type,
        request.payload,
        account_id,
        priority=request.priority,
        created_by=request.created_by,
    )
    return _envelope({"jobId": job_id, "status": "queued"}, message="job queued")


@app.get("/jobs")
def list_jobs(
    status: Optional[str] = None,
    job_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    account_id: UUID = Depends(_tenant),
) -> dict:
    if status and status not in JOB_STATUSES:
        raise HTTPException(status_code=400, detail="invalid_status")
    if job_type and job_type not in JOB_TYPES:
        raise HTTPException(status_code=400, detail="invalid_job_type")
    limit, offset = _paginate(limit, offset)
    return _envelope(queue.list_jobs(account_id, status=status, job_type=job_type, limit=limit, offset=offset))


@app.get("/jobs/stats")
def job_stats(hours: int = Query(24, ge=1, le=720), account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(queue.queue_stats(account_id, hours))


@app.get("/jobs/{job_id}")
def get_job(job_id: int, account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(queue.get_job(job_id, account_id))


@app.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: int, account_id: UUID = Depends(_tenant)) -> dict:
    row = queue.cancel(job_id, account_id)
    message = "cancellation requested" if row["cancelled"] else f"job already {row['status']}"
    return _envelope(row, message=message)


@app.post("/jobs/{job_id}/retry")
def retry_job(job_id: int, account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(queue.retry(job_id, account_id), message="job requeued")


@app.get("/templates")
def list_templates(
    category: Optional[str] = None,
    include_inactive: bool = False,
    account_id: UUID = Depends(_tenant),
) -> dict:
    return _envelope(templates.list_templates(account_id, category, include_inactive))


@app.get("/templates/categories")
def list_categories(account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(templates.list_categories(account_id))


@app.get("/templates/category/{category}")
def get_current_template(category: str, account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(templates.get_current_by_category(category, account_id).as_dict())


@app.post("/templates", status_code=201)
def create_template(request: TemplateIn, account_id: UUID = Depends(_tenant)) -> dict:
    data = request.model_dump(exclude_none=True)
    return _envelope(templates.create_template(data, account_id).as_dict(), message="template created")


@app.get("/templates/{template_id}")
def get_template(template_id: int, version_id: Optional[int] = None, account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(templates.get_template(template_id, account_id, version_id).as_dict())


@app.put("/templates/{template_id}")
def update_template(
    template_id: int,
    request: TemplateIn,
    make_current: bool = True,
    account_id: UUID = Depends(_tenant),
) -> dict:
    data = request.model_dump(exclude_unset=True)
    resolved = templates.update_template(template_id, data, account_id, make_current=make_current)
    return _envelope(resolved.as_dict(), message="template updated")


@app.delete("/templates/{template_id}")
def delete_template(template_id: int, account_id: UUID = Depends(_tenant)) -> dict:
    templates.deactivate_template(template_id, account_id)
    return _envelope({"id": template_id, "active": False}, message="template deactivated")


@app.get("/templates/{template_id}/versions")
def list_versions(template_id: int, account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(templates.list_versions(template_id, account_id))


@app.post("/templates/{template_id}/versions", status_code=201)
def create_version(template_id: int, request: VersionIn, account_id: UUID = Depends(_tenant)) -> dict:
    resolved = templates.create_version(
        template_id,
        account_id,
        prompt=request.prompt,
        system_message=request.system_message,
        parameters=request.parameters,
        notes=request.notes,
        make_current=request.make_current,
    )
    return _envelope(resolved.as_dict(), message="version created")


@app.put("/templates/{template_id}/versions/{version_id}/current")
def set_current_version(template_id: int, version_id: int, account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(templates.set_current_version(template_id, version_id, account_id).as_dict())


@app.get("/templates/{template_id}/usage")
def template_usage(template_id: int, account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(templates.usage_stats(template_id, account_id))


@app.post("/templates/{template_id}/test")
def test_template(template_id: int, request: TemplateTestIn, account_id: UUID = Depends(_tenant)) -> dict:
    result = try_template(
        template_id,
        request.variables,
        account_id,
        version_id=request.version_id,
        execute=request.execute,
    )
    return _envelope(result)


@app.get("/workflows")
def list_workflows(account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(workflows.list_workflows(account_id))


@app.get("/workflows/default")
def get_default_workflow(account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(workflows.default_workflow(account_id).as_dict())


@app.post("/workflows", status_code=201)
def create_workflow(request: WorkflowIn, account_id: UUID = Depends(_tenant)) -> dict:
    definition = workflows.create_workflow(request.model_dump(exclude_none=True), account_id)
    return _envelope(definition.as_dict(), message="workflow created")


@app.get("/workflows/{workflow_id}")
def get_workflow(workflow_id: int, account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(workflows.get_workflow(workflow_id, account_id).as_dict())


@app.put("/workflows/{workflow_id}")
def update_workflow(workflow_id: int, request: WorkflowIn, account_id: UUID = Depends(_tenant)) -> dict:
    definition = workflows.update_workflow(workflow_id, request.model_dump(exclude_unset=True), account_id)
    return _envelope(definition.as_dict(), message="workflow updated")


@app.delete("/workflows/{workflow_id}")
def delete_workflow(workflow_id: int, account_id: UUID = Depends(_tenant)) -> dict:
    workflows.deactivate_workflow(workflow_id, account_id)
    return _envelope({"id": workflow_id, "active": False}, message="workflow deactivated")


@app.get("/workflows/{workflow_id}/variables")
def workflow_variables(
    workflow_id: int,
    step_index: int = Query(0, ge=0),
    account_id: UUID = Depends(_tenant),
) -> dict:
    definition = workflows.get_workflow(workflow_id, account_id)
    return _envelope(available_variables(definition, step_index, account_id))


@app.get("/workflows/{workflow_id}/step-variables")
def workflow_step_variables(workflow_id: int, account_id: UUID = Depends(_tenant)) -> dict:
    definition = workflows.get_workflow(workflow_id, account_id)
    return _envelope(step_variables(definition, account_id))


@app.post("/workflows/{workflow_id}/execute")
def execute_workflow(workflow_id: int, request: WorkflowExecuteIn, account_id: UUID = Depends(_tenant)) -> dict:
    result = run_workflow(
        workflow_id,
        request.inputs,
        account_id,
        source_article_id=request.source_article_id,
    )
    return _envelope(result)


@app.get("/content/review")
def review_content(
    status: str = "review_pending",
    limit: int = Query(50, ge=1, le=200),
    account_id: UUID = Depends(_tenant),
) -> dict:
    return _envelope(content_for_review(account_id, status=status, limit=limit))


@app.get("/content/dual-write/stats")
def content_dual_write_stats(account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(dual_write_stats(account_id))


@app.put("/content/{content_type}/{item_id}/status")
def set_content_status(
    content_type: str,
    item_id: int,
    request: ContentStatusIn,
    account_id: UUID = Depends(_tenant),
) -> dict:
    result = update_content_status(account_id, content_type, item_id, request.status, request.final_content)
    return _envelope(result, message=f"{content_type} marked {request.status}")


@app.get("/accounts/settings/{setting_type}")
def read_account_settings(setting_type: str, account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(get_account_settings(account_id, setting_type))


@app.put("/accounts/settings/{setting_type}")
def write_account_settings(setting_type: str, data: dict[str, Any], account_id: UUID = Depends(_tenant)) -> dict:
    return _envelope(update_account_settings(account_id, setting_type, data), message="settings updated")


@app.post("/ops/recover-stale-jobs")
def ops_recover_stale_jobs(request: StaleRecoveryIn, _guard: None = Depends(_require_operator)) -> dict:
    return _envelope(queue.recover_stale_jobs(request.stale_after_s))
