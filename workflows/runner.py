"""Sequential workflow execution.

Each step sees the base inputs plus the parsed output of every step that ran
before it. Steps never run concurrently.
"""

from __future__ import annotations

from datetime import UTC, datetime
import json
import time
from typing import Any, Mapping
from uuid import UUID

from core.logger import get_logger
from db.models import WorkflowExecution
from db.repository import insert_with_tenant
from llm.gateway import LLMGateway, get_gateway
from llm.postprocess import strip_code_fence
from prompts.store import ResolvedTemplate, get_template
from prompts.variables import display_name, extract_variables, substitute

from .conditions import conditions_hold
from .store import WorkflowDefinition, resolve_workflow

logger = get_logger(__name__)

INTERNAL_KEYS = ("_workflow", "_account_id")
BASE_VARIABLES = (
    "article.title",
    "article.content",
    "article.summary",
    "article.source",
    "article.url",
    "blog.id",
    "account.id",
)


class WorkflowError(RuntimeError):
    pass


class WorkflowStepError(WorkflowError):
    def __init__(self, step_name: str, message: str) -> None:
        super().__init__(f"Workflow failed at step {step_name}: {message}")
        self.step_name = step_name
        self.reason = message


class MissingVariableError(ValueError):
    def __init__(self, names: list[str]) -> None:
        super().__init__(f"Required variable(s) missing: {', '.join(names)}")
        self.names = names


def _utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def prepare_step_variables(context: Mapping[str, Any], results: Mapping[str, Any]) -> dict[str, Any]:
    variables: dict[str, Any] = {}
    article = context.get("article")
    if isinstance(article, Mapping):
        variables["article.title"] = article.get("title")
        variables["article.content"] = _first(article, "content", "body", "full_text")
        variables["article.summary"] = _first(article, "summary", "summary_ai")
        variables["article.source"] = _first(article, "source", "source_name", "source_ref")
        variables["article.url"] = article.get("url")
    blog = context.get("blog")
    if isinstance(blog, Mapping):
        variables["blog.id"] = blog.get("id")
    account = context.get("account")
    account_id = context.get("_account_id")
    if account_id is None and isinstance(account, Mapping):
        account_id = account.get("id")
    if account_id is not None:
        variables["account.id"] = str(account_id)

    for key, value in context.items():
        if key.startswith("_") or key in ("article", "blog", "account") or key in results:
            continue
        if isinstance(value, (str, int, float, bool)):
            variables[key] = value

    for step_name, record in results.items():
        output = record.get("output") if isinstance(record, Mapping) else None
        if isinstance(output, Mapping):
            for field_name, value in output.items():
                variables[f"{step_name}.{field_name}"] = value
    return variables


def parse_step_output(text: str, template: ResolvedTemplate) -> dict[str, Any]:
    fields = template.output_fields
    if not fields:
        return {"content": text, "type": template.category, "generatedAt": _utc_iso()}
    try:
        parsed = json.loads(strip_code_fence(text))
    except (json.JSONDecodeError, TypeError):
        return {"text": text, "parsed": False}
    if not isinstance(parsed, dict):
        return {"text": text, "parsed": False}
    return {item["name"]: parsed[item["name"]] for item in fields if item["name"] in parsed}


def sanitize_context(context: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in context.items() if key not in INTERNAL_KEYS}


def execute_step(
    step,
    context: Mapping[str, Any],
    results: Mapping[str, Any],
    account_id: UUID,
    *,
    gateway: LLMGateway,
    gen_article_id: int | None = None,
) -> dict[str, Any]:
    variables = prepare_step_variables(context, results)
    template = get_template(step.template_id, account_id)

    missing_required = [name for name in template.required_inputs if variables.get(name) is None]
    if missing_required:
        raise MissingVariableError(missing_required)

    prompt = substitute(template.prompt, variables)
    system = substitute(template.system_message, variables)
    generation = gateway.generate(
        template.category,
        prompt.text,
        system.text or None,
        template.parameters,
        account_id,
        gen_article_id,
        template_id=template.template_id,
        version_id=template.version_id,
    )
    output = parse_step_output(generation.text, template)
    return {
        "stepName": step.name,
        "templateId": template.template_id,
        "input": {"prompt": prompt.text, "system": system.text},
        "output": output,
        "metadata": {
            "executedAt": _utc_iso(),
            "template": template.name,
            "category": template.category,
            "versionId": template.version_id,
            "versionNumber": template.version_number,
            "provider": generation.provider,
            "model": generation.model,
            "stopReason": generation.stop_reason,
            "isTruncated": generation.is_truncated,
            "logId": generation.log_id,
            "missingVariables": sorted(set(prompt.missing) | set(system.missing)),
        },
    }


def run_workflow(
    workflow: WorkflowDefinition | int | None,
    inputs: Mapping[str, Any],
    account_id: UUID,
    *,
    gateway: LLMGateway | None = None,
    gen_article_id: int | None = None,
    source_article_id: int | None = None,
    record_execution: bool = True,
) -> dict[str, Any]:
    definition = workflow if isinstance(workflow, WorkflowDefinition) else resolve_workflow(account_id, workflow)
    gateway = gateway or get_gateway()
    context: dict[str, Any] = {
        **dict(inputs or {}),
        "_workflow": definition.as_dict(),
        "_account_id": str(account_id),
    }
    results: dict[str, Any] = {}
    started = time.perf_counter()
    log = logger.bind(workflow_id=definition.workflow_id, workflow=definition.name)
    log.info("workflow_started", steps=len(definition.steps))

    try:
        for step in definition.steps:
            if not conditions_hold(step.conditions, context, results):
                log.info("workflow_step_skipped", step=step.name)
                continue
            try:
                record = execute_step(
                    step,
                    context,
                    results,
                    account_id,
                    gateway=gateway,
                    gen_article_id=gen_article_id,
                )
            except Exception as exc:
                if not step.continue_on_error:
                    raise WorkflowStepError(step.name, str(exc)) from exc
                log.warning("workflow_step_failed_continuing", step=step.name, error=str(exc))
                results[step.name] = {"error": str(exc)}
                context[step.name] = {"error": str(exc)}
                continue
            results[step.name] = record
            context[step.name] = record["output"]
            log.info("workflow_step_completed", step=step.name)
    except WorkflowStepError as exc:
        log.error("workflow_failed", step=exc.step_name, error=exc.reason)
        if record_execution:
            _record_execution(definition, account_id, gen_article_id, source_article_id, "failed", results, str(exc), started)
        raise

    if record_execution:
        _record_execution(definition, account_id, gen_article_id, source_article_id, "completed", results, None, started)
    log.info("workflow_completed", executed=len(results))
    return {
        "workflowId": definition.workflow_id,
        "success": True,
        "results": results,
        "context": sanitize_context(context),
    }


def _record_execution(
    definition: WorkflowDefinition,
    account_id: UUID,
    gen_article_id: int | None,
    source_article_id: int | None,
    status: str,
    results: dict[str, Any],
    error: str | None,
    started: float,
) -> None:
    insert_with_tenant(
        WorkflowExecution,
        account_id,
        {
            "workflow_id": definition.workflow_id,
            "gen_article_id": gen_article_id,
            "source_article_id": source_article_id,
            "status": status,
            "step_results": results,
            "error": error,
            "execution_time_ms": int((time.perf_counter() - started) * 1000),
        },
    )


def available_variables(definition: WorkflowDefinition, step_index: int, account_id: UUID) -> list[dict[str, Any]]:
    available = [
        {"name": name, "displayName": display_name(name), "kind": "input"} for name in BASE_VARIABLES
    ]
    for step in definition.steps[: max(0, step_index)]:
        template = get_template(step.template_id, account_id)
        for item in template.output_fields:
            name = f"{step.name}.{item['name']}"
            available.append(
                {
                    "name": name,
                    "displayName": item.get("displayName") or display_name(name),
                    "kind": "step_output",
                    "dataType": item.get("type", "string"),
                }
            )
    return available


def step_variables(definition: WorkflowDefinition, account_id: UUID) -> list[dict[str, Any]]:
    """Variables each step's prompt uses; names rooted at an earlier step are ``step_output``."""
    steps: list[dict[str, Any]] = []
    prior: list[str] = []
    for step in definition.steps:
        template = get_template(step.template_id, account_id)
        steps.append(
            {
                "step": step.name,
                "templateId": step.template_id,
                "variables": [item.as_dict() for item in extract_variables(template.prompt, prior)],
            }
        )
        prior.append(step.name)
    return steps


def try_template(
    template_id: int,
    variables: Mapping[str, Any],
    account_id: UUID,
    *,
    version_id: int | None = None,
    execute: bool = False,
    gateway: LLMGateway | None = None,
) -> dict[str, Any]:
    """Render a template against caller-supplied variables, optionally calling the model."""
    template = get_template(template_id, account_id, version_id)
    prompt = substitute(template.prompt, variables)
    system = substitute(template.system_message, variables)
    rendered: dict[str, Any] = {
        "template": template.as_dict(),
        "prompt": prompt.text,
        "system": system.text,
        "missingVariables": sorted(set(prompt.missing) | set(system.missing)),
    }
    if not execute:
        return rendered
    generation = (gateway or get_gateway()).generate(
        template.category,
        prompt.text,
        system.text or None,
        template.parameters,
        account_id,
        template_id=template.template_id,
        version_id=template.version_id,
    )
    rendered["generation"] = generation.as_dict()
    rendered["output"] = parse_step_output(generation.text, template)
    return rendered
