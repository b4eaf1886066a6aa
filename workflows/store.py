"""Workflow definitions: CRUD, validation and the implicit default workflow."""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.cache import get_cache, invalidate_all
from core.logger import get_logger
from db.models import Workflow
from db.repository import GLOBAL_SCOPE, tenant_clause, transaction
from prompts.store import (
    TemplateNotFoundError,
    get_current_by_category_in_transaction,
    get_template_in_transaction,
    list_categories,
)

logger = get_logger(__name__)

STEP_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


class WorkflowValidationError(ValueError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class WorkflowNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class WorkflowStep:
    name: str
    template_id: int
    order: int
    conditions: tuple[dict[str, Any], ...] = ()
    continue_on_error: bool = False
    display_name: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "template_id": self.template_id,
            "order": self.order,
            "conditions": [dict(item) for item in self.conditions],
            "continue_on_error": self.continue_on_error,
            "display_name": self.display_name,
        }


@dataclass(frozen=True)
class WorkflowDefinition:
    workflow_id: int | None
    account_id: UUID | None
    name: str
    steps: tuple[WorkflowStep, ...]
    description: str | None = None
    input_sources: list[Any] = field(default_factory=list)
    output_destinations: list[Any] = field(default_factory=list)
    active: bool = True
    provenance: str = "tenant"

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.workflow_id,
            "account_id": str(self.account_id) if self.account_id else None,
            "name": self.name,
            "description": self.description,
            "steps": [step.as_dict() for step in self.steps],
            "input_sources": self.input_sources,
            "output_destinations": self.output_destinations,
            "active": self.active,
            "provenance": self.provenance,
        }


def _normalize_steps(session: Session, raw_steps: Any, account_id) -> tuple[list[dict[str, Any]], list[str]]:
    errors: list[str] = []
    if not isinstance(raw_steps, list) or not raw_steps:
        return [], ["steps must be a non-empty list"]
    seen: set[str] = set()
    normalized: list[dict[str, Any]] = []
    for index, raw in enumerate(raw_steps):
        if not isinstance(raw, dict):
            errors.append(f"step {index} must be an object")
            continue
        name = str(raw.get("name") or "").strip()
        if not STEP_NAME_PATTERN.match(name):
            errors.append(f"step {index} has an invalid name: {name!r}")
            continue
        if name in seen:
            errors.append(f"duplicate step name: {name}")
            continue
        seen.add(name)
        template_id = raw.get("template_id", raw.get("templateId"))
        try:
            template_id = int(template_id)
            get_template_in_transaction(session, template_id, account_id)
        except (TypeError, ValueError):
            errors.append(f"step {name} is missing template_id")
            continue
        except TemplateNotFoundError:
            errors.append(f"step {name} references unknown template {template_id}")
            continue
        conditions = raw.get("conditions") or []
        if not isinstance(conditions, list) or any(
            not isinstance(item, dict) or not item.get("field") or not item.get("operator")
            for item in conditions
        ):
            errors.append(f"step {name} has malformed conditions")
            continue
        normalized.append(
            {
                "name": name,
                "template_id": template_id,
                "order": int(raw.get("order", index)),
                "conditions": conditions,
                "continue_on_error": bool(raw.get("continue_on_error", raw.get("continueOnError", False))),
                "display_name": raw.get("display_name") or raw.get("displayName"),
            }
        )
    normalized.sort(key=lambda item: item["order"])
    return normalized, errors


def _definition(row: Workflow, provenance: str) -> WorkflowDefinition:
    steps = sorted(row.steps or [], key=lambda item: item.get("order", 0))
    return WorkflowDefinition(
        workflow_id=row.id,
        account_id=row.account_id,
        name=row.name,
        description=row.description,
        steps=tuple(
            WorkflowStep(
                name=item["name"],
                template_id=int(item["template_id"]),
                order=int(item.get("order", index)),
                conditions=tuple(item.get("conditions") or ()),
                continue_on_error=bool(item.get("continue_on_error", False)),
                display_name=item.get("display_name"),
            )
            for index, item in enumerate(steps)
        ),
        input_sources=list(row.input_sources or []),
        output_destinations=list(row.output_destinations or []),
        active=row.active,
        provenance=provenance,
    )


def create_workflow(data: dict[str, Any], account_id) -> WorkflowDefinition:
    if account_id is None:
        raise WorkflowValidationError(["tenant is required"])
    name = str((data or {}).get("name") or "").strip()
    with transaction() as session:
        steps, errors = _normalize_steps(session, (data or {}).get("steps"), account_id)
        if not name:
            errors.insert(0, "missing required field: name")
        if errors:
            raise WorkflowValidationError(errors)
        row = Workflow(
            account_id=None if account_id is GLOBAL_SCOPE else account_id,
            name=name,
            description=data.get("description"),
            steps=steps,
            input_sources=data.get("input_sources") or [],
            output_destinations=data.get("output_destinations") or [],
            active=bool(data.get("active", True)),
        )
        session.add(row)
        session.flush()
        definition = _definition(row, "global" if row.account_id is None else "tenant")
    invalidate_all()
    logger.info("workflow_created", workflow_id=definition.workflow_id, steps=len(definition.steps))
    return definition


def _owned_workflow(session: Session, workflow_id: int, account_id) -> Workflow:
    stmt = select(Workflow).where(Workflow.id == workflow_id, tenant_clause(Workflow, account_id))
    row = session.execute(stmt).scalars().first()
    if row is None:
        raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
    return row


def update_workflow(workflow_id: int, data: dict[str, Any], account_id) -> WorkflowDefinition:
    with transaction() as session:
        row = _owned_workflow(session, workflow_id, account_id)
        if "steps" in data:
            steps, errors = _normalize_steps(session, data["steps"], account_id)
            if errors:
                raise WorkflowValidationError(errors)
            row.steps = steps
        if "name" in data:
            name = str(data["name"] or "").strip()
            if not name:
                raise WorkflowValidationError(["missing required field: name"])
            row.name = name
        for key in ("description", "input_sources", "output_destinations", "active"):
            if key in data:
                setattr(row, key, data[key])
        session.flush()
        definition = _definition(row, "global" if row.account_id is None else "tenant")
    invalidate_all()
    logger.info("workflow_updated", workflow_id=workflow_id)
    return definition


def deactivate_workflow(workflow_id: int, account_id) -> None:
    with transaction() as session:
        row = _owned_workflow(session, workflow_id, account_id)
        row.active = False
    invalidate_all()
    logger.info("workflow_deactivated", workflow_id=workflow_id)


def get_workflow_in_transaction(session: Session, workflow_id: int, account_id) -> WorkflowDefinition:
    scopes = [(account_id, "tenant")] if account_id is not GLOBAL_SCOPE else []
    scopes.append((GLOBAL_SCOPE, "global"))
    for scope, provenance in scopes:
        stmt = select(Workflow).where(
            Workflow.id == workflow_id,
            Workflow.active.is_(True),
            tenant_clause(Workflow, scope),
        )
        row = session.execute(stmt).scalars().first()
        if row is not None:
            return _definition(row, provenance)
    raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")


def get_workflow(workflow_id: int, account_id) -> WorkflowDefinition:
    cache = get_cache("workflows")

    def _load() -> WorkflowDefinition:
        with transaction() as session:
            return get_workflow_in_transaction(session, workflow_id, account_id)

    return cache.get_or_load((workflow_id, str(account_id)), _load)


def list_workflows(account_id) -> list[dict[str, Any]]:
    with transaction() as session:
        rows: list[dict[str, Any]] = []
        scopes = [(account_id, "tenant")] if account_id is not GLOBAL_SCOPE else []
        scopes.append((GLOBAL_SCOPE, "global"))
        for scope, provenance in scopes:
            stmt = (
                select(Workflow)
                .where(Workflow.active.is_(True), tenant_clause(Workflow, scope))
                .order_by(Workflow.name)
            )
            rows.extend(_definition(row, provenance).as_dict() for row in session.execute(stmt).scalars().all())
        return rows


def default_workflow(account_id) -> WorkflowDefinition:
    """One step per active category, each using that category's current template."""
    categories = list_categories(account_id)
    steps: list[WorkflowStep] = []
    with transaction() as session:
        for category in categories:
            if not STEP_NAME_PATTERN.match(category):
                logger.warning("default_workflow_category_skipped", category=category)
                continue
            template = get_current_by_category_in_transaction(session, category, account_id)
            steps.append(
                WorkflowStep(
                    name=category,
                    template_id=template.template_id,
                    order=len(steps),
                    continue_on_error=True,
                    display_name=template.name,
                )
            )
    return WorkflowDefinition(
        workflow_id=None,
        account_id=None if account_id is GLOBAL_SCOPE else account_id,
        name="default",
        steps=tuple(steps),
        description="Implicit workflow built from the current template of every category",
        provenance="default",
    )


def resolve_workflow(account_id: UUID, workflow_id: int | None = None) -> WorkflowDefinition:
    if workflow_id is None:
        from accounts.settings import get_settings

        configured = get_settings(account_id, "generation").get("workflow_id")
        workflow_id = int(configured) if configured else None
    if workflow_id is not None:
        return get_workflow(workflow_id, account_id)
    return default_workflow(account_id)
