"""Prompt templates and their append-only versions.

Templates with ``account_id IS NULL`` are global. Reads resolve in two steps:
the tenant's own row first, then the global row, and report which one won in
``provenance``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy import case, desc, func, select, update as sa_update
from sqlalchemy.orm import Session

from core.cache import get_cache, invalidate_all
from core.logger import get_logger
from db.models import LLMResponseLog, PromptTemplate, PromptVersion
from db.repository import GLOBAL_SCOPE, tenant_clause, transaction

from .variables import extract_variables, invalid_names

logger = get_logger(__name__)

REQUIRED_FIELDS = ("name", "category", "prompt")
FIELD_TYPES = {"string", "text", "number", "integer", "boolean", "array", "object"}


class TemplateValidationError(ValueError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class TemplateNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class ResolvedTemplate:
    template_id: int
    account_id: UUID | None
    name: str
    category: str
    description: str | None
    active: bool
    ui_config: dict[str, Any]
    io_schemas: dict[str, Any]
    version_id: int
    version_number: int
    prompt: str
    system_message: str | None
    parameters: dict[str, Any]
    is_current: bool
    provenance: str
    variables: list[dict[str, Any]] = field(default_factory=list)

    @property
    def output_fields(self) -> list[dict[str, Any]]:
        output = (self.io_schemas or {}).get("output") or {}
        fields = output.get("fields") if isinstance(output, dict) else None
        return [item for item in fields or [] if isinstance(item, dict) and item.get("name")]

    @property
    def required_inputs(self) -> list[str]:
        schema = (self.io_schemas or {}).get("input") or {}
        required = schema.get("required") if isinstance(schema, dict) else None
        return [str(name) for name in required or []]

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["account_id"] = str(self.account_id) if self.account_id else None
        return payload


def validate_template(data: dict[str, Any], *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not isinstance(data, dict):
        return ["template must be an object"]
    if not partial:
        for name in REQUIRED_FIELDS:
            value = data.get(name)
            if not isinstance(value, str) or not value.strip():
                errors.append(f"missing required field: {name}")
    for key in ("prompt", "system_message"):
        bad = invalid_names(data.get(key))
        if bad:
            errors.append(f"invalid variable name(s) in {key}: {', '.join(bad)}")
    parameters = data.get("parameters")
    if parameters is not None and not isinstance(parameters, dict):
        errors.append("parameters must be an object")
    io_schemas = data.get("io_schemas")
    if io_schemas is not None:
        if not isinstance(io_schemas, dict):
            errors.append("io_schemas must be an object")
        else:
            output = io_schemas.get("output") or {}
            fields = output.get("fields", []) if isinstance(output, dict) else None
            if not isinstance(fields, list):
                errors.append("io_schemas.output.fields must be a list")
            else:
                for item in fields:
                    if not isinstance(item, dict) or not item.get("name"):
                        errors.append("output field entries need a name")
                    elif item.get("type", "string") not in FIELD_TYPES:
                        errors.append(f"unsupported output field type: {item.get('type')}")
            schema_input = io_schemas.get("input") or {}
            if not isinstance(schema_input, dict) or not isinstance(schema_input.get("required", []), list):
                errors.append("io_schemas.input.required must be a list")
    return errors


def _raise_if_invalid(data: dict[str, Any], *, partial: bool = False) -> None:
    errors = validate_template(data, partial=partial)
    if errors:
        raise TemplateValidationError(errors)


def _resolved(template: PromptTemplate, version: PromptVersion, provenance: str) -> ResolvedTemplate:
    return ResolvedTemplate(
        template_id=template.id,
        account_id=template.account_id,
        name=template.name,
        category=template.category,
        description=template.description,
        active=template.active,
        ui_config=template.ui_config or {},
        io_schemas=template.io_schemas or {},
        version_id=version.id,
        version_number=version.version_number,
        prompt=version.prompt,
        system_message=version.system_message,
        parameters=version.parameters or {},
        is_current=version.is_current,
        provenance=provenance,
        variables=[v.as_dict() for v in extract_variables(version.prompt)],
    )


def _current_version(session: Session, template_id: int) -> PromptVersion | None:
    stmt = select(PromptVersion).where(
        PromptVersion.template_id == template_id, PromptVersion.is_current.is_(True)
    )
    return session.execute(stmt).scalars().first()


def _owned_template(session: Session, template_id: int, account_id) -> PromptTemplate:
    stmt = select(PromptTemplate).where(
        PromptTemplate.id == template_id, tenant_clause(PromptTemplate, account_id)
    )
    template = session.execute(stmt).scalars().first()
    if template is None:
        raise TemplateNotFoundError(f"Template not found: {template_id}")
    return template


def _visible_template(session: Session, template_id: int, account_id) -> tuple[PromptTemplate, str]:
    if account_id is not GLOBAL_SCOPE:
        stmt = select(PromptTemplate).where(
            PromptTemplate.id == template_id, tenant_clause(PromptTemplate, account_id)
        )
        template = session.execute(stmt).scalars().first()
        if template is not None:
            return template, "tenant"
    stmt = select(PromptTemplate).where(
        PromptTemplate.id == template_id, tenant_clause(PromptTemplate, GLOBAL_SCOPE)
    )
    template = session.execute(stmt).scalars().first()
    if template is None:
        raise TemplateNotFoundError(f"Template not found: {template_id}")
    return template, "global"


def _next_version_number(session: Session, template_id: int) -> int:
    current = session.execute(
        select(func.max(PromptVersion.version_number)).where(PromptVersion.template_id == template_id)
    ).scalar_one()
    return int(current or 0) + 1


def flip_current_version(session: Session, template_id: int, version_id: int) -> None:
    """Clear the old current row, then set the new one. Caller owns the transaction."""
    session.execute(
        sa_update(PromptVersion)
        .where(
            PromptVersion.template_id == template_id,
            PromptVersion.is_current.is_(True),
            PromptVersion.id != version_id,
        )
        .values(is_current=False)
    )
    session.flush()
    session.execute(
        sa_update(PromptVersion)
        .where(PromptVersion.template_id == template_id, PromptVersion.id == version_id)
        .values(is_current=True)
    )
    session.flush()


def create_template_in_transaction(session: Session, data: dict[str, Any], account_id) -> ResolvedTemplate:
    _raise_if_invalid(data)
    if account_id is None:
        raise TemplateValidationError(["tenant is required"])
    template = PromptTemplate(
        account_id=None if account_id is GLOBAL_SCOPE else account_id,
        name=data["name"].strip(),
        category=data["category"].strip(),
        description=data.get("description"),
        active=bool(data.get("active", True)),
        ui_config=data.get("ui_config") or {},
        io_schemas=data.get("io_schemas") or {},
    )
    session.add(template)
    session.flush()
    version = PromptVersion(
        template_id=template.id,
        version_number=1,
        prompt=data["prompt"],
        system_message=data.get("system_message"),
        parameters=data.get("parameters") or {},
        notes=data.get("notes") or "Initial version",
        is_current=True,
    )
    session.add(version)
    session.flush()
    return _resolved(template, version, "global" if template.account_id is None else "tenant")


def create_template(data: dict[str, Any], account_id) -> ResolvedTemplate:
    with transaction() as session:
        resolved = create_template_in_transaction(session, data, account_id)
    invalidate_all()
    logger.info(
        "template_created",
        template_id=resolved.template_id,
        category=resolved.category,
        variables=len(resolved.variables),
    )
    return resolved


def create_version(
    template_id: int,
    account_id,
    *,
    prompt: str,
    system_message: str | None = None,
    parameters: dict[str, Any] | None = None,
    notes: str | None = None,
    make_current: bool = False,
) -> ResolvedTemplate:
    _raise_if_invalid({"prompt": prompt, "system_message": system_message, "parameters": parameters}, partial=True)
    if not isinstance(prompt, str) or not prompt.strip():
        raise TemplateValidationError(["missing required field: prompt"])
    with transaction() as session:
        template = _owned_template(session, template_id, account_id)
        version = PromptVersion(
            template_id=template.id,
            version_number=_next_version_number(session, template.id),
            prompt=prompt,
            system_message=system_message,
            parameters=parameters or {},
            notes=notes,
            is_current=False,
        )
        session.add(version)
        session.flush()
        if make_current:
            flip_current_version(session, template.id, version.id)
            session.refresh(version)
        resolved = _resolved(template, version, "global" if template.account_id is None else "tenant")
    invalidate_all()
    logger.info(
        "template_version_created",
        template_id=template_id,
        version_number=resolved.version_number,
        make_current=make_current,
    )
    return resolved


def update_template(
    template_id: int,
    data: dict[str, Any],
    account_id,
    *,
    make_current: bool = False,
) -> ResolvedTemplate:
    """Update template metadata in place and append a version when prompt fields change."""
    _raise_if_invalid(data, partial=True)
    with transaction() as session:
        template = _owned_template(session, template_id, account_id)
        for key in ("name", "category", "description", "ui_config", "io_schemas", "active"):
            if key in data and data[key] is not None:
                setattr(template, key, data[key])
        current = _current_version(session, template.id)
        if any(key in data for key in ("prompt", "system_message", "parameters")):
            version = PromptVersion(
                template_id=template.id,
                version_number=_next_version_number(session, template.id),
                prompt=data.get("prompt") or (current.prompt if current else ""),
                system_message=data.get("system_message", current.system_message if current else None),
                parameters=data.get("parameters", current.parameters if current else {}) or {},
                notes=data.get("notes"),
                is_current=False,
            )
            if not version.prompt:
                raise TemplateValidationError(["missing required field: prompt"])
            session.add(version)
            session.flush()
            if make_current:
                flip_current_version(session, template.id, version.id)
                session.refresh(version)
        else:
            version = current
        session.flush()
        resolved = _resolved(template, version, "global" if template.account_id is None else "tenant")
    invalidate_all()
    logger.info("template_updated", template_id=template_id, version_number=resolved.version_number)
    return resolved


def set_current_version(template_id: int, version_id: int, account_id) -> ResolvedTemplate:
    with transaction() as session:
        template = _owned_template(session, template_id, account_id)
        version = session.get(PromptVersion, version_id)
        if version is None or version.template_id != template.id:
            raise TemplateNotFoundError(f"Version not found: {version_id}")
        flip_current_version(session, template.id, version.id)
        session.refresh(version)
        resolved = _resolved(template, version, "global" if template.account_id is None else "tenant")
    invalidate_all()
    logger.info("template_current_version_set", template_id=template_id, version_id=version_id)
    return resolved


def deactivate_template(template_id: int, account_id) -> None:
    with transaction() as session:
        template = _owned_template(session, template_id, account_id)
        template.active = False
    invalidate_all()
    logger.info("template_deactivated", template_id=template_id)


def get_template_in_transaction(
    session: Session,
    template_id: int,
    account_id,
    version_id: int | None = None,
) -> ResolvedTemplate:
    template, provenance = _visible_template(session, template_id, account_id)
    if version_id is not None:
        version = session.get(PromptVersion, version_id)
        if version is None or version.template_id != template.id:
            raise TemplateNotFoundError(f"Version not found: {version_id}")
    else:
        version = _current_version(session, template.id)
        if version is None:
            raise TemplateNotFoundError(f"Template has no current version: {template_id}")
    return _resolved(template, version, provenance)


def get_template(template_id: int, account_id, version_id: int | None = None) -> ResolvedTemplate:
    cache = get_cache("templates")
    key = ("id", template_id, str(account_id), version_id)

    def _load() -> ResolvedTemplate:
        with transaction() as session:
            return get_template_in_transaction(session, template_id, account_id, version_id)

    return cache.get_or_load(key, _load)


def _active_for_category(session: Session, category: str, scope) -> PromptTemplate | None:
    stmt = (
        select(PromptTemplate)
        .where(
            PromptTemplate.category == category,
            PromptTemplate.active.is_(True),
            tenant_clause(PromptTemplate, scope),
        )
        .order_by(desc(PromptTemplate.updated_at), desc(PromptTemplate.id))
        .limit(1)
    )
    return session.execute(stmt).scalars().first()


def get_current_by_category_in_transaction(session: Session, category: str, account_id) -> ResolvedTemplate:
    template = None
    provenance = "tenant"
    if account_id is not GLOBAL_SCOPE:
        template = _active_for_category(session, category, account_id)
    if template is None:
        template = _active_for_category(session, category, GLOBAL_SCOPE)
        provenance = "global"
    if template is None:
        raise TemplateNotFoundError(f"No active template for category: {category}")
    version = _current_version(session, template.id)
    if version is None:
        raise TemplateNotFoundError(f"Template has no current version: {template.id}")
    return _resolved(template, version, provenance)


def get_current_by_category(category: str, account_id) -> ResolvedTemplate:
    cache = get_cache("templates")
    key = ("category", category, str(account_id))

    def _load() -> ResolvedTemplate:
        with transaction() as session:
            return get_current_by_category_in_transaction(session, category, account_id)

    return cache.get_or_load(key, _load)


def list_categories(account_id) -> list[str]:
    """Active categories visible to the tenant, in first-seen order of template id."""
    visible = tenant_clause(PromptTemplate, GLOBAL_SCOPE)
    if account_id is not GLOBAL_SCOPE:
        visible = visible | tenant_clause(PromptTemplate, account_id)
    with transaction() as session:
        stmt = (
            select(PromptTemplate.category, func.min(PromptTemplate.id))
            .where(PromptTemplate.active.is_(True), visible)
            .group_by(PromptTemplate.category)
            .order_by(func.min(PromptTemplate.id))
        )
        return [row[0] for row in session.execute(stmt).all()]


def list_templates(account_id, category: str | None = None, include_inactive: bool = False) -> list[dict[str, Any]]:
    with transaction() as session:
        rows: list[dict[str, Any]] = []
        scopes = [(account_id, "tenant")] if account_id is not GLOBAL_SCOPE else []
        scopes.append((GLOBAL_SCOPE, "global"))
        for scope, provenance in scopes:
            stmt = select(PromptTemplate).where(tenant_clause(PromptTemplate, scope))
            if category:
                stmt = stmt.where(PromptTemplate.category == category)
            if not include_inactive:
                stmt = stmt.where(PromptTemplate.active.is_(True))
            stmt = stmt.order_by(PromptTemplate.category, PromptTemplate.name)
            for template in session.execute(stmt).scalars().all():
                version = _current_version(session, template.id)
                if version is None:
                    continue
                rows.append(_resolved(template, version, provenance).as_dict())
        return rows


def list_versions(template_id: int, account_id) -> list[dict[str, Any]]:
    with transaction() as session:
        template, _provenance = _visible_template(session, template_id, account_id)
        stmt = (
            select(PromptVersion)
            .where(PromptVersion.template_id == template.id)
            .order_by(desc(PromptVersion.version_number))
        )
        return [
            {
                "id": version.id,
                "template_id": version.template_id,
                "version_number": version.version_number,
                "prompt": version.prompt,
                "system_message": version.system_message,
                "parameters": version.parameters or {},
                "notes": version.notes,
                "is_current": version.is_current,
                "created_at": version.created_at,
            }
            for version in session.execute(stmt).scalars().all()
        ]


def usage_stats(template_id: int, account_id) -> dict[str, Any]:
    with transaction() as session:
        template, _provenance = _visible_template(session, template_id, account_id)
        stmt = (
            select(
                LLMResponseLog.version_id,
                func.count(),
                func.coalesce(func.sum(LLMResponseLog.tokens_in), 0),
                func.coalesce(func.sum(LLMResponseLog.tokens_out), 0),
                func.avg(LLMResponseLog.generation_time_ms),
                func.sum(case((LLMResponseLog.is_truncated.is_(True), 1), else_=0)),
            )
            .where(LLMResponseLog.template_id == template.id)
            .group_by(LLMResponseLog.version_id)
        )
        if account_id is not GLOBAL_SCOPE:
            stmt = stmt.where(tenant_clause(LLMResponseLog, account_id))
        per_version = []
        total = 0
        for version_id, calls, tokens_in, tokens_out, avg_ms, truncated in session.execute(stmt).all():
            total += int(calls)
            per_version.append(
                {
                    "version_id": version_id,
                    "calls": int(calls),
                    "tokens_in": int(tokens_in or 0),
                    "tokens_out": int(tokens_out or 0),
                    "avg_generation_time_ms": float(avg_ms) if avg_ms is not None else None,
                    "truncated": int(truncated or 0),
                }
            )
        return {"template_id": template.id, "total_calls": total, "versions": per_version}
