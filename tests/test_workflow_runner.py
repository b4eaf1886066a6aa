from __future__ import annotations

import json

import pytest

from db.models import WorkflowExecution
from db.repository import find_many
from prompts.store import create_template
from workflows.conditions import conditions_hold, evaluate_condition, get_path
from workflows.runner import WorkflowStepError, available_variables, run_workflow, step_variables, try_template
from workflows.store import (
    WorkflowNotFoundError,
    WorkflowValidationError,
    create_workflow,
    default_workflow,
    get_workflow,
    resolve_workflow,
)

from conftest import LONG_BODY, count, seed_default_templates

ARTICLE = {"id": 1, "title": "Food bank opens", "body": LONG_BODY, "summary": "Families fed.", "url": "https://x.test/1"}


def _template(account_id, category, prompt, *, fields=None, required=None):
    io_schemas = {}
    if fields:
        io_schemas["output"] = {"fields": [{"name": name, "type": "string"} for name in fields]}
    if required:
        io_schemas["input"] = {"required": required}
    return create_template(
        {"name": category.title(), "category": category, "prompt": prompt, "io_schemas": io_schemas},
        account_id,
    ).template_id


def test_later_steps_see_earlier_outputs(tenant, fake_llm, gateway) -> None:
    blog = _template(tenant, "blog_post", "Blog for {{article.title}}", fields=["title", "body"])
    social = _template(tenant, "social_media", "Promote {{blog_post.title}}: {{article.url}}", fields=["posts"])
    workflow = create_workflow(
        {"name": "chain", "steps": [{"name": "blog_post", "template_id": blog}, {"name": "social", "template_id": social}]},
        tenant,
    )

    run = run_workflow(workflow, {"article": ARTICLE}, tenant, gateway=gateway)

    assert list(run["results"]) == ["blog_post", "social"]
    assert fake_llm.requests[0].prompt == "Blog for Food bank opens"
    assert fake_llm.requests[1].prompt == "Promote Hope on the High Street: https://x.test/1"
    assert run["results"]["blog_post"]["output"]["title"] == "Hope on the High Street"
    assert "_account_id" not in run["context"]
    assert run["context"]["blog_post"]["title"] == "Hope on the High Street"

    execution = find_many(WorkflowExecution, tenant)[0]
    assert execution.status == "completed"
    assert execution.workflow_id == workflow.workflow_id


def test_step_with_unmet_condition_is_skipped(tenant, fake_llm, gateway) -> None:
    blog = _template(tenant, "blog_post", "Blog {{article.title}}", fields=["title", "body"])
    video = _template(tenant, "video_script", "Video {{article.title}}", fields=["scripts"])
    workflow = create_workflow(
        {
            "name": "conditional",
            "steps": [
                {"name": "blog_post", "template_id": blog},
                {
                    "name": "video",
                    "template_id": video,
                    "conditions": [{"field": "article.category", "operator": "equals", "value": "video"}],
                },
            ],
        },
        tenant,
    )

    run = run_workflow(workflow, {"article": ARTICLE}, tenant, gateway=gateway)

    assert list(run["results"]) == ["blog_post"]
    assert len(fake_llm.requests) == 1


def test_missing_required_variable_fails_the_step(tenant, fake_llm, gateway) -> None:
    blog = _template(tenant, "blog_post", "Blog {{article.title}}", fields=["title", "body"], required=["article.summary"])
    workflow = create_workflow({"name": "strict", "steps": [{"name": "blog_post", "template_id": blog}]}, tenant)

    with pytest.raises(WorkflowStepError) as excinfo:
        run_workflow(workflow, {"article": {"title": "No summary"}}, tenant, gateway=gateway)

    assert excinfo.value.step_name == "blog_post"
    assert "article.summary" in excinfo.value.reason
    assert str(excinfo.value).startswith("Workflow failed at step blog_post:")
    assert fake_llm.requests == []
    assert find_many(WorkflowExecution, tenant)[0].status == "failed"


def test_continue_on_error_records_error_and_moves_on(tenant, fake_llm, gateway) -> None:
    first = _template(tenant, "blog_post", "Blog {{article.title}}", fields=["title", "body"], required=["custom.flag"])
    second = _template(tenant, "devotional", "Devotional on {{article.title}}")
    workflow = create_workflow(
        {
            "name": "tolerant",
            "steps": [
                {"name": "blog_post", "template_id": first, "continue_on_error": True},
                {"name": "devotional", "template_id": second},
            ],
        },
        tenant,
    )

    run = run_workflow(workflow, {"article": ARTICLE}, tenant, gateway=gateway)

    assert "error" in run["results"]["blog_post"]
    assert run["results"]["devotional"]["output"]["type"] == "devotional"
    assert run["results"]["devotional"]["output"]["content"].startswith("Acts 2:45")


def test_unparseable_output_is_kept_as_text(tenant, fake_llm, gateway) -> None:
    blog = _template(tenant, "blog_post", "Blog {{article.title}}", fields=["title", "body"])
    fake_llm.script = ["Sorry, I cannot produce JSON today."]

    run = run_workflow(resolve_workflow(tenant), {"article": ARTICLE}, tenant, gateway=gateway)

    assert run["results"]["blog_post"]["output"] == {"text": "Sorry, I cannot produce JSON today.", "parsed": False}
    assert run["results"]["blog_post"]["templateId"] == blog


def test_fenced_json_output_is_projected_onto_schema(tenant, fake_llm, gateway) -> None:
    _template(tenant, "blog_post", "Blog {{article.title}}", fields=["title"])
    fake_llm.script = ["```json\n" + json.dumps({"title": "Fenced", "ignored": 1}) + "\n```"]

    run = run_workflow(None, {"article": ARTICLE}, tenant, gateway=gateway)

    assert run["results"]["blog_post"]["output"] == {"title": "Fenced"}


def test_default_workflow_has_one_tolerant_step_per_category(tenant) -> None:
    _template(tenant, "blog_post", "Blog {{article.title}}")
    _template(tenant, "social_media", "Social {{article.title}}")

    definition = default_workflow(tenant)

    assert [step.name for step in definition.steps] == ["blog_post", "social_media"]
    assert all(step.continue_on_error for step in definition.steps)
    assert definition.workflow_id is None


def test_workflow_validation_rejects_bad_steps(tenant, other_tenant) -> None:
    foreign = _template(other_tenant, "blog_post", "Blog {{article.title}}")

    with pytest.raises(WorkflowValidationError) as excinfo:
        create_workflow(
            {
                "name": "",
                "steps": [
                    {"name": "1bad", "template_id": foreign},
                    {"name": "blog", "template_id": foreign},
                    {"name": "blog", "template_id": foreign},
                ],
            },
            tenant,
        )

    errors = excinfo.value.errors
    assert errors[0] == "missing required field: name"
    assert any("invalid name" in error for error in errors)
    assert any("unknown template" in error for error in errors)
    assert "duplicate step name: blog" in errors


def test_workflows_are_tenant_scoped(tenant, other_tenant) -> None:
    blog = _template(tenant, "blog_post", "Blog {{article.title}}")
    workflow = create_workflow({"name": "mine", "steps": [{"name": "blog_post", "template_id": blog}]}, tenant)

    assert get_workflow(workflow.workflow_id, tenant).name == "mine"
    with pytest.raises(WorkflowNotFoundError):
        get_workflow(workflow.workflow_id, other_tenant)


def test_available_variables_include_prior_step_fields(tenant) -> None:
    blog = _template(tenant, "blog_post", "Blog {{article.title}}", fields=["title", "body"])
    social = _template(tenant, "social_media", "Social {{blog_post.title}}", fields=["posts"])
    workflow = create_workflow(
        {"name": "chain", "steps": [{"name": "blog_post", "template_id": blog}, {"name": "social", "template_id": social}]},
        tenant,
    )

    first = {item["name"] for item in available_variables(workflow, 0, tenant)}
    second = {item["name"] for item in available_variables(workflow, 1, tenant)}

    assert "article.title" in first
    assert "blog_post.title" not in first
    assert {"blog_post.title", "blog_post.body"} <= second


def test_try_template_renders_without_calling_model(tenant, fake_llm) -> None:
    blog = _template(tenant, "blog_post", "Blog {{article.title}} for {{audience}}", fields=["title"])

    rendered = try_template(blog, {"article.title": "Hello"}, tenant)

    assert rendered["prompt"] == "Blog Hello for [Missing: audience]"
    assert rendered["missingVariables"] == ["audience"]
    assert fake_llm.requests == []
    assert count(WorkflowExecution) == 0


def test_condition_operators() -> None:
    context = {"article": {"tags": ["faith", "news"], "title": "Hope"}}

    assert get_path(context, "article.tags.1") == "news"
    assert evaluate_condition({"field": "article.tags", "operator": "contains", "value": "faith"}, context, {})
    assert evaluate_condition({"field": "article.title", "operator": "not_contains", "value": "war"}, context, {})
    assert evaluate_condition({"field": "article.author", "operator": "not_exists"}, context, {})
    assert not evaluate_condition({"field": "article.title", "operator": "equals", "value": "Fear"}, context, {})
    assert evaluate_condition({"field": "article.title", "operator": "matches", "value": "x"}, context, {})
    assert conditions_hold(None, context, {})


def test_step_variables_mark_earlier_step_outputs(tenant) -> None:
    seed_default_templates()

    by_step = {item["step"]: item["variables"] for item in step_variables(default_workflow(tenant), tenant)}

    social = {item["name"]: item for item in by_step["social_media"]}
    assert social["blog_post.title"]["kind"] == "step_output"
    assert (social["blog_post.title"]["sourceStep"], social["blog_post.title"]["sourceField"]) == ("blog_post", "title")
    assert social["article.title"]["kind"] == "input"
    assert all(item["kind"] != "step_output" for item in by_step["blog_post"])


def test_reference_to_a_later_step_is_not_a_step_output(tenant) -> None:
    social = _template(tenant, "social_media", "Social {{blog_post.title}}", fields=["posts"])
    blog = _template(tenant, "blog_post", "Blog {{article.title}}", fields=["title"])
    workflow = create_workflow(
        {"name": "reversed", "steps": [{"name": "social", "template_id": social}, {"name": "blog_post", "template_id": blog}]},
        tenant,
    )

    first = step_variables(workflow, tenant)[0]

    assert first["step"] == "social"
    assert first["variables"][0]["kind"] == "custom"
