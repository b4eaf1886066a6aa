from __future__ import annotations

import pytest

from db.models import PromptVersion
from db.repository import GLOBAL_SCOPE
from prompts.store import (
    TemplateNotFoundError,
    TemplateValidationError,
    create_template,
    create_version,
    deactivate_template,
    get_current_by_category,
    get_template,
    list_categories,
    list_templates,
    list_versions,
    set_current_version,
    update_template,
    usage_stats,
    validate_template,
)

from conftest import count, seed_default_templates


def _blog(**overrides):
    data = {
        "name": "Blog",
        "category": "blog_post",
        "prompt": "Write about {{article.title}}.",
        "io_schemas": {"output": {"fields": [{"name": "body", "type": "text"}]}},
    }
    data.update(overrides)
    return data


def test_create_template_starts_with_current_version_one(tenant) -> None:
    created = create_template(_blog(), tenant)

    assert created.version_number == 1
    assert created.is_current is True
    assert created.provenance == "tenant"
    assert [v["name"] for v in created.variables] == ["article.title"]
    assert count(PromptVersion, template_id=created.template_id, is_current=True) == 1


def test_new_version_is_not_current_until_flipped(tenant) -> None:
    created = create_template(_blog(), tenant)

    v2 = create_version(created.template_id, tenant, prompt="Second {{article.summary}}")
    assert v2.version_number == 2
    assert v2.is_current is False
    assert get_template(created.template_id, tenant).version_number == 1

    set_current_version(created.template_id, v2.version_id, tenant)

    current = get_template(created.template_id, tenant)
    assert current.version_id == v2.version_id
    assert current.prompt == "Second {{article.summary}}"
    assert count(PromptVersion, template_id=created.template_id, is_current=True) == 1


def test_flip_back_to_older_version_keeps_single_current(tenant) -> None:
    created = create_template(_blog(), tenant)
    v2 = create_version(created.template_id, tenant, prompt="v2", make_current=True)
    v3 = create_version(created.template_id, tenant, prompt="v3", make_current=True)
    assert get_template(created.template_id, tenant).version_id == v3.version_id

    set_current_version(created.template_id, created.version_id, tenant)

    versions = list_versions(created.template_id, tenant)
    assert [v["version_number"] for v in versions] == [3, 2, 1]
    assert [v["is_current"] for v in versions] == [False, False, True]
    assert get_template(created.template_id, tenant, version_id=v2.version_id).prompt == "v2"


def test_update_template_appends_version_only_when_prompt_changes(tenant) -> None:
    created = create_template(_blog(), tenant)

    renamed = update_template(created.template_id, {"name": "Renamed"}, tenant)
    assert renamed.name == "Renamed"
    assert renamed.version_number == 1

    changed = update_template(created.template_id, {"prompt": "New {{article.url}}"}, tenant, make_current=True)
    assert changed.version_number == 2
    assert get_template(created.template_id, tenant).prompt == "New {{article.url}}"


def test_tenant_template_shadows_global_for_category(tenant, other_tenant) -> None:
    create_template(_blog(name="Global blog"), GLOBAL_SCOPE)
    create_template(_blog(name="Tenant blog"), tenant)

    mine = get_current_by_category("blog_post", tenant)
    theirs = get_current_by_category("blog_post", other_tenant)

    assert (mine.name, mine.provenance) == ("Tenant blog", "tenant")
    assert (theirs.name, theirs.provenance) == ("Global blog", "global")


def test_missing_category_raises_not_found(tenant) -> None:
    with pytest.raises(TemplateNotFoundError):
        get_current_by_category("podcast", tenant)


def test_deactivated_template_is_not_resolved_by_category(tenant) -> None:
    created = create_template(_blog(), tenant)
    deactivate_template(created.template_id, tenant)

    with pytest.raises(TemplateNotFoundError):
        get_current_by_category("blog_post", tenant)
    assert list_categories(tenant) == []


def test_other_tenant_cannot_see_or_mutate_template(tenant, other_tenant) -> None:
    created = create_template(_blog(), tenant)

    with pytest.raises(TemplateNotFoundError):
        get_template(created.template_id, other_tenant)
    with pytest.raises(TemplateNotFoundError):
        create_version(created.template_id, other_tenant, prompt="hijack")
    assert list_templates(other_tenant) == []


def test_tenant_cannot_mutate_global_template(tenant) -> None:
    created = create_template(_blog(), GLOBAL_SCOPE)

    assert get_template(created.template_id, tenant).provenance == "global"
    with pytest.raises(TemplateNotFoundError):
        update_template(created.template_id, {"name": "Mine now"}, tenant)


def test_invalid_variable_name_is_rejected(tenant) -> None:
    with pytest.raises(TemplateValidationError) as excinfo:
        create_template(_blog(prompt="Hello {{bad name!}}"), tenant)

    assert "invalid variable name" in excinfo.value.errors[0]


def test_validate_template_reports_every_problem() -> None:
    errors = validate_template(
        {"name": "", "category": "x", "io_schemas": {"output": {"fields": [{"name": "a", "type": "blob"}]}}}
    )

    assert "missing required field: name" in errors
    assert "missing required field: prompt" in errors
    assert "unsupported output field type: blob" in errors


def test_seeded_templates_cover_every_category() -> None:
    seeded = seed_default_templates()

    assert list(seeded) == [
        "blog_post",
        "social_media",
        "video_script",
        "prayer_points",
        "email_newsletter",
        "devotional",
        "sermon_notes",
        "image_prompt",
    ]
    assert list_categories(GLOBAL_SCOPE) == list(seeded)


def test_usage_stats_groups_log_rows_by_version(tenant, gateway) -> None:
    created = create_template(_blog(), tenant)
    v2 = create_version(created.template_id, tenant, prompt="v2", make_current=True)
    for version_id in (created.version_id, v2.version_id, v2.version_id):
        gateway.generate(
            "blog_post", "prompt", None, {}, tenant, template_id=created.template_id, version_id=version_id
        )

    stats = usage_stats(created.template_id, tenant)

    assert stats["total_calls"] == 3
    calls = {row["version_id"]: row["calls"] for row in stats["versions"]}
    assert calls == {created.version_id: 1, v2.version_id: 2}
