from __future__ import annotations

import json
from uuid import uuid4

from accounts.settings import update_settings
from collaborators.scraper import ScrapedArticle, set_scraper
from db.models import (
    Content,
    GeneratedArticle,
    LLMResponseLog,
    NewsSource,
    SourceArticle,
    Tenant,
    WorkflowExecution,
)
from db.repository import find_many, find_one, insert_with_tenant, transaction
from pipeline import queue
from pipeline.jobs import execute_job
from pipeline.worker import Worker
from prompts.store import create_template, create_version, set_current_version
from workflows.store import create_workflow

from conftest import LONG_BODY, count, make_article, seed_default_templates, transient_error


def _run_all(gateway) -> int:
    return Worker("test-worker", gateway=gateway).run(burst=True)


def _blog_template(account_id, prompt: str = "Blog about {{article.title}}") -> int:
    return create_template(
        {
            "name": "Blog",
            "category": "blog_post",
            "prompt": prompt,
            "io_schemas": {"output": {"fields": [{"name": "title"}, {"name": "body", "type": "text"}]}},
        },
        account_id,
    ).template_id


def test_single_story_generates_every_category(tenant, fake_llm, gateway) -> None:
    seeded = seed_default_templates()
    make_article(tenant, id=371)
    job_id = queue.enqueue("content_generation", {"specificStoryId": 371}, tenant)

    assert _run_all(gateway) == 1

    job = queue.get_job(job_id, tenant)
    assert job["status"] == "completed"
    assert job["progress_pct"] == 100
    assert job["results"]["processed"] == [371]
    generated = find_many(GeneratedArticle, tenant)
    assert [row.based_on_article_id for row in generated] == [371]
    assert generated[0].status == "review_pending"
    assert generated[0].title == "Hope on the High Street"
    contents = find_many(Content, tenant)
    assert sorted(row.prompt_category for row in contents) == sorted(seeded)
    assert {row.based_on_gen_article_id for row in contents} == {generated[0].id}
    assert find_one(SourceArticle, tenant, id=371).status == "processed"
    assert count(LLMResponseLog, account_id=tenant) == len(seeded)


def test_article_without_body_is_skipped_without_llm_calls(tenant, fake_llm, gateway) -> None:
    seed_default_templates()
    article_id = make_article(tenant, body="")
    job_id = queue.enqueue("content_generation", {"specificStoryId": article_id}, tenant)

    _run_all(gateway)

    job = queue.get_job(job_id, tenant)
    assert job["status"] == "completed"
    assert job["results"]["skipped"] == [{"articleId": article_id, "reason": "no_content", "issues": ["no_content"]}]
    assert count(LLMResponseLog) == 0
    assert count(GeneratedArticle) == 0


def test_transient_provider_errors_are_retried_inside_the_gateway(tenant, fake_llm, gateway, sleeps) -> None:
    _blog_template(tenant)
    article_id = make_article(tenant)
    fake_llm.script = [transient_error(), transient_error()]
    job_id = queue.enqueue("content_generation", {"specificStoryId": article_id}, tenant)

    _run_all(gateway)

    job = queue.get_job(job_id, tenant)
    assert (job["status"], job["retry_count"]) == ("completed", 0)
    logs = find_many(LLMResponseLog, tenant, order_by=LLMResponseLog.id)
    assert [row.attempt for row in logs] == [1, 2, 3]
    assert sleeps == [0.25, 1.0]
    execution = find_many(WorkflowExecution, tenant)[0]
    assert execution.step_results["blog_post"]["metadata"]["logId"] == logs[2].id


def test_tolerant_middle_step_failure_still_completes(tenant, fake_llm, gateway) -> None:
    blog = _blog_template(tenant)
    devotional = create_template(
        {
            "name": "Devotional",
            "category": "devotional",
            "prompt": "Reflect on {{article.title}} for {{audience.segment}}",
            "io_schemas": {"input": {"required": ["audience.segment"]}},
        },
        tenant,
    ).template_id
    social = create_template(
        {
            "name": "Social",
            "category": "social_media",
            "prompt": "Promote {{blog_post.title}}",
            "io_schemas": {"output": {"fields": [{"name": "posts", "type": "array"}]}},
        },
        tenant,
    ).template_id
    workflow = create_workflow(
        {
            "name": "three steps",
            "steps": [
                {"name": "blog_post", "template_id": blog},
                {"name": "devotional", "template_id": devotional, "continue_on_error": True},
                {"name": "social", "template_id": social},
            ],
        },
        tenant,
    )
    article_id = make_article(tenant)
    job_id = queue.enqueue(
        "content_generation", {"specificStoryId": article_id, "workflowId": workflow.workflow_id}, tenant
    )

    _run_all(gateway)

    job = queue.get_job(job_id, tenant)
    assert job["status"] == "completed"
    generated = job["results"]["generated"][0]
    assert set(generated["contents"]) == {"blog_post", "social"}
    steps = find_many(WorkflowExecution, tenant)[0].step_results
    assert "audience.segment" in steps["devotional"]["error"]
    assert "error" not in steps["social"]
    assert count(Content, account_id=tenant) == 2


def test_intolerant_step_failure_fails_the_job_and_discards_the_draft(tenant, fake_llm, gateway) -> None:
    blog = create_template(
        {"name": "Strict", "category": "blog_post", "prompt": "x", "io_schemas": {"input": {"required": ["custom.flag"]}}},
        tenant,
    ).template_id
    workflow = create_workflow({"name": "strict", "steps": [{"name": "blog_post", "template_id": blog}]}, tenant)
    article_id = make_article(tenant)
    job_id = queue.enqueue(
        "content_generation", {"specificStoryId": article_id, "workflowId": workflow.workflow_id}, tenant
    )

    _run_all(gateway)

    job = queue.get_job(job_id, tenant)
    assert job["status"] == "failed"
    assert job["error"].startswith("Workflow failed at step blog_post:")
    assert job["results"]["failed"][0]["step"] == "blog_post"
    assert count(GeneratedArticle) == 0


def test_cancel_during_aggregation_stops_before_analysis(tenant, fake_llm, gateway) -> None:
    for name in ("first", "second"):
        insert_with_tenant(NewsSource, tenant, {"name": name, "url": f"https://{name}.example.org"})
    job_id = queue.enqueue("full_cycle", {}, tenant)
    calls: list[list[int] | None] = []

    class _CancellingScraper:
        def scrape(self, account_id, source_ids=None):
            calls.append(source_ids)
            queue.cancel(job_id, account_id)
            return [ScrapedArticle(title="Scraped story", url=f"https://news.example.org/{uuid4()}", body=LONG_BODY)]

    set_scraper(_CancellingScraper())

    _run_all(gateway)

    job = queue.get_job(job_id, tenant)
    assert job["status"] == "cancelled"
    assert len(calls) == 1
    assert count(SourceArticle, account_id=tenant) == 1
    assert count(LLMResponseLog) == 0


def test_template_version_flip_is_visible_to_the_next_job(tenant, fake_llm, gateway) -> None:
    template_id = _blog_template(tenant, "v1 {{article.title}}")
    first = make_article(tenant)
    second = make_article(tenant)

    queue.enqueue("content_generation", {"specificStoryId": first}, tenant)
    _run_all(gateway)
    v2 = create_version(template_id, tenant, prompt="v2 {{article.title}}")
    set_current_version(template_id, v2.version_id, tenant)
    queue.enqueue("content_generation", {"specificStoryId": second}, tenant)
    _run_all(gateway)

    logs = find_many(LLMResponseLog, tenant, order_by=LLMResponseLog.id)
    assert [row.prompt_text[:2] for row in logs] == ["v1", "v2"]
    assert logs[1].version_id == v2.version_id
    assert logs[0].version_id != v2.version_id
    assert {row.template_id for row in logs} == {template_id}


def test_full_cycle_scrapes_analyzes_and_generates(tenant, fake_llm, gateway) -> None:
    _blog_template(tenant)
    insert_with_tenant(NewsSource, tenant, {"name": "wire", "url": "https://wire.example.org"})

    class _Scraper:
        def scrape(self, account_id, source_ids=None):
            return [
                ScrapedArticle(title=f"Story {i}", url=f"https://wire.example.org/{i}", body=LONG_BODY, source_ref="Wire")
                for i in range(2)
            ]

    def _analysis(request):
        if request.category != "analysis":
            return None
        if "Rate the relevance" in request.prompt:
            return "Relevance: 0.9"
        if "Extract 5-8" in request.prompt:
            return "community, food bank, Community, volunteers"
        return "Volunteers opened a food bank."

    set_scraper(_Scraper())
    fake_llm.handler = _analysis
    job_id = queue.enqueue("full_cycle", {}, tenant)

    _run_all(gateway)

    job = queue.get_job(job_id, tenant)
    assert job["status"] == "completed"
    results = job["results"]
    assert results["aggregation"]["articles_scraped"] == 2
    assert results["analysis"]["analyzed"] == 2
    assert len(results["generation"]["processed"]) == 2
    article = find_many(SourceArticle, tenant, order_by=SourceArticle.id)[0]
    assert article.keywords == ["community", "food bank", "volunteers"]
    assert article.relevance_score == 0.9
    assert article.status == "processed"


def test_job_for_inactive_tenant_fails(tenant, fake_llm, gateway) -> None:
    job_id = queue.enqueue("ai_analysis", {}, tenant)
    with transaction() as session:
        session.get(Tenant, tenant).active = False

    _run_all(gateway)

    job = queue.get_job(job_id, tenant)
    assert job["status"] == "failed"
    assert "inactive" in job["error"]


def test_job_past_its_deadline_fails_with_timeout(tenant, fake_llm, gateway, monkeypatch) -> None:
    _blog_template(tenant)
    article_id = make_article(tenant)
    job_id = queue.enqueue("content_generation", {"specificStoryId": article_id}, tenant)
    monkeypatch.setenv("JOB_TIMEOUT_SECONDS", "-1")

    execute_job(queue.claim_next("w1"), gateway=gateway)

    job = queue.get_job(job_id, tenant)
    assert (job["status"], job["error"]) == ("failed", "timeout")
    assert count(LLMResponseLog) == 0


def test_top_stories_respect_relevance_threshold(tenant, fake_llm, gateway) -> None:
    _blog_template(tenant)
    update_settings(tenant, "generation", {"min_relevance_score": 0.7, "top_stories_limit": 1})
    low = make_article(tenant, relevance_score=0.5)
    high = make_article(tenant, relevance_score=0.95)
    mid = make_article(tenant, relevance_score=0.8)
    job_id = queue.enqueue("content_generation", {}, tenant)

    _run_all(gateway)

    assert queue.get_job(job_id, tenant)["results"]["processed"] == [high]
    assert find_one(SourceArticle, tenant, id=low).status == "analyzed"
    assert find_one(SourceArticle, tenant, id=mid).status == "analyzed"



def _reply_for(category: str, output: dict):
    def _handler(request):
        return json.dumps(output) if request.category == category else None

    return _handler


def test_video_duration_text_is_read_leniently(tenant, fake_llm, gateway) -> None:
    seed_default_templates()
    article_id = make_article(tenant)
    fake_llm.handler = _reply_for("video_script", {"scripts": [{"title": "t", "duration": "60 seconds", "script": "s"}]})
    job_id = queue.enqueue("content_generation", {"specificStoryId": article_id}, tenant)

    _run_all(gateway)

    job = queue.get_job(job_id, tenant)
    assert job["status"] == "completed"
    assert job["results"]["generated"][0]["errors"] == {}
    video = find_many(Content, tenant, prompt_category="video_script")[0]
    assert video.content_data["scripts"][0]["duration_seconds"] == 60
    assert count(Content, account_id=tenant) == 8


def test_unparseable_output_on_tolerant_step_is_recorded_per_step(tenant, fake_llm, gateway) -> None:
    seed_default_templates()
    article_id = make_article(tenant)
    fake_llm.handler = _reply_for("blog_post", {"title": {"nested": True}, "body": "text"})
    job_id = queue.enqueue("content_generation", {"specificStoryId": article_id}, tenant)

    _run_all(gateway)

    job = queue.get_job(job_id, tenant)
    assert job["status"] == "completed"
    generated = job["results"]["generated"][0]
    assert generated["errors"]["blog_post"].startswith("unparseable blog_post output")
    assert "blog_post" not in generated["contents"]
    assert count(Content, account_id=tenant) == 7
    assert count(GeneratedArticle, account_id=tenant) == 1


def test_unparseable_output_on_strict_step_names_the_step(tenant, fake_llm, gateway) -> None:
    workflow = create_workflow(
        {"name": "strict blog", "steps": [{"name": "blog_post", "template_id": _blog_template(tenant)}]}, tenant
    )
    article_id = make_article(tenant)
    fake_llm.handler = _reply_for("blog_post", {"title": ["not", "a", "string"], "body": "text"})
    job_id = queue.enqueue(
        "content_generation", {"specificStoryId": article_id, "workflowId": workflow.workflow_id}, tenant
    )

    _run_all(gateway)

    job = queue.get_job(job_id, tenant)
    assert job["status"] == "failed"
    assert job["error"].startswith("Workflow failed at step blog_post: unparseable blog_post output")
    assert job["results"]["failed"][0]["step"] == "blog_post"
    assert count(GeneratedArticle) == 0
