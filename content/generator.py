"""Per-story generation: quality gate, workflow run, dual-write, finalize."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import delete

from accounts.settings import get_settings
from collaborators.images import get_image_service, upload_and_associate
from core.logger import get_logger
from db.models import GeneratedArticle, SourceArticle, advance_source_status
from db.repository import find_one_in_transaction, insert_with_tenant_in_transaction, tenant_clause, transaction
from llm.gateway import LLMGateway
from quality.gate import assess
from workflows.runner import WorkflowStepError, run_workflow
from workflows.store import WorkflowDefinition, resolve_workflow

from .dual_write import DualWriteError, write_content
from .models import BlogPost, parse_content

logger = get_logger(__name__)


class ArticleNotFoundError(LookupError):
    pass


def article_payload(article: SourceArticle) -> dict[str, Any]:
    return {
        "id": article.id,
        "title": article.title,
        "content": article.body or "",
        "body": article.body or "",
        "summary": article.summary,
        "source": article.source_ref,
        "url": article.url,
        "keywords": article.keywords or [],
        "relevance_score": article.relevance_score,
    }


def evaluate_quality(article_id: int, account_id: UUID) -> dict[str, Any]:
    settings = get_settings(account_id, "content_quality")
    with transaction() as session:
        article = find_one_in_transaction(session, SourceArticle, account_id, id=article_id)
        if article is None:
            raise ArticleNotFoundError(f"Article not found: {article_id}")
        assessment = assess(article_payload(article), settings).as_dict()
        article.quality = assessment
        return {"article": article_payload(article), "quality": assessment}


def _create_draft(account_id: UUID, article: dict[str, Any]) -> int:
    with transaction() as session:
        row = insert_with_tenant_in_transaction(
            session,
            GeneratedArticle,
            account_id,
            {
                "based_on_article_id": article["id"],
                "title": article["title"],
                "content_type": "blog",
                "status": "draft",
            },
        )
        return row.id


def _discard_draft(account_id: UUID, gen_article_id: int) -> None:
    with transaction() as session:
        session.execute(
            delete(GeneratedArticle).where(
                GeneratedArticle.id == gen_article_id,
                tenant_clause(GeneratedArticle, account_id),
            )
        )


def _finalize(account_id: UUID, gen_article_id: int, article_id: int, blog: BlogPost | None) -> None:
    with transaction() as session:
        generated = find_one_in_transaction(session, GeneratedArticle, account_id, id=gen_article_id)
        if blog is not None and blog.body:
            generated.body_draft = blog.body
            if blog.title:
                generated.title = blog.title
        generated.word_count = len((generated.body_draft or "").split())
        generated.status = "review_pending"
        source = find_one_in_transaction(session, SourceArticle, account_id, id=article_id)
        if source is not None:
            advance_source_status(source, "processed")


def _attach_images(account_id: UUID, contents: dict[str, Any], outputs: dict[str, Any]) -> list[dict[str, Any]]:
    if get_image_service() is None:
        return []
    attached: list[dict[str, Any]] = []
    for step_name, output in outputs.items():
        image_url = output.get("image_url") if isinstance(output, dict) else None
        written = contents.get(step_name) or {}
        if not image_url or not written.get("modern"):
            continue
        try:
            attached.append(
                upload_and_associate(
                    account_id,
                    bytes_or_url=str(image_url),
                    gen_content_type="content",
                    gen_content_id=int(written["modern"]),
                    alt_text=output.get("alt_text"),
                )
            )
        except Exception as exc:
            logger.warning("image_upload_failed", step=step_name, error=str(exc))
            attached.append({"step": step_name, "error": str(exc)})
    return attached


def generate_for_article(
    article_id: int,
    account_id: UUID,
    *,
    workflow: WorkflowDefinition | int | None = None,
    gateway: LLMGateway | None = None,
) -> dict[str, Any]:
    """Run one source article through the gate and the workflow.

    Returns ``{"status": "skipped", ...}`` for ineligible articles and
    ``{"status": "processed", ...}`` otherwise. A step failure that the
    workflow does not tolerate propagates as :class:`WorkflowStepError`.
    """

    log = logger.bind(article_id=article_id)
    evaluated = evaluate_quality(article_id, account_id)
    quality = evaluated["quality"]
    if not quality["eligible"]:
        reason = quality["issues"][0] if quality["issues"] else "low_quality"
        log.info("article_skipped", reason=reason, score=quality["score"])
        return {
            "status": "skipped",
            "articleId": article_id,
            "reason": reason,
            "issues": quality["issues"],
            "score": quality["score"],
        }

    article = evaluated["article"]
    definition = workflow if isinstance(workflow, WorkflowDefinition) else resolve_workflow(account_id, workflow)
    gen_article_id = _create_draft(account_id, article)
    try:
        run = run_workflow(
            definition,
            {"article": article, "blog": {"id": gen_article_id}, "account": {"id": str(account_id)}},
            account_id,
            gateway=gateway,
            gen_article_id=gen_article_id,
            source_article_id=article_id,
        )
        tolerant = {step.name: step.continue_on_error for step in definition.steps}
        contents: dict[str, Any] = {}
        errors: dict[str, str] = {}
        outputs: dict[str, Any] = {}
        blog: BlogPost | None = None
        for step_name, record in run["results"].items():
            if "error" in record:
                errors[step_name] = record["error"]
                continue
            category = record["metadata"]["category"]
            try:
                data = parse_content(category, record["output"])
            except (ValueError, TypeError) as exc:
                if not tolerant.get(step_name, False):
                    raise WorkflowStepError(step_name, f"unparseable {category} output: {exc}") from exc
                log.warning("step_output_unparseable", step=step_name, error=str(exc))
                errors[step_name] = f"unparseable {category} output: {exc}"
                continue
            outputs[step_name] = record["output"]
            if isinstance(data, BlogPost) and blog is None:
                blog = data
            try:
                written = write_content(
                    account_id,
                    gen_article_id,
                    category,
                    data,
                    article_title=article["title"],
                    extra_metadata={
                        "step": step_name,
                        "template_id": record["templateId"],
                        "version_id": record["metadata"]["versionId"],
                    },
                )
            except DualWriteError as exc:
                if not tolerant.get(step_name, False):
                    raise WorkflowStepError(step_name, str(exc)) from exc
                errors[step_name] = str(exc)
                continue
            contents[step_name] = written.as_dict()
    except Exception:
        _discard_draft(account_id, gen_article_id)
        raise

    _finalize(account_id, gen_article_id, article_id, blog)
    images = _attach_images(account_id, contents, outputs)
    log.info("article_generated", gen_article_id=gen_article_id, contents=len(contents), errors=len(errors))
    result: dict[str, Any] = {
        "status": "processed",
        "articleId": article_id,
        "genArticleId": gen_article_id,
        "contents": contents,
        "errors": errors,
        "quality": {"score": quality["score"], "tier": quality["tier"]},
    }
    if images:
        result["images"] = images
    return result
