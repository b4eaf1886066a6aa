from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import os
import socket
import time
from typing import Any, Callable, Iterator
from uuid import UUID

from sqlalchemy import desc, select

from accounts.settings import get_settings
from content.generator import ArticleNotFoundError, generate_for_article
from core.cache import invalidate_all
from core.logger import bind_job_context, clear_job_context, get_logger
from db.models import SourceArticle, Tenant
from db.repository import tenant_clause, transaction
from llm.gateway import LLMGateway
from workflows.runner import WorkflowStepError
from workflows.store import resolve_workflow

from .aggregation import aggregate
from .analysis import analyze_recent
from .queue import (
    ClaimedJob,
    JobStateError,
    checkpoint_status,
    claim_next,
    complete,
    fail,
    mark_cancelled,
    update_progress,
)

logger = get_logger(__name__)


class JobCancelled(Exception):
    pass


class JobTimeout(Exception):
    pass


def _job_timeout_s() -> float:
    return float(os.getenv("JOB_TIMEOUT_SECONDS", "1800"))


@dataclass
class JobContext:
    job: ClaimedJob
    gateway: LLMGateway | None = None
    timeout_s: float = field(default_factory=_job_timeout_s)
    started: float = field(default_factory=time.monotonic)
    results: dict[str, Any] = field(default_factory=dict)
    span: tuple[float, float] = (0.0, 100.0)

    @property
    def account_id(self) -> UUID:
        return self.job.account_id

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload

    def checkpoint(self) -> None:
        status = checkpoint_status(self.job.id)
        if status != "processing":
            raise JobCancelled(f"job {self.job.id} is {status}")
        if time.monotonic() - self.started > self.timeout_s:
            raise JobTimeout(f"job {self.job.id} exceeded {self.timeout_s:.0f}s")

    def progress(self, pct: float, text: str) -> None:
        low, high = self.span
        update_progress(self.job.id, round(low + (high - low) * pct / 100.0), text)

    def reporter(self, low: float, high: float) -> Callable[[float, str], None]:
        return lambda fraction, text: self.progress(low + (high - low) * fraction, text)

    @contextmanager
    def phase(self, low: float, high: float) -> Iterator[None]:
        previous = self.span
        self.span = (low, high)
        try:
            yield
        finally:
            self.span = previous


def top_articles(account_id: UUID, min_relevance: float, limit: int) -> list[int]:
    with transaction() as session:
        stmt = (
            select(SourceArticle.id)
            .where(
                tenant_clause(SourceArticle, account_id),
                SourceArticle.status == "analyzed",
                SourceArticle.relevance_score >= min_relevance,
            )
            .order_by(desc(SourceArticle.relevance_score), SourceArticle.id)
            .limit(limit)
        )
        return list(session.execute(stmt).scalars().all())


def _generate(ctx: JobContext, results: dict[str, Any]) -> dict[str, Any]:
    payload = ctx.payload
    settings = get_settings(ctx.account_id, "generation")
    ctx.progress(10, "Loading generation settings")
    workflow = resolve_workflow(ctx.account_id, payload.get("workflowId") or payload.get("workflow_id"))

    ctx.progress(20, "Selecting stories")
    story_id = payload.get("specificStoryId") or payload.get("specific_story_id")
    if story_id:
        article_ids = [int(story_id)]
    else:
        limit = int(payload.get("limit") or settings["top_stories_limit"])
        min_relevance = float(payload.get("minRelevance", settings["min_relevance_score"]))
        article_ids = top_articles(ctx.account_id, min_relevance, limit)

    results.update({"processed": [], "skipped": [], "failed": [], "generated": []})
    ctx.progress(30, f"Generating content for {len(article_ids)} stories")
    for index, article_id in enumerate(article_ids):
        ctx.checkpoint()
        ctx.progress(30 + 60 * index / max(1, len(article_ids)), f"Story {index + 1}/{len(article_ids)}")
        try:
            outcome = generate_for_article(article_id, ctx.account_id, workflow=workflow, gateway=ctx.gateway)
        except ArticleNotFoundError as exc:
            results["failed"].append({"articleId": article_id, "error": str(exc)})
            continue
        except WorkflowStepError as exc:
            results["failed"].append({"articleId": article_id, "error": exc.reason, "step": exc.step_name})
            raise
        if outcome["status"] == "skipped":
            results["skipped"].append(
                {"articleId": article_id, "reason": outcome["reason"], "issues": outcome["issues"]}
            )
            continue
        results["processed"].append(article_id)
        results["generated"].append(
            {
                "articleId": article_id,
                "genArticleId": outcome["genArticleId"],
                "contents": outcome["contents"],
                "errors": outcome["errors"],
            }
        )
    ctx.progress(90, f"Generated content for {len(results['processed'])} stories")
    return results


def content_generation(ctx: JobContext) -> dict[str, Any]:
    return _generate(ctx, ctx.results)


def news_aggregation(ctx: JobContext) -> dict[str, Any]:
    ctx.results.update(aggregate(ctx.account_id, ctx.payload, checkpoint=ctx.checkpoint, progress=ctx.reporter(5, 95)))
    return ctx.results


def ai_analysis(ctx: JobContext) -> dict[str, Any]:
    ctx.results.update(
        analyze_recent(
            ctx.account_id, ctx.payload, checkpoint=ctx.checkpoint, progress=ctx.reporter(5, 95), gateway=ctx.gateway
        )
    )
    return ctx.results


def full_cycle(ctx: JobContext) -> dict[str, Any]:
    ctx.progress(5, "Starting news aggregation")
    ctx.results["aggregation"] = aggregate(
        ctx.account_id, ctx.payload, checkpoint=ctx.checkpoint, progress=ctx.reporter(10, 35)
    )

    ctx.checkpoint()
    ctx.progress(40, "Starting AI analysis")
    ctx.results["analysis"] = analyze_recent(
        ctx.account_id, ctx.payload, checkpoint=ctx.checkpoint, progress=ctx.reporter(40, 65), gateway=ctx.gateway
    )

    ctx.checkpoint()
    ctx.progress(70, "Starting content generation")
    generation: dict[str, Any] = {}
    ctx.results["generation"] = generation
    with ctx.phase(70, 95):
        _generate(ctx, generation)
    ctx.progress(95, "Full cycle complete")
    return ctx.results


HANDLERS: dict[str, Callable[[JobContext], dict[str, Any]]] = {
    "content_generation": content_generation,
    "news_aggregation": news_aggregation,
    "ai_analysis": ai_analysis,
    "full_cycle": full_cycle,
}


def _require_active_tenant(account_id: UUID) -> None:
    with transaction() as session:
        tenant = session.get(Tenant, account_id)
        if tenant is None or not tenant.active:
            raise JobStateError(f"tenant {account_id} is unknown or inactive")


def execute_job(claimed: ClaimedJob, *, gateway: LLMGateway | None = None) -> str:
    """Run a claimed job to a final status. Never leaves the row ``processing``
    unless the database itself is unreachable."""
    bind_job_context(claimed.id, str(claimed.account_id))
    # template, workflow and settings caches live for one job run
    invalidate_all()
    ctx = JobContext(job=claimed, gateway=gateway)
    try:
        handler = HANDLERS.get(claimed.job_type)
        if handler is None:
            raise JobStateError(f"unknown job type: {claimed.job_type}")
        _require_active_tenant(claimed.account_id)
        logger.info("job_started", job_type=claimed.job_type, retry_count=claimed.retry_count)
        results = handler(ctx)
    except JobCancelled as exc:
        mark_cancelled(claimed.id, ctx.results)
        logger.info("job_cancelled", reason=str(exc))
        return "cancelled"
    except JobTimeout as exc:
        fail(claimed.id, "timeout", ctx.results)
        logger.warning("job_timed_out", reason=str(exc))
        return "failed"
    except Exception as exc:
        fail(claimed.id, str(exc) or exc.__class__.__name__, ctx.results)
        logger.exception("job_failed", error=str(exc))
        return "failed"
    else:
        if complete(claimed.id, results):
            logger.info("job_completed")
            return "completed"
        return checkpoint_status(claimed.id) or "unknown"
    finally:
        clear_job_context()


def default_worker_id(suffix: str | int | None = None) -> str:
    base = f"{socket.gethostname()}-{os.getpid()}"
    return f"{base}-{suffix}" if suffix is not None else base


def run_next_job() -> dict[str, Any] | None:
    """RQ entry point: claim whatever is next in the table and run it."""
    claimed = claim_next(default_worker_id("rq"))
    if claimed is None:
        return None
    return {"job_id": claimed.id, "status": execute_job(claimed)}
