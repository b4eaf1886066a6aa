"""Summary, keyword and relevance analysis of scraped articles."""

from __future__ import annotations

import re
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import desc, select

from accounts.settings import get_settings
from core.logger import get_logger
from db.models import SourceArticle, advance_source_status
from db.repository import tenant_clause, transaction
from llm.gateway import LLMGateway, get_gateway
from llm.providers import LLMError

logger = get_logger(__name__)

CATEGORY = "analysis"
MAX_ARTICLE_CHARS = 8000

SUMMARY_PROMPT = """Summarize this news article in 2-3 sentences, focusing on the key message and why it matters to the audience.

Title: {title}
Article: {body}

Provide a clear, concise summary that captures the essence and significance of the story."""

KEYWORDS_PROMPT = """Extract 5-8 relevant keywords from this news article that would be useful for content categorization and SEO.

Title: {title}
Article: {body}

Return only the keywords separated by commas."""

RELEVANCE_PROMPT = """Rate the relevance of this news story for our content strategy on a scale of 0.0 to 1.0.

Article Summary: {summary}
Keywords: {keywords}

Return only a decimal number between 0.0 and 1.0, where:
- 0.8-1.0: Highly relevant, strong content opportunity
- 0.6-0.7: Moderately relevant, good content potential
- 0.4-0.5: Somewhat relevant, consider if news is slow
- 0.0-0.3: Low relevance or should be avoided"""

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def parse_keywords(text: str) -> list[str]:
    seen: list[str] = []
    for raw in re.split(r"[,\n]", text):
        keyword = raw.strip().strip("-*•\"'").strip()
        if keyword and keyword.lower() not in (k.lower() for k in seen):
            seen.append(keyword)
    return seen[:8]


def parse_relevance(text: str) -> float:
    match = _NUMBER.search(text or "")
    if match is None:
        return 0.0
    return max(0.0, min(1.0, float(match.group(0))))


def analyze_article(article_id: int, account_id: UUID, *, gateway: LLMGateway | None = None) -> dict[str, Any]:
    gateway = gateway or get_gateway()
    with transaction() as session:
        article = session.execute(
            select(SourceArticle).where(tenant_clause(SourceArticle, account_id), SourceArticle.id == article_id)
        ).scalar_one_or_none()
        if article is None:
            raise LookupError(f"Source article not found: {article_id}")
        title = article.title
        body = (article.body or "")[:MAX_ARTICLE_CHARS]

    summary = gateway.generate(
        CATEGORY, SUMMARY_PROMPT.format(title=title, body=body), None, {"max_tokens": 400}, account_id
    ).text.strip()
    keywords = parse_keywords(
        gateway.generate(
            CATEGORY, KEYWORDS_PROMPT.format(title=title, body=body), None, {"max_tokens": 200}, account_id
        ).text
    )
    try:
        relevance = parse_relevance(
            gateway.generate(
                CATEGORY,
                RELEVANCE_PROMPT.format(summary=summary, keywords=", ".join(keywords)),
                None,
                {"max_tokens": 20, "temperature": 0.0},
                account_id,
            ).text
        )
    except LLMError as exc:
        logger.warning("relevance_scoring_failed", article_id=article_id, error=exc.message)
        relevance = 0.0

    with transaction() as session:
        article = session.execute(
            select(SourceArticle).where(tenant_clause(SourceArticle, account_id), SourceArticle.id == article_id)
        ).scalar_one()
        article.summary = summary
        article.keywords = keywords
        article.relevance_score = relevance
        advance_source_status(article, "analyzed")
    return {"articleId": article_id, "relevance_score": relevance, "keywords": keywords}


def pending_articles(account_id: UUID, limit: int) -> list[int]:
    with transaction() as session:
        stmt = (
            select(SourceArticle.id)
            .where(tenant_clause(SourceArticle, account_id), SourceArticle.status == "scraped")
            .order_by(desc(SourceArticle.created_at), desc(SourceArticle.id))
            .limit(limit)
        )
        return list(session.execute(stmt).scalars().all())


def analyze_recent(
    account_id: UUID,
    payload: dict[str, Any],
    *,
    checkpoint: Callable[[], None],
    progress: Callable[[float, str], None],
    gateway: LLMGateway | None = None,
) -> dict[str, Any]:
    limit = int(payload.get("limit") or get_settings(account_id, "generation")["analysis_limit"])
    article_ids = pending_articles(account_id, limit)
    analyzed: list[int] = []
    failed: list[dict[str, Any]] = []
    for index, article_id in enumerate(article_ids):
        checkpoint()
        progress(index / max(1, len(article_ids)), f"Analyzing article {index + 1}/{len(article_ids)}")
        try:
            analyze_article(article_id, account_id, gateway=gateway)
        except LLMError as exc:
            logger.warning("article_analysis_failed", article_id=article_id, error=exc.message, code=exc.code)
            failed.append({"articleId": article_id, "error": exc.message})
            continue
        analyzed.append(article_id)
    progress(1.0, f"Analyzed {len(analyzed)} articles")
    return {"analyzed": len(analyzed), "failed": failed, "articleIds": analyzed}
