from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from collaborators.scraper import ScrapedArticle, Scraper, get_scraper
from core.logger import get_logger
from db.models import NewsSource, SourceArticle
from db.repository import tenant_clause, transaction

logger = get_logger(__name__)


def active_sources(account_id: UUID, source_ids: list[int] | None = None) -> list[int]:
    with transaction() as session:
        stmt = select(NewsSource.id).where(tenant_clause(NewsSource, account_id), NewsSource.active.is_(True))
        if source_ids:
            stmt = stmt.where(NewsSource.id.in_(source_ids))
        return list(session.execute(stmt.order_by(NewsSource.id)).scalars().all())


def store_scraped(account_id: UUID, source_id: int | None, items: list[ScrapedArticle]) -> int:
    """Insert scraped articles, skipping URLs that already exist. Returns the insert count."""
    inserted = 0
    with transaction() as session:
        for item in items:
            # url is unique across tenants
            exists = session.execute(
                select(SourceArticle.id).where(SourceArticle.url == item.url)
            ).scalar_one_or_none()
            if exists is not None:
                continue
            try:
                with session.begin_nested():
                    session.add(
                        SourceArticle(
                            account_id=account_id,
                            source_id=source_id,
                            source_ref=item.source_ref,
                            title=item.title,
                            url=item.url,
                            body=item.body,
                            published_at=item.published_at,
                            status="scraped",
                        )
                    )
            except IntegrityError:
                logger.info("scraped_article_duplicate", url=item.url)
                continue
            inserted += 1
        if source_id is not None:
            source = session.get(NewsSource, source_id)
            if source is not None and source.account_id == account_id:
                source.last_scraped_at = datetime.now(UTC)
    return inserted


def aggregate(
    account_id: UUID,
    payload: dict[str, Any],
    *,
    checkpoint: Callable[[], None],
    progress: Callable[[float, str], None],
    scraper: Scraper | None = None,
) -> dict[str, Any]:
    """Scrape each active source in turn.

    ``checkpoint`` runs before every source so a cancel takes effect between
    sources, never in the middle of one.
    """
    scraper = scraper or get_scraper()
    requested = payload.get("source_ids") or payload.get("sourceIds")
    sources: list[int | None] = list(active_sources(account_id, requested)) or [None]
    limit = payload.get("limit")
    total = 0
    per_source: list[dict[str, Any]] = []
    for index, source_id in enumerate(sources):
        checkpoint()
        progress(index / len(sources), f"Scraping source {index + 1}/{len(sources)}")
        items = scraper.scrape(account_id, [source_id] if source_id is not None else requested)
        if limit:
            items = items[: int(limit)]
        inserted = store_scraped(account_id, source_id, items)
        total += inserted
        per_source.append({"source_id": source_id, "fetched": len(items), "inserted": inserted})
        logger.info("source_scraped", source_id=source_id, fetched=len(items), inserted=inserted)
    progress(1.0, f"Scraped {total} new articles")
    return {"articles_scraped": total, "sources": per_source}
