from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import os
from typing import Any, Protocol
from uuid import UUID

from ._http import CollaboratorError, post_json


@dataclass(frozen=True)
class ScrapedArticle:
    title: str
    url: str
    body: str
    published_at: datetime | None = None
    source_ref: str | None = None


class Scraper(Protocol):
    def scrape(self, account_id: UUID, source_ids: list[int] | None = None) -> list[ScrapedArticle]: ...


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def to_scraped(item: dict[str, Any]) -> ScrapedArticle | None:
    title = str(item.get("title") or "").strip()
    url = str(item.get("url") or "").strip()
    if not title or not url:
        return None
    return ScrapedArticle(
        title=title,
        url=url,
        body=str(item.get("body") or ""),
        published_at=_parse_datetime(item.get("publishedAt") or item.get("published_at")),
        source_ref=item.get("source") or item.get("source_ref"),
    )


class HttpScraper:
    def __init__(self, base_url: str, timeout_s: float = 120.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def scrape(self, account_id: UUID, source_ids: list[int] | None = None) -> list[ScrapedArticle]:
        response = post_json(
            "scraper",
            f"{self.base_url}/scrape",
            {"account_id": str(account_id), "source_ids": source_ids},
            self.timeout_s,
        )
        items = response.get("articles", []) if isinstance(response, dict) else response
        if not isinstance(items, list):
            raise CollaboratorError("scraper", "expected a list of articles")
        return [article for article in (to_scraped(item) for item in items if isinstance(item, dict)) if article]


_SCRAPER: Scraper | None = None


def set_scraper(scraper: Scraper | None) -> None:
    global _SCRAPER
    _SCRAPER = scraper


def get_scraper() -> Scraper:
    if _SCRAPER is not None:
        return _SCRAPER
    base_url = os.getenv("SCRAPER_URL", "").strip()
    if not base_url:
        raise CollaboratorError("scraper", "SCRAPER_URL is not configured")
    return HttpScraper(base_url, float(os.getenv("SCRAPER_TIMEOUT_S", "120")))
