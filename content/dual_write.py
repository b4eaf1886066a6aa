"""Dual-write of generated content to legacy typed tables and ``content``.

Legacy rows and the modern row for one artifact are written in a single
transaction. If that transaction fails it is rolled back and the artifact is
written legacy-only, flagged ``fallback``. Categories without a legacy table
are written to ``content`` only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import json
import os
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.logger import get_logger
from db.models import Content, GeneratedArticle, SocialPost, VideoScript
from db.repository import insert_with_tenant_in_transaction, tenant_clause, transaction

from .models import ContentData, SocialPosts, VideoScripts

logger = get_logger(__name__)

LEGACY_CATEGORIES = {"social_media": SocialPosts, "video_script": VideoScripts}


class DualWriteError(RuntimeError):
    pass


def dual_write_enabled() -> bool:
    return os.getenv("ENABLE_DUAL_WRITE", "true").strip().lower() not in {"false", "0", "no"}


def prioritize_modern() -> bool:
    return os.getenv("PRIORITIZE_MODERN", "false").strip().lower() in {"true", "1", "yes"}


@dataclass(frozen=True)
class WriteResult:
    legacy: list[int] | None
    modern: int | None
    dual_write: bool
    fallback: bool = False
    generic: bool = False
    primary: str = "legacy"

    def as_dict(self) -> dict[str, Any]:
        return {
            "legacy": self.legacy,
            "modern": self.modern,
            "dualWrite": self.dual_write,
            "fallback": self.fallback,
            "generic": self.generic,
            "primary": self.primary,
        }


def _insert_legacy_social(session: Session, account_id: UUID, gen_article_id: int, data: SocialPosts) -> list[int]:
    ids: list[int] = []
    for post in data.posts:
        text_draft = f"{post.text}\n\n{' '.join(post.hashtags)}".rstrip()
        row = insert_with_tenant_in_transaction(
            session,
            SocialPost,
            account_id,
            {
                "based_on_gen_article_id": gen_article_id,
                "platform": post.platform,
                "text_draft": text_draft,
                "emotional_hook_present_ai_check": post.platform != "linkedin",
                "status": "draft",
            },
        )
        ids.append(row.id)
    return ids


def _insert_legacy_video(session: Session, account_id: UUID, gen_article_id: int, data: VideoScripts) -> list[int]:
    ids: list[int] = []
    for script in data.scripts:
        row = insert_with_tenant_in_transaction(
            session,
            VideoScript,
            account_id,
            {
                "based_on_gen_article_id": gen_article_id,
                "title": script.title,
                "duration_target_seconds": script.duration_seconds,
                "script_draft": script.script,
                "visual_suggestions": json.dumps(script.visual_suggestions),
                "status": "draft",
            },
        )
        ids.append(row.id)
    return ids


def _insert_legacy(session: Session, account_id: UUID, gen_article_id: int, data: ContentData) -> list[int]:
    if isinstance(data, SocialPosts):
        return _insert_legacy_social(session, account_id, gen_article_id, data)
    if isinstance(data, VideoScripts):
        return _insert_legacy_video(session, account_id, gen_article_id, data)
    raise DualWriteError(f"no legacy table for {data.kind}")


def _with_legacy_ids(data: ContentData, legacy_ids: list[int]) -> ContentData:
    if isinstance(data, SocialPosts):
        posts = [
            post.model_copy(update={"legacy_id": legacy_ids[i] if i < len(legacy_ids) else None, "order": i + 1})
            for i, post in enumerate(data.posts)
        ]
        return data.model_copy(update={"posts": posts})
    if isinstance(data, VideoScripts):
        scripts = [
            script.model_copy(update={"legacy_id": legacy_ids[i] if i < len(legacy_ids) else None, "order": i + 1})
            for i, script in enumerate(data.scripts)
        ]
        return data.model_copy(update={"scripts": scripts})
    return data


def _metadata(category: str, data: ContentData, legacy_ids: list[int] | None, article_title: str | None, extra: dict[str, Any] | None) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "source": "dual_write_migration" if legacy_ids is not None else "modern_only",
        "legacy_ids": legacy_ids or [],
        "generated_at": datetime.now(UTC).isoformat(),
        "article_title": article_title or "Unknown",
    }
    if isinstance(data, SocialPosts):
        meta["platforms"] = [post.platform for post in data.posts]
    if extra:
        meta.update(extra)
    return meta


def _insert_modern(
    session: Session,
    account_id: UUID,
    gen_article_id: int,
    category: str,
    data: ContentData,
    metadata: dict[str, Any],
) -> int:
    row = insert_with_tenant_in_transaction(
        session,
        Content,
        account_id,
        {
            "based_on_gen_article_id": gen_article_id,
            "prompt_category": category,
            "content_data": data.model_dump(mode="json"),
            "meta": metadata,
            "status": "draft",
        },
    )
    return row.id


def _write_both(
    account_id: UUID,
    gen_article_id: int,
    category: str,
    data: ContentData,
    article_title: str | None,
    extra: dict[str, Any] | None,
) -> WriteResult:
    with transaction() as session:
        if prioritize_modern():
            modern_id = _insert_modern(
                session, account_id, gen_article_id, category, data,
                _metadata(category, data, [], article_title, extra),
            )
            legacy_ids = _insert_legacy(session, account_id, gen_article_id, data)
            row = session.get(Content, modern_id)
            row.content_data = _with_legacy_ids(data, legacy_ids).model_dump(mode="json")
            row.meta = _metadata(category, data, legacy_ids, article_title, extra)
            session.flush()
        else:
            legacy_ids = _insert_legacy(session, account_id, gen_article_id, data)
            modern_id = _insert_modern(
                session, account_id, gen_article_id, category,
                _with_legacy_ids(data, legacy_ids),
                _metadata(category, data, legacy_ids, article_title, extra),
            )
    return WriteResult(
        legacy=legacy_ids,
        modern=modern_id,
        dual_write=True,
        primary="modern" if prioritize_modern() else "legacy",
    )


def _write_legacy_only(account_id: UUID, gen_article_id: int, data: ContentData) -> list[int]:
    with transaction() as session:
        return _insert_legacy(session, account_id, gen_article_id, data)


def _write_modern_only(
    account_id: UUID,
    gen_article_id: int,
    category: str,
    data: ContentData,
    article_title: str | None,
    extra: dict[str, Any] | None,
) -> int:
    with transaction() as session:
        return _insert_modern(
            session, account_id, gen_article_id, category, data,
            _metadata(category, data, None, article_title, extra),
        )


def write_content(
    account_id: UUID,
    gen_article_id: int,
    category: str,
    data: ContentData,
    *,
    article_title: str | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> WriteResult:
    log = logger.bind(gen_article_id=gen_article_id, category=category)
    has_legacy = isinstance(data, tuple(LEGACY_CATEGORIES.values())) and category in LEGACY_CATEGORIES

    if not has_legacy:
        try:
            modern_id = _write_modern_only(account_id, gen_article_id, category, data, article_title, extra_metadata)
        except Exception as exc:
            log.error("content_write_failed", error=str(exc))
            raise DualWriteError(f"modern write failed for {category}: {exc}") from exc
        return WriteResult(legacy=None, modern=modern_id, dual_write=False, generic=True, primary="modern")

    if not dual_write_enabled():
        try:
            legacy_ids = _write_legacy_only(account_id, gen_article_id, data)
        except Exception as exc:
            log.error("legacy_write_failed", error=str(exc))
            raise DualWriteError(f"legacy write failed for {category}: {exc}") from exc
        return WriteResult(legacy=legacy_ids, modern=None, dual_write=False)

    try:
        result = _write_both(account_id, gen_article_id, category, data, article_title, extra_metadata)
        log.info("dual_write_completed", legacy_ids=result.legacy, modern_id=result.modern)
        return result
    except Exception as exc:
        log.warning("dual_write_rolled_back", error=str(exc))

    try:
        legacy_ids = _write_legacy_only(account_id, gen_article_id, data)
    except Exception as exc:
        log.error("legacy_fallback_failed", error=str(exc))
        raise DualWriteError(f"dual-write and legacy fallback failed for {category}: {exc}") from exc
    log.info("legacy_fallback_completed", legacy_ids=legacy_ids)
    return WriteResult(legacy=legacy_ids, modern=None, dual_write=False, fallback=True)


def dual_write_stats(account_id: UUID) -> dict[str, Any]:
    with transaction() as session:
        modern_rows = session.execute(
            select(Content.prompt_category, Content.meta).where(tenant_clause(Content, account_id))
        ).all()
        social = session.execute(
            select(func.count()).select_from(SocialPost).where(tenant_clause(SocialPost, account_id))
        ).scalar_one()
        video = session.execute(
            select(func.count()).select_from(VideoScript).where(tenant_clause(VideoScript, account_id))
        ).scalar_one()
        articles = session.execute(
            select(func.count()).select_from(GeneratedArticle).where(tenant_clause(GeneratedArticle, account_id))
        ).scalar_one()
    by_category: dict[str, int] = {}
    linked = 0
    for category, meta in modern_rows:
        by_category[category] = by_category.get(category, 0) + 1
        if isinstance(meta, dict) and meta.get("legacy_ids"):
            linked += 1
    return {
        "enabled": dual_write_enabled(),
        "prioritize_modern": prioritize_modern(),
        "generated_articles": int(articles),
        "legacy": {"social_posts": int(social), "video_scripts": int(video)},
        "modern": {"total": len(modern_rows), "linked_to_legacy": linked, "by_category": by_category},
    }
