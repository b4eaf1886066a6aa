from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import desc, select

from core.logger import get_logger
from db.models import (
    GENERATED_ARTICLE_STATUSES,
    Content,
    GeneratedArticle,
    SocialPost,
    VideoScript,
)
from db.repository import find_one_in_transaction, tenant_clause, transaction

from .models import load_content

logger = get_logger(__name__)

REVIEW_TYPES = {
    "article": GeneratedArticle,
    "social": SocialPost,
    "video": VideoScript,
    "content": Content,
}


class ContentNotFoundError(LookupError):
    pass


def _content_row(row: Content) -> dict[str, Any]:
    return {
        "id": row.id,
        "prompt_category": row.prompt_category,
        "content_data": load_content(row.content_data).model_dump(mode="json"),
        "metadata": row.meta or {},
        "status": row.status,
        "created_at": row.created_at,
    }


def content_for_review(account_id: UUID, status: str = "review_pending", limit: int = 50) -> list[dict[str, Any]]:
    with transaction() as session:
        stmt = (
            select(GeneratedArticle)
            .where(tenant_clause(GeneratedArticle, account_id), GeneratedArticle.status == status)
            .order_by(desc(GeneratedArticle.created_at), desc(GeneratedArticle.id))
            .limit(limit)
        )
        articles = session.execute(stmt).scalars().all()
        payload: list[dict[str, Any]] = []
        for article in articles:
            payload.append(
                {
                    "id": article.id,
                    "title": article.title,
                    "body_draft": article.body_draft,
                    "body_final": article.body_final,
                    "content_type": article.content_type,
                    "word_count": article.word_count,
                    "status": article.status,
                    "based_on_article_id": article.based_on_article_id,
                    "created_at": article.created_at,
                    "social_posts": [
                        {
                            "id": post.id,
                            "platform": post.platform,
                            "text_draft": post.text_draft,
                            "text_final": post.text_final,
                            "status": post.status,
                        }
                        for post in article.social_posts
                    ],
                    "video_scripts": [
                        {
                            "id": script.id,
                            "title": script.title,
                            "duration_target_seconds": script.duration_target_seconds,
                            "script_draft": script.script_draft,
                            "status": script.status,
                        }
                        for script in article.video_scripts
                    ],
                    "contents": [_content_row(row) for row in article.contents],
                }
            )
        return payload


def update_content_status(
    account_id: UUID,
    content_type: str,
    item_id: int,
    status: str,
    final_content: Any = None,
) -> dict[str, Any]:
    model = REVIEW_TYPES.get(content_type)
    if model is None:
        raise ValueError(f"unknown content type: {content_type}")
    if status not in GENERATED_ARTICLE_STATUSES and status != "draft":
        raise ValueError(f"invalid status: {status}")
    with transaction() as session:
        row = find_one_in_transaction(session, model, account_id, id=item_id)
        if row is None:
            raise ContentNotFoundError(f"{content_type} {item_id} not found")
        row.status = status
        if final_content is not None:
            if isinstance(row, GeneratedArticle):
                row.body_final = str(final_content)
                row.word_count = len(row.body_final.split())
            elif isinstance(row, SocialPost):
                row.text_final = str(final_content)
            elif isinstance(row, VideoScript):
                row.script_final = str(final_content)
            else:
                row.meta = {**(row.meta or {}), "final_content": final_content}
        session.flush()
        result = {"type": content_type, "id": row.id, "status": row.status}
    logger.info("content_status_updated", content_type=content_type, item_id=item_id, status=status)
    return result
