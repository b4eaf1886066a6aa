from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import text

from .base import Base
from .types import CanonicalJSON


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _tenant_fk(nullable: bool = False):
    return mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tenant.account_id", ondelete="CASCADE"),
        nullable=nullable,
        index=True,
    )


SOURCE_ARTICLE_STATUSES = ("scraped", "analyzed", "processed")
GENERATED_ARTICLE_STATUSES = ("draft", "review_pending", "approved", "published", "rejected")
JOB_TYPES = ("content_generation", "full_cycle", "news_aggregation", "ai_analysis")
JOB_STATUSES = ("queued", "processing", "completed", "failed", "cancelled")


class Tenant(Base):
    __tablename__ = "tenant"

    account_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    organization_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    name: Mapped[str] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class NewsSource(Base):
    __tablename__ = "news_source"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = _tenant_fk()
    name: Mapped[str] = mapped_column(Text)
    url: Mapped[str] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_scraped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class SourceArticle(Base):
    __tablename__ = "source_article"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = _tenant_fk()
    source_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("news_source.id", ondelete="SET NULL"), nullable=True
    )
    source_ref: Mapped[str | None] = mapped_column(Text)
    title: Mapped[str] = mapped_column(Text)
    url: Mapped[str] = mapped_column(Text, unique=True)
    body: Mapped[str | None] = mapped_column(Text)
    summary: Mapped[str | None] = mapped_column(Text)
    keywords: Mapped[list | None] = mapped_column(CanonicalJSON, nullable=True)
    relevance_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    quality: Mapped[dict | None] = mapped_column(CanonicalJSON, nullable=True)
    status: Mapped[str] = mapped_column(Text, default="scraped")
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status in ('scraped', 'analyzed', 'processed')", name="ck_source_article_status"
        ),
    )


class GeneratedArticle(Base):
    __tablename__ = "generated_article"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = _tenant_fk()
    based_on_article_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("source_article.id", ondelete="SET NULL"), nullable=True, index=True
    )
    based_on_evergreen_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(Text)
    body_draft: Mapped[str | None] = mapped_column(Text)
    body_final: Mapped[str | None] = mapped_column(Text)
    content_type: Mapped[str] = mapped_column(Text, default="blog")
    word_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(Text, default="draft")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    social_posts: Mapped[list["SocialPost"]] = relationship(
        back_populates="generated_article", cascade="all, delete-orphan", passive_deletes=True
    )
    video_scripts: Mapped[list["VideoScript"]] = relationship(
        back_populates="generated_article", cascade="all, delete-orphan", passive_deletes=True
    )
    contents: Mapped[list["Content"]] = relationship(
        back_populates="generated_article", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint(
            "content_type in ('blog', 'pr_article', 'social_post_long')",
            name="ck_generated_article_content_type",
        ),
        CheckConstraint(
            "status in ('draft', 'review_pending', 'approved', 'published', 'rejected')",
            name="ck_generated_article_status",
        ),
    )


class SocialPost(Base):
    __tablename__ = "social_post"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = _tenant_fk()
    based_on_gen_article_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("generated_article.id", ondelete="CASCADE"), index=True
    )
    platform: Mapped[str] = mapped_column(Text)
    text_draft: Mapped[str] = mapped_column(Text)
    text_final: Mapped[str | None] = mapped_column(Text)
    emotional_hook_present_ai_check: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(Text, default="draft")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    generated_article: Mapped[GeneratedArticle] = relationship(back_populates="social_posts")


class VideoScript(Base):
    __tablename__ = "video_script"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = _tenant_fk()
    based_on_gen_article_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("generated_article.id", ondelete="CASCADE"), index=True
    )
    title: Mapped[str] = mapped_column(Text)
    duration_target_seconds: Mapped[int] = mapped_column(Integer)
    script_draft: Mapped[str] = mapped_column(Text)
    script_final: Mapped[str | None] = mapped_column(Text)
    visual_suggestions: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, default="draft")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    generated_article: Mapped[GeneratedArticle] = relationship(back_populates="video_scripts")


class Content(Base):
    __tablename__ = "content"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = _tenant_fk()
    based_on_gen_article_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("generated_article.id", ondelete="CASCADE"), index=True
    )
    prompt_category: Mapped[str] = mapped_column(Text)
    content_data: Mapped[dict] = mapped_column(CanonicalJSON)
    meta: Mapped[dict | None] = mapped_column("metadata", CanonicalJSON, nullable=True)
    status: Mapped[str] = mapped_column(Text, default="draft")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    generated_article: Mapped[GeneratedArticle] = relationship(back_populates="contents")


class ContentImage(Base):
    __tablename__ = "content_image"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = _tenant_fk()
    gen_content_type: Mapped[str] = mapped_column(Text)
    gen_content_id: Mapped[int] = mapped_column(Integer)
    cdn_url: Mapped[str] = mapped_column(Text)
    external_id: Mapped[str | None] = mapped_column(Text)
    alt_text: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class PromptTemplate(Base):
    __tablename__ = "prompt_template"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID | None] = _tenant_fk(nullable=True)
    name: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(Text, index=True)
    description: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    ui_config: Mapped[dict | None] = mapped_column(CanonicalJSON, nullable=True)
    io_schemas: Mapped[dict | None] = mapped_column(CanonicalJSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    versions: Mapped[list["PromptVersion"]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PromptVersion.version_number",
    )


class PromptVersion(Base):
    __tablename__ = "prompt_version"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("prompt_template.id", ondelete="CASCADE"), index=True
    )
    version_number: Mapped[int] = mapped_column(Integer)
    prompt: Mapped[str] = mapped_column(Text)
    system_message: Mapped[str | None] = mapped_column(Text)
    parameters: Mapped[dict | None] = mapped_column(CanonicalJSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text)
    is_current: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    template: Mapped[PromptTemplate] = relationship(back_populates="versions")

    __table_args__ = (
        UniqueConstraint("template_id", "version_number", name="uq_prompt_version_number"),
        Index(
            "uq_prompt_version_current",
            "template_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current = 1"),
        ),
    )


class Workflow(Base):
    __tablename__ = "workflow"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID | None] = _tenant_fk(nullable=True)
    name: Mapped[str] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    steps: Mapped[list] = mapped_column(CanonicalJSON)
    input_sources: Mapped[list | None] = mapped_column(CanonicalJSON, nullable=True)
    output_destinations: Mapped[list | None] = mapped_column(CanonicalJSON, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class WorkflowExecution(Base):
    __tablename__ = "workflow_execution"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = _tenant_fk()
    workflow_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("workflow.id", ondelete="SET NULL"), nullable=True
    )
    gen_article_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("generated_article.id", ondelete="SET NULL"), nullable=True
    )
    source_article_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("source_article.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(Text)
    step_results: Mapped[dict | None] = mapped_column(CanonicalJSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Job(Base):
    __tablename__ = "job"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = _tenant_fk()
    job_type: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, default="queued", index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[dict] = mapped_column(CanonicalJSON, default=dict)
    results: Mapped[dict | None] = mapped_column(CanonicalJSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text)
    progress_pct: Mapped[int] = mapped_column(Integer, default=0)
    progress_text: Mapped[str | None] = mapped_column(Text)
    worker_id: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "job_type in ('content_generation', 'full_cycle', 'news_aggregation', 'ai_analysis')",
            name="ck_job_type",
        ),
        CheckConstraint(
            "status in ('queued', 'processing', 'completed', 'failed', 'cancelled')",
            name="ck_job_status",
        ),
        CheckConstraint("progress_pct between 0 and 100", name="ck_job_progress_pct"),
        Index("ix_job_claim_order", "status", "priority", "created_at"),
    )


class LLMResponseLog(Base):
    __tablename__ = "llm_response_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = _tenant_fk()
    gen_article_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("generated_article.id", ondelete="SET NULL"), nullable=True
    )
    template_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("prompt_template.id", ondelete="SET NULL"), nullable=True
    )
    version_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("prompt_version.id", ondelete="SET NULL"), nullable=True
    )
    category: Mapped[str] = mapped_column(Text, index=True)
    provider: Mapped[str] = mapped_column(Text)
    model: Mapped[str | None] = mapped_column(Text)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    prompt_text: Mapped[str] = mapped_column(Text)
    system_message: Mapped[str | None] = mapped_column(Text)
    response_text: Mapped[str | None] = mapped_column(Text)
    stop_reason: Mapped[str | None] = mapped_column(Text)
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    is_truncated: Mapped[bool] = mapped_column(Boolean, default=False)
    tokens_in: Mapped[int] = mapped_column(Integer, default=0)
    tokens_out: Mapped[int] = mapped_column(Integer, default=0)
    max_output_tokens: Mapped[int | None] = mapped_column(Integer)
    temperature: Mapped[float | None] = mapped_column(Float)
    generation_time_ms: Mapped[int | None] = mapped_column(Integer)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )


class AccountSetting(Base):
    __tablename__ = "account_setting"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = _tenant_fk()
    setting_type: Mapped[str] = mapped_column(Text)
    settings_data: Mapped[dict] = mapped_column(CanonicalJSON, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("account_id", "setting_type", name="uq_account_setting_type"),
    )


def advance_source_status(article: SourceArticle, status: str) -> bool:
    """Move a source article forward; never backwards."""
    order = SOURCE_ARTICLE_STATUSES
    if status not in order:
        raise ValueError(f"unknown source article status: {status}")
    if order.index(status) <= order.index(article.status or "scraped"):
        return False
    article.status = status
    return True
