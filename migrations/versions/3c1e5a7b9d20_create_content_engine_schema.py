"""create content engine schema

Revision ID: 3c1e5a7b9d20
Revises:
Create Date: 2026-10-17 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "3c1e5a7b9d20"
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _tenant_column(nullable: bool = False) -> sa.Column:
    return sa.Column(
        "account_id",
        sa.Uuid(),
        sa.ForeignKey("tenant.account_id", ondelete="CASCADE"),
        nullable=nullable,
    )


def _timestamps(updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False))
    return columns


def upgrade() -> None:
    op.create_table(
        "tenant",
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("account_id"),
    )

    op.create_table(
        "news_source",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_scraped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_news_source_account_id", "news_source", ["account_id"])

    op.create_table(
        "source_article",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(),
        sa.Column("source_id", sa.Integer(), sa.ForeignKey("news_source.id", ondelete="SET NULL"), nullable=True),
        sa.Column("source_ref", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("keywords", JSON, nullable=True),
        sa.Column("relevance_score", sa.Float(), nullable=True),
        sa.Column("quality", JSON, nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="scraped"),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status in ('scraped', 'analyzed', 'processed')", name="ck_source_article_status"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("url"),
    )
    op.create_index("ix_source_article_account_id", "source_article", ["account_id"])

    op.create_table(
        "generated_article",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(),
        sa.Column(
            "based_on_article_id",
            sa.Integer(),
            sa.ForeignKey("source_article.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("based_on_evergreen_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("body_draft", sa.Text(), nullable=True),
        sa.Column("body_final", sa.Text(), nullable=True),
        sa.Column("content_type", sa.Text(), nullable=False, server_default="blog"),
        sa.Column("word_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.Text(), nullable=False, server_default="draft"),
        *_timestamps(),
        sa.CheckConstraint(
            "content_type in ('blog', 'pr_article', 'social_post_long')",
            name="ck_generated_article_content_type",
        ),
        sa.CheckConstraint(
            "status in ('draft', 'review_pending', 'approved', 'published', 'rejected')",
            name="ck_generated_article_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generated_article_account_id", "generated_article", ["account_id"])
    op.create_index("ix_generated_article_based_on_article_id", "generated_article", ["based_on_article_id"])

    op.create_table(
        "social_post",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(),
        sa.Column(
            "based_on_gen_article_id",
            sa.Integer(),
            sa.ForeignKey("generated_article.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("platform", sa.Text(), nullable=False),
        sa.Column("text_draft", sa.Text(), nullable=False),
        sa.Column("text_final", sa.Text(), nullable=True),
        sa.Column("emotional_hook_present_ai_check", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.Text(), nullable=False, server_default="draft"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_social_post_account_id", "social_post", ["account_id"])
    op.create_index("ix_social_post_based_on_gen_article_id", "social_post", ["based_on_gen_article_id"])

    op.create_table(
        "video_script",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(),
        sa.Column(
            "based_on_gen_article_id",
            sa.Integer(),
            sa.ForeignKey("generated_article.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("duration_target_seconds", sa.Integer(), nullable=False),
        sa.Column("script_draft", sa.Text(), nullable=False),
        sa.Column("script_final", sa.Text(), nullable=True),
        sa.Column("visual_suggestions", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="draft"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_video_script_account_id", "video_script", ["account_id"])
    op.create_index("ix_video_script_based_on_gen_article_id", "video_script", ["based_on_gen_article_id"])

    op.create_table(
        "content",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(),
        sa.Column(
            "based_on_gen_article_id",
            sa.Integer(),
            sa.ForeignKey("generated_article.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("prompt_category", sa.Text(), nullable=False),
        sa.Column("content_data", JSON, nullable=False),
        sa.Column("metadata", JSON, nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="draft"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_content_account_id", "content", ["account_id"])
    op.create_index("ix_content_based_on_gen_article_id", "content", ["based_on_gen_article_id"])

    op.create_table(
        "content_image",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(),
        sa.Column("gen_content_type", sa.Text(), nullable=False),
        sa.Column("gen_content_id", sa.Integer(), nullable=False),
        sa.Column("cdn_url", sa.Text(), nullable=False),
        sa.Column("external_id", sa.Text(), nullable=True),
        sa.Column("alt_text", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_content_image_account_id", "content_image", ["account_id"])

    op.create_table(
        "prompt_template",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("ui_config", JSON, nullable=True),
        sa.Column("io_schemas", JSON, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_prompt_template_account_id", "prompt_template", ["account_id"])
    op.create_index("ix_prompt_template_category", "prompt_template", ["category"])

    op.create_table(
        "prompt_version",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("prompt_template.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("system_message", sa.Text(), nullable=True),
        sa.Column("parameters", JSON, nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("template_id", "version_number", name="uq_prompt_version_number"),
    )
    op.create_index("ix_prompt_version_template_id", "prompt_version", ["template_id"])
    op.create_index(
        "uq_prompt_version_current",
        "prompt_version",
        ["template_id"],
        unique=True,
        postgresql_where=sa.text("is_current"),
        sqlite_where=sa.text("is_current = 1"),
    )

    op.create_table(
        "workflow",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("steps", JSON, nullable=False),
        sa.Column("input_sources", JSON, nullable=True),
        sa.Column("output_destinations", JSON, nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_account_id", "workflow", ["account_id"])

    op.create_table(
        "workflow_execution",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(),
        sa.Column("workflow_id", sa.Integer(), sa.ForeignKey("workflow.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "gen_article_id",
            sa.Integer(),
            sa.ForeignKey("generated_article.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "source_article_id",
            sa.Integer(),
            sa.ForeignKey("source_article.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("step_results", JSON, nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_execution_account_id", "workflow_execution", ["account_id"])

    op.create_table(
        "job",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(),
        sa.Column("job_type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="queued"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload", JSON, nullable=False),
        sa.Column("results", JSON, nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("progress_pct", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_text", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "job_type in ('content_generation', 'full_cycle', 'news_aggregation', 'ai_analysis')",
            name="ck_job_type",
        ),
        sa.CheckConstraint(
            "status in ('queued', 'processing', 'completed', 'failed', 'cancelled')",
            name="ck_job_status",
        ),
        sa.CheckConstraint("progress_pct between 0 and 100", name="ck_job_progress_pct"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_account_id", "job", ["account_id"])
    op.create_index("ix_job_status", "job", ["status"])
    op.create_index("ix_job_claim_order", "job", ["status", "priority", "created_at"])

    op.create_table(
        "llm_response_log",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(),
        sa.Column(
            "gen_article_id",
            sa.Integer(),
            sa.ForeignKey("generated_article.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("prompt_template.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "version_id",
            sa.Integer(),
            sa.ForeignKey("prompt_version.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("prompt_text", sa.Text(), nullable=False),
        sa.Column("system_message", sa.Text(), nullable=True),
        sa.Column("response_text", sa.Text(), nullable=True),
        sa.Column("stop_reason", sa.Text(), nullable=True),
        sa.Column("is_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_truncated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("tokens_in", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tokens_out", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_output_tokens", sa.Integer(), nullable=True),
        sa.Column("temperature", sa.Float(), nullable=True),
        sa.Column("generation_time_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_llm_response_log_account_id", "llm_response_log", ["account_id"])
    op.create_index("ix_llm_response_log_category", "llm_response_log", ["category"])
    op.create_index("ix_llm_response_log_created_at", "llm_response_log", ["created_at"])

    op.create_table(
        "account_setting",
        sa.Column("id", sa.Integer(), nullable=False),
        _tenant_column(),
        sa.Column("setting_type", sa.Text(), nullable=False),
        sa.Column("settings_data", JSON, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "setting_type", name="uq_account_setting_type"),
    )
    op.create_index("ix_account_setting_account_id", "account_setting", ["account_id"])


def downgrade() -> None:
    for table in (
        "account_setting",
        "llm_response_log",
        "job",
        "workflow_execution",
        "workflow",
        "prompt_version",
        "prompt_template",
        "content_image",
        "content",
        "video_script",
        "social_post",
        "generated_article",
        "source_article",
        "news_source",
        "tenant",
    ):
        op.drop_table(table)
