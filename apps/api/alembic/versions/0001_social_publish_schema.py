"""social publish schema

Revision ID: 0001_social_publish_schema
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001_social_publish_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

post_status = sa.Enum(
    "draft", "scheduled", "publishing", "posted", "failed", "deleted", name="social_post_status"
)
platform_enum = sa.Enum("instagram", "threads", "youtube", name="social_platform")
transaction_type = sa.Enum("usage", "refund", name="credit_transaction_type")


def upgrade() -> None:
    op.create_table(
        "social_posts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("team_id", sa.String(length=64), nullable=True),
        sa.Column("caption", sa.Text(), nullable=False, server_default=""),
        sa.Column("media_urls", JSONType, nullable=False),
        sa.Column("platforms", JSONType, nullable=False),
        sa.Column("cross_post", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("instagram_content_type", sa.String(length=16), nullable=True),
        sa.Column("threads_content_type", sa.String(length=16), nullable=True),
        sa.Column("youtube_content_type", sa.String(length=16), nullable=True),
        sa.Column("status", post_status, nullable=False, server_default="draft"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_token", sa.String(length=36), nullable=True),
        sa.Column("publish_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("instagram_post_id", sa.String(length=128), nullable=True),
        sa.Column("threads_post_id", sa.String(length=128), nullable=True),
        sa.Column("youtube_video_id", sa.String(length=128), nullable=True),
        sa.Column("threads_parts", JSONType, nullable=True),
        sa.Column("threads_sequence", JSONType, nullable=True),
        sa.Column("instagram_likes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("instagram_comments", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("instagram_reach", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("threads_likes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("threads_replies", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("threads_views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("youtube_views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("youtube_watch_time_minutes", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("youtube_subscribers_gained", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", JSONType, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_social_posts_status_scheduled_for", "social_posts", ["status", "scheduled_for"])
    op.create_index("ix_social_posts_team_status", "social_posts", ["team_id", "status", "scheduled_for"])
    op.create_index("ix_social_posts_user_created", "social_posts", ["user_id", "created_at"])

    op.create_table(
        "social_connected_accounts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("team_id", sa.String(length=64), nullable=True),
        sa.Column("platform", platform_enum, nullable=False),
        sa.Column("account_id", sa.String(length=128), nullable=False),
        sa.Column("account_username", sa.String(length=255), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_social_connected_accounts_scope", "social_connected_accounts", ["platform", "user_id", "team_id"]
    )

    op.create_table(
        "credit_balances",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("team_id", sa.String(length=64), nullable=True),
        sa.Column("credits_remaining", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", name="uq_credit_balances_user_id"),
        sa.UniqueConstraint("team_id", name="uq_credit_balances_team_id"),
        sa.CheckConstraint("credits_remaining >= 0", name="ck_credit_balances_non_negative"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("team_id", sa.String(length=64), nullable=True),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("credits_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("operation", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("service_name", sa.String(length=64), nullable=False, server_default="social-publisher"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_credit_transactions_user_created", "credit_transactions", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_credit_transactions_user_created", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("credit_balances")
    op.drop_index("ix_social_connected_accounts_scope", table_name="social_connected_accounts")
    op.drop_table("social_connected_accounts")
    op.drop_index("ix_social_posts_user_created", table_name="social_posts")
    op.drop_index("ix_social_posts_team_status", table_name="social_posts")
    op.drop_index("ix_social_posts_status_scheduled_for", table_name="social_posts")
    op.drop_table("social_posts")
    bind = op.get_bind()
    transaction_type.drop(bind, checkfirst=True)
    platform_enum.drop(bind, checkfirst=True)
    post_status.drop(bind, checkfirst=True)
