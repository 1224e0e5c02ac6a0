from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base

JSONType = JSON().with_variant(JSONB, "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


class Platform(str, enum.Enum):
    instagram = "instagram"
    threads = "threads"
    youtube = "youtube"


PLATFORM_ORDER = (Platform.instagram, Platform.threads, Platform.youtube)


class PostStatus(str, enum.Enum):
    draft = "draft"
    scheduled = "scheduled"
    publishing = "publishing"
    posted = "posted"
    failed = "failed"
    deleted = "deleted"


class InstagramContentType(str, enum.Enum):
    feed = "feed"
    carousel = "carousel"
    reel = "reel"
    story = "story"


class ThreadsContentType(str, enum.Enum):
    text = "text"
    image = "image"
    video = "video"
    thread = "thread"


class YoutubeContentType(str, enum.Enum):
    video = "video"
    short = "short"


class CreditTransactionType(str, enum.Enum):
    usage = "usage"
    refund = "refund"


class Post(Base):
    __tablename__ = "social_posts"
    __table_args__ = (
        Index("ix_social_posts_status_scheduled_for", "status", "scheduled_for"),
        Index("ix_social_posts_team_status", "team_id", "status", "scheduled_for"),
        Index("ix_social_posts_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    caption: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media_urls: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    platforms: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    cross_post: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    instagram_content_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    threads_content_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    youtube_content_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    status: Mapped[PostStatus] = mapped_column(
        Enum(PostStatus, name="social_post_status", validate_strings=True),
        nullable=False,
        default=PostStatus.draft,
    )
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    publish_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    instagram_post_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    threads_post_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    youtube_video_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    threads_parts: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    threads_sequence: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)

    instagram_likes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    instagram_comments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    instagram_reach: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    threads_likes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    threads_replies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    threads_views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    youtube_views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    youtube_watch_time_minutes: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    youtube_subscribers_gained: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    post_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class ConnectedAccount(Base):
    __tablename__ = "social_connected_accounts"
    __table_args__ = (Index("ix_social_connected_accounts_scope", "platform", "user_id", "team_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    platform: Mapped[Platform] = mapped_column(
        Enum(Platform, name="social_platform", validate_strings=True), nullable=False
    )
    account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    account_username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class CreditBalance(Base):
    __tablename__ = "credit_balances"
    __table_args__ = (CheckConstraint("credits_remaining >= 0", name="ck_credit_balances_non_negative"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    credits_remaining: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (Index("ix_credit_transactions_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[CreditTransactionType] = mapped_column(
        Enum(CreditTransactionType, name="credit_transaction_type", validate_strings=True), nullable=False
    )
    credits_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    operation: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    service_name: Mapped[str] = mapped_column(String(64), nullable=False, default="social-publisher")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
