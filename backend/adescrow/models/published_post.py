from datetime import datetime
from enum import StrEnum

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, JSON, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from adescrow.db.base import Base


class PostStatus(StrEnum):
    SCHEDULED = "SCHEDULED"
    PUBLISHING = "PUBLISHING"
    PUBLISHED = "PUBLISHED"
    DELETED = "DELETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PublishedPost(Base):
    __tablename__ = "published_posts"

    deal_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False, index=True
    )
    channel_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    media_urls: Mapped[list | None] = mapped_column(JSON, nullable=True)
    buttons: Mapped[list | None] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=PostStatus.SCHEDULED, server_default="SCHEDULED"
    )
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    telegram_message_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    post_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    scheduled_delete_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    views: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    reactions: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    forwards: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    verification_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_published_posts_status_scheduled", "status", "scheduled_for"),
        # At most one in-flight or live post per deal
        Index(
            "uq_published_posts_deal_active",
            "deal_id",
            unique=True,
            postgresql_where=text("status IN ('SCHEDULED', 'PUBLISHING', 'PUBLISHED')"),
        ),
    )
