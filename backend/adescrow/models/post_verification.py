from sqlalchemy import Boolean, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from adescrow.db.base import Base


class PostVerification(Base):
    __tablename__ = "post_verifications"

    post_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("published_posts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    exists: Mapped[bool] = mapped_column(Boolean, nullable=False)
    views: Mapped[int] = mapped_column(Integer, default=0)
    reactions: Mapped[int] = mapped_column(Integer, default=0)
    forwards: Mapped[int] = mapped_column(Integer, default=0)
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False)
    is_final: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
