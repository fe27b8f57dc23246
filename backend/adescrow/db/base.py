from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models.

    Provides an auto-incrementing integer primary key and automatic
    created_at / updated_at timestamp columns.
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utcnow,
        onupdate=utcnow,
        server_onupdate=func.now(),
    )

    def __repr__(self) -> str:
        status = getattr(self, "status", None)
        suffix = f" status={status}" if status is not None else ""
        return f"<{type(self).__name__} id={self.id}{suffix}>"
