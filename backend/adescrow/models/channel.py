from sqlalchemy import BigInteger, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from adescrow.db.base import Base


class Channel(Base):
    __tablename__ = "channels"

    telegram_channel_id: Mapped[int] = mapped_column(
        BigInteger, unique=True, index=True, nullable=False
    )
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    total_deals: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    successful_deals: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    total_earnings: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0")

    @property
    def chat_ref(self) -> int | str:
        """Identifier accepted by both Bot API and MTProto."""
        return f"@{self.username}" if self.username else self.telegram_channel_id
