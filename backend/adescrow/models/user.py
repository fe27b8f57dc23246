from sqlalchemy import BigInteger, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from adescrow.db.base import Base


class User(Base):
    __tablename__ = "users"

    telegram_id: Mapped[int] = mapped_column(
        BigInteger, unique=True, index=True, nullable=False
    )
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    locale: Mapped[str] = mapped_column(String(10), default="en", server_default="en")
    wallet_address: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Balances in nanoTON
    balance_available: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0")
    total_earned: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0")
    total_spent: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0")

    total_deals: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    successful_deals: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
