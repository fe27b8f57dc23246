from datetime import datetime
from enum import StrEnum

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from adescrow.db.base import Base


class EscrowStatus(StrEnum):
    PENDING = "PENDING"
    FUNDED = "FUNDED"
    LOCKED = "LOCKED"
    RELEASING = "RELEASING"
    RELEASED = "RELEASED"
    REFUNDING = "REFUNDING"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"


class Escrow(Base):
    __tablename__ = "escrows"

    deal_id: Mapped[int] = mapped_column(
        ForeignKey("deals.id", ondelete="CASCADE"), unique=True, nullable=False, index=True
    )
    contract_address: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    advertiser_wallet: Mapped[str] = mapped_column(String(128), nullable=False)
    owner_wallet: Mapped[str] = mapped_column(String(128), nullable=False)
    platform_wallet: Mapped[str] = mapped_column(String(128), nullable=False)

    # nanoTON; amount = total_amount - platform_fee
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=EscrowStatus.PENDING, server_default="PENDING", index=True
    )
    deployed: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    funding_tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    release_tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refund_tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
