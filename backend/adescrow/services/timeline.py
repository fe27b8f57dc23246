"""Informational deal timeline entries (timeouts, post violations, duration end).

Status transitions write their own timeline rows inside the state machine;
these helpers cover entries that do not change the deal status.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adescrow.models.deal_timeline import DealTimeline

logger = logging.getLogger(__name__)

POST_DELETED_EARLY = "POST_DELETED_EARLY"
POST_EDITED = "POST_EDITED"
POST_DURATION_ENDED = "POST_DURATION_ENDED"
PAYMENT_TIMEOUT = "PAYMENT_TIMEOUT"
CREATIVE_TIMEOUT = "CREATIVE_TIMEOUT"
POSTING_TIMEOUT = "POSTING_TIMEOUT"
DEAL_TIMEOUT = "DEAL_TIMEOUT"
ESCROW_EXPIRED = "ESCROW_EXPIRED"
DEAL_CREATED = "deal_created"


def add_timeline_entry(
    db: AsyncSession,
    deal_id: int,
    event: str,
    *,
    note: str | None = None,
    details: dict[str, Any] | None = None,
    actor_id: int | None = None,
    actor_type: str = "SYSTEM",
    from_status: str | None = None,
    to_status: str | None = None,
) -> DealTimeline:
    """Stage a timeline row on ``db``; the caller owns the transaction."""
    entry = DealTimeline(
        deal_id=deal_id,
        event=event,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        actor_type=actor_type,
        details=details,
        note=note,
    )
    db.add(entry)
    return entry


async def record_timeline_entry(
    session_factory: async_sessionmaker[AsyncSession],
    deal_id: int,
    event: str,
    **kwargs: Any,
) -> None:
    """Write a single timeline row in its own transaction."""
    async with session_factory() as db:
        add_timeline_entry(db, deal_id, event, **kwargs)
        await db.commit()
    logger.info("Deal %d timeline: %s", deal_id, event)
