"""Deal timeout enforcement.

Per-deal checks run from delayed jobs; ``check_all_timeouts`` and
``check_escrow_expiry`` are the periodic sweeps that catch anything a lost
job missed, and ``retry_failed_refunds`` returns deposits whose refund
failed when the deal closed. Every check re-reads the deal and acts only if
its status and deadline still match, so duplicate or late deliveries are
harmless.
"""

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adescrow.core import jobs as job_names
from adescrow.core.config import settings
from adescrow.core.errors import DomainError, InvalidTransitionError
from adescrow.core.jobs import JobQueue
from adescrow.db.base import utcnow
from adescrow.models.deal import Deal
from adescrow.models.escrow import Escrow, EscrowStatus
from adescrow.models.published_post import PostStatus, PublishedPost
from adescrow.services import timeline
from adescrow.services.deal_state_machine import DealStateMachine, DealStatus
from adescrow.services.escrow import EscrowService

logger = logging.getLogger(__name__)

PAYMENT = "payment"
CREATIVE = "creative"
POSTING = "posting"
GENERAL = "general"

# Which check the periodic sweep runs for a deal in a given status
SWEEP_ACTIONS: dict[DealStatus, str] = {
    DealStatus.CREATED: GENERAL,
    DealStatus.PENDING_PAYMENT: PAYMENT,
    DealStatus.PAYMENT_RECEIVED: GENERAL,
    DealStatus.IN_PROGRESS: GENERAL,
    DealStatus.CREATIVE_PENDING: CREATIVE,
    DealStatus.SCHEDULED: POSTING,
}

# Deals that closed without a payout
REFUND_ON_CLOSE_STATUSES = (DealStatus.CANCELLED, DealStatus.EXPIRED)


def timeout_key(deal_id: int) -> str:
    return f"timeout-{deal_id}"


class TimeoutSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        jobs: JobQueue,
        state_machine: DealStateMachine,
        escrow: EscrowService,
    ) -> None:
        self._session_factory = session_factory
        self._jobs = jobs
        self._dsm = state_machine
        self._escrow = escrow

    async def schedule_deal_timeout(self, deal_id: int, minutes: int | None = None) -> str | None:
        minutes = minutes or settings.deal_timeout_minutes
        return await self._jobs.enqueue(
            job_names.CHECK_DEAL_TIMEOUT,
            {"deal_id": deal_id, "action": GENERAL},
            delay_seconds=minutes * 60,
            dedupe_key=timeout_key(deal_id),
        )

    async def cancel_deal_timeout(self, deal_id: int) -> bool:
        return await self._jobs.cancel(timeout_key(deal_id))

    async def check_timeout(self, deal_id: int, action: str = GENERAL) -> bool:
        """Expire the deal if the deadline behind ``action`` has passed. Returns True if expired."""
        async with self._session_factory() as db:
            deal = await db.get(Deal, deal_id)
        if deal is None:
            logger.warning("Timeout check for missing deal %d", deal_id)
            return False

        now = utcnow()
        status = deal.status

        if action == PAYMENT:
            if status == DealStatus.PENDING_PAYMENT and deal.payment_deadline and now > deal.payment_deadline:
                return await self._expire(deal, timeline.PAYMENT_TIMEOUT, "Payment not received in time", refund=False)
            return False

        if action == CREATIVE:
            if status == DealStatus.CREATIVE_PENDING and deal.creative_deadline and now > deal.creative_deadline:
                return await self._expire(deal, timeline.CREATIVE_TIMEOUT, "Creative not submitted in time", refund=True)
            return False

        if action == POSTING:
            grace = timedelta(minutes=settings.posting_grace_minutes)
            if (
                status == DealStatus.SCHEDULED
                and deal.scheduled_post_time
                and now > deal.scheduled_post_time + grace
            ):
                if await self._has_published_post(deal.id):
                    logger.warning("Deal %d is past its posting grace but its post is live, not expiring", deal.id)
                    return False
                return await self._expire(deal, timeline.POSTING_TIMEOUT, "Post was not published in time", refund=True)
            return False

        last_activity = deal.last_activity_at or deal.created_at
        timeout = timedelta(minutes=deal.timeout_minutes or settings.deal_timeout_minutes)
        if last_activity is None or now <= last_activity + timeout:
            return False

        if status in (DealStatus.CREATED, DealStatus.PENDING_PAYMENT):
            return await self._expire(deal, timeline.DEAL_TIMEOUT, "Deal inactive for too long", refund=False)
        if status == DealStatus.CREATIVE_PENDING:
            return await self._expire(deal, timeline.DEAL_TIMEOUT, "Deal inactive for too long", refund=True)
        if status in (DealStatus.PAYMENT_RECEIVED, DealStatus.IN_PROGRESS):
            logger.warning("Deal %d stuck in %s since %s", deal.id, status, last_activity.isoformat())
        return False

    async def _expire(self, deal: Deal, cause: str, note: str, *, refund: bool) -> bool:
        try:
            await self._dsm.expire(deal.id, reason=note)
        except InvalidTransitionError as exc:
            logger.info("Deal %d not expired: %s", deal.id, exc)
            return False

        await timeline.record_timeline_entry(
            self._session_factory, deal.id, cause,
            note=note, details={"status": deal.status},
        )
        logger.info("Deal %d expired (%s)", deal.id, cause)

        if refund:
            escrow = await self._escrow.get_escrow_for_deal(deal.id)
            if escrow is not None and escrow.status == EscrowStatus.FUNDED:
                try:
                    await self._escrow.refund_advertiser(deal.id, reason=cause.lower())
                except DomainError:
                    logger.exception("Refund after %s failed for deal %d", cause, deal.id)
        return True

    async def _has_published_post(self, deal_id: int) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                select(PublishedPost).where(
                    PublishedPost.deal_id == deal_id,
                    PublishedPost.status == PostStatus.PUBLISHED,
                )
            )
            return result.scalars().first() is not None

    async def retry_failed_refunds(self) -> int:
        """Refund deposits still held for deals that ended without a payout.

        Covers refunds that failed when the deal was cancelled or expired.
        """
        async with self._session_factory() as db:
            result = await db.execute(select(Escrow).where(Escrow.status == EscrowStatus.FUNDED))
            escrows = result.scalars().all()
            stranded = []
            for escrow in escrows:
                deal = await db.get(Deal, escrow.deal_id)
                if deal is not None and deal.status in REFUND_ON_CLOSE_STATUSES:
                    stranded.append((escrow.id, deal.id, deal.status))

        refunded = 0
        for escrow_id, deal_id, status in stranded:
            try:
                await self._escrow.refund_advertiser(deal_id, reason=f"{status.lower()}_retry")
                refunded += 1
            except Exception:
                logger.exception("Refund retry failed for escrow %d (deal %d)", escrow_id, deal_id)
        logger.info("Refund retry sweep: %d of %d stranded deposits refunded", refunded, len(stranded))
        return refunded

    async def check_all_timeouts(self) -> int:
        """Periodic sweep over every deal in a status that can time out."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Deal).where(Deal.status.in_([s.value for s in SWEEP_ACTIONS]))
            )
            deals = result.scalars().all()

        expired = 0
        for deal in deals:
            try:
                if await self.check_timeout(deal.id, SWEEP_ACTIONS[DealStatus(deal.status)]):
                    expired += 1
            except Exception:
                logger.exception("Timeout check failed for deal %d", deal.id)
        logger.info("Timeout sweep: %d of %d deals expired", expired, len(deals))
        return expired

    async def check_escrow_expiry(self) -> int:
        """Cancel unfunded escrows past their funding deadline and expire their deals."""
        now = utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                select(Escrow).where(
                    Escrow.status == EscrowStatus.PENDING,
                    Escrow.expires_at < now,
                )
            )
            escrows = result.scalars().all()

        count = 0
        for escrow in escrows:
            try:
                if not await self._escrow.expire_pending(escrow.id):
                    continue
                count += 1
                deal = await self._dsm.get_deal(escrow.deal_id)
                if deal.status != DealStatus.PENDING_PAYMENT:
                    continue
                try:
                    await self._dsm.expire(deal.id, reason="Escrow funding deadline passed")
                except InvalidTransitionError as exc:
                    logger.info("Deal %d not expired after escrow expiry: %s", deal.id, exc)
                    continue
                await timeline.record_timeline_entry(
                    self._session_factory, deal.id, timeline.ESCROW_EXPIRED,
                    note="Escrow funding deadline passed",
                    details={"escrow_id": escrow.id},
                )
            except Exception:
                logger.exception("Escrow expiry failed for escrow %d", escrow.id)
        logger.info("Escrow expiry sweep: %d escrows cancelled", count)
        return count
