"""Escrow orchestration: custody lifecycle of a deal's funds.

PENDING -> FUNDED -> RELEASING -> RELEASED, or FUNDED -> REFUNDING -> REFUNDED.
LOCKED is the dispute hold; CANCELLED ends an unfunded escrow. Release and
refund claim the escrow (RELEASING/REFUNDING) before touching the ledger
and roll back to FUNDED if the ledger call fails.
"""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adescrow.core import jobs as job_names
from adescrow.core.config import settings
from adescrow.core.errors import (
    InvalidStateError,
    InvalidTransitionError,
    LedgerError,
    MissingWalletError,
    NotFoundError,
)
from adescrow.core.events import EscrowCreated, EscrowFunded, EscrowRefunded, EscrowReleased, EventBus
from adescrow.core.jobs import JobQueue
from adescrow.db.base import utcnow
from adescrow.models.channel import Channel
from adescrow.models.deal import Deal
from adescrow.models.escrow import Escrow, EscrowStatus
from adescrow.models.transaction import Transaction, TransactionStatus, TransactionType
from adescrow.models.user import User
from adescrow.services.deal_state_machine import (
    DealStateMachine,
    DealStatus,
    Role,
    can_transition,
    is_terminal,
)
from adescrow.services.ton.ledger import EscrowParams, LedgerClient

logger = logging.getLogger(__name__)

NANOTON = 1_000_000_000

_RELEASABLE = (EscrowStatus.FUNDED, EscrowStatus.LOCKED)


def format_ton(amount: int) -> str:
    """nanoTON -> human readable TON string without trailing zeros."""
    whole, frac = divmod(amount, NANOTON)
    if not frac:
        return str(whole)
    return f"{whole}.{frac:09d}".rstrip("0")


async def get_escrow_for_deal(db: AsyncSession, deal_id: int) -> Escrow | None:
    result = await db.execute(select(Escrow).where(Escrow.deal_id == deal_id))
    return result.scalar_one_or_none()


async def _claim(db: AsyncSession, escrow: Escrow, from_statuses, **values: Any) -> bool:
    """Conditional status update; applies ``values`` to ``escrow`` when a row was claimed."""
    result = await db.execute(
        update(Escrow)
        .where(Escrow.id == escrow.id, Escrow.status.in_([str(s) for s in from_statuses]))
        .values(**values)
    )
    if result.rowcount == 0:
        return False
    for key, value in values.items():
        setattr(escrow, key, value)
    return True


class EscrowService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerClient,
        jobs: JobQueue,
        events: EventBus,
        state_machine: DealStateMachine,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._jobs = jobs
        self._events = events
        self._dsm = state_machine

    async def get_escrow(self, escrow_id: int) -> Escrow:
        async with self._session_factory() as db:
            escrow = await db.get(Escrow, escrow_id)
        if escrow is None:
            raise NotFoundError("Escrow", escrow_id)
        return escrow

    async def get_escrow_for_deal(self, deal_id: int) -> Escrow | None:
        async with self._session_factory() as db:
            return await get_escrow_for_deal(db, deal_id)

    # -- creation -----------------------------------------------------------

    async def create_escrow(self, deal_id: int) -> Escrow:
        """Create the custody record for a deal and start polling for its payment.

        An existing live escrow is returned as is; a CANCELLED one is replaced.
        """
        async with self._session_factory() as db:
            deal = await db.get(Deal, deal_id)
            if deal is None:
                raise NotFoundError("Deal", deal_id)

            existing = await get_escrow_for_deal(db, deal_id)
            if existing is not None:
                if existing.status != EscrowStatus.CANCELLED:
                    return existing
                logger.info("Deal %d: replacing cancelled escrow %d", deal_id, existing.id)
                await db.delete(existing)
                await db.flush()

            advertiser = await db.get(User, deal.advertiser_id)
            if advertiser is None:
                raise NotFoundError("User", deal.advertiser_id)
            if not advertiser.wallet_address:
                raise MissingWalletError(advertiser.id)

            platform_wallet = self._ledger.platform_address
            owner = await db.get(User, deal.owner_id)
            owner_wallet = owner.wallet_address if owner is not None and owner.wallet_address else None
            if owner_wallet is None:
                logger.warning("Deal %d: owner has no wallet, payout routed to platform wallet", deal_id)
                owner_wallet = platform_wallet

            now = utcnow()
            expires_at = now + timedelta(hours=settings.escrow_funding_hours)
            params = EscrowParams(
                deal_id=deal.id,
                advertiser_address=advertiser.wallet_address,
                owner_address=owner_wallet,
                platform_address=platform_wallet,
                amount=deal.total_amount - deal.platform_fee,
                platform_fee=deal.platform_fee,
                deadline=expires_at,
            )

            deployed = True
            try:
                address = await self._ledger.deploy_escrow(params)
            except LedgerError as exc:
                logger.warning(
                    "Deal %d: escrow deploy failed (%s), using computed address", deal_id, exc,
                )
                address = self._ledger.compute_escrow_address(params)
                deployed = False

            escrow = Escrow(
                deal_id=deal.id,
                contract_address=address,
                advertiser_wallet=params.advertiser_address,
                owner_wallet=params.owner_address,
                platform_wallet=params.platform_address,
                amount=params.amount,
                platform_fee=params.platform_fee,
                total_amount=deal.total_amount,
                status=EscrowStatus.PENDING,
                deployed=deployed,
                expires_at=expires_at,
                details={
                    "contract_type": "deal_escrow",
                    "reference_code": deal.reference_code,
                    "deadline": expires_at.isoformat(),
                },
            )
            db.add(escrow)
            try:
                await db.commit()
            except IntegrityError:
                # Concurrent creation for the same deal won the unique constraint
                await db.rollback()
                winner = await get_escrow_for_deal(db, deal_id)
                if winner is None:
                    raise
                return winner

        logger.info(
            "Created escrow %d for deal %d: address=%s total=%d fee=%d deployed=%s",
            escrow.id, deal_id, address, escrow.total_amount, escrow.platform_fee, deployed,
        )
        await self._jobs.enqueue(
            job_names.MONITOR_PAYMENT,
            {"escrow_id": escrow.id, "check": 1},
            delay_seconds=settings.payment_poll_initial_delay_seconds,
            dedupe_key=f"monitor-payment-{escrow.id}",
        )
        await self._events.publish(EscrowCreated(
            deal_id,
            escrow_id=escrow.id,
            contract_address=address,
            total_amount=escrow.total_amount,
            deployed=deployed,
        ))
        return escrow

    async def get_payment_info(self, deal_id: int) -> dict[str, Any]:
        """Where and how much the advertiser must pay, creating the escrow lazily."""
        escrow = await self.get_escrow_for_deal(deal_id)
        if escrow is None or escrow.status == EscrowStatus.CANCELLED:
            deal = await self._dsm.get_deal(deal_id)
            if deal.status != DealStatus.PENDING_PAYMENT:
                raise InvalidStateError(f"Deal {deal_id} is {deal.status}, payment is not expected")
            escrow = await self.create_escrow(deal_id)
        return {
            "escrow_id": escrow.id,
            "address": escrow.contract_address,
            "amount": escrow.total_amount,
            "amount_ton": format_ton(escrow.total_amount),
            "payment_link": f"ton://transfer/{escrow.contract_address}?amount={escrow.total_amount}",
            "expires_at": escrow.expires_at,
            "status": escrow.status,
        }

    # -- funding ------------------------------------------------------------

    async def confirm_payment(self, escrow_id: int, tx_hash: str) -> Escrow:
        async with self._session_factory() as db:
            escrow = await db.get(Escrow, escrow_id)
            if escrow is None:
                raise NotFoundError("Escrow", escrow_id)
            if escrow.status != EscrowStatus.PENDING:
                raise InvalidStateError(f"Escrow {escrow_id} is {escrow.status}, expected PENDING")

            now = utcnow()
            claimed = await _claim(
                db, escrow, [EscrowStatus.PENDING],
                status=EscrowStatus.FUNDED.value, funding_tx_hash=tx_hash, funded_at=now,
            )
            if not claimed:
                await db.rollback()
                raise InvalidStateError(f"Escrow {escrow_id} was funded concurrently")

            db.add(Transaction(
                escrow_id=escrow.id,
                type=TransactionType.ESCROW_LOCK,
                status=TransactionStatus.CONFIRMED,
                amount=escrow.total_amount,
                from_address=escrow.advertiser_wallet,
                to_address=escrow.contract_address,
                tx_hash=tx_hash,
                confirmed_at=now,
                description="Escrow funded by advertiser",
            ))
            deal = await db.get(Deal, escrow.deal_id)
            if deal is not None:
                advertiser = await db.get(User, deal.advertiser_id)
                if advertiser is not None:
                    advertiser.total_spent = (advertiser.total_spent or 0) + escrow.total_amount
            await db.commit()

        logger.info("Escrow %d funded (deal %d, tx=%s)", escrow.id, escrow.deal_id, tx_hash)
        try:
            await self._dsm.confirm_payment(escrow.deal_id, tx_hash=tx_hash)
            await self._dsm.start(escrow.deal_id)
        except InvalidTransitionError:
            deal = await self._dsm.get_deal(escrow.deal_id)
            if not is_terminal(deal.status):
                raise
            logger.warning(
                "Payment arrived for deal %d in %s, refunding", escrow.deal_id, deal.status,
            )
            await self._events.publish(EscrowFunded(escrow.deal_id, escrow_id=escrow.id, tx_hash=tx_hash))
            return await self.refund_advertiser(escrow.deal_id, reason="payment_after_close")

        await self._events.publish(EscrowFunded(escrow.deal_id, escrow_id=escrow.id, tx_hash=tx_hash))
        return escrow

    async def check_payment(self, escrow_id: int) -> bool:
        """Query the ledger for the escrow's deposit; confirm it when found."""
        escrow = await self.get_escrow(escrow_id)
        if escrow.status != EscrowStatus.PENDING:
            return False

        since = escrow.created_at - timedelta(seconds=60)
        check = await self._ledger.check_incoming_payment(
            escrow.contract_address, escrow.total_amount, since,
        )
        if not check.received:
            return False

        tx_hash = check.tx_hash or f"detected-{escrow.id}-{int(utcnow().timestamp())}"
        try:
            await self.confirm_payment(escrow.id, tx_hash)
        except InvalidStateError:
            logger.info("Escrow %d already confirmed by a concurrent check", escrow.id)
        return True

    async def poll_payment(self, escrow_id: int, check: int = 1) -> bool:
        """One payment-monitor round; schedules the next round while still PENDING."""
        if await self.check_payment(escrow_id):
            return True

        escrow = await self.get_escrow(escrow_id)
        if escrow.status != EscrowStatus.PENDING:
            return False
        if check >= settings.payment_poll_max_checks:
            logger.info("Escrow %d: payment not detected after %d checks, giving up", escrow_id, check)
            return False
        if escrow.expires_at is not None and escrow.expires_at <= utcnow():
            logger.info("Escrow %d: funding deadline passed, stopping monitor", escrow_id)
            return False

        await self._jobs.enqueue(
            job_names.MONITOR_PAYMENT,
            {"escrow_id": escrow_id, "check": check + 1},
            delay_seconds=settings.payment_poll_interval_seconds,
            dedupe_key=f"monitor-payment-{escrow_id}-{check + 1}",
        )
        return False

    # -- payout -------------------------------------------------------------

    async def _begin_settlement(
        self, deal_id: int, claim_status: EscrowStatus, role: str | None = None,
    ) -> Escrow:
        """Claim the escrow for a ledger call.

        For a release, ``role`` must be able to complete the deal in its
        current status; a disputed deal is only paid out by an admin.
        """
        async with self._session_factory() as db:
            escrow = await get_escrow_for_deal(db, deal_id)
            if escrow is None:
                raise NotFoundError("Escrow for deal", deal_id)
            if escrow.status not in _RELEASABLE:
                raise InvalidStateError(
                    f"Escrow {escrow.id} is {escrow.status}, expected FUNDED or LOCKED"
                )
            if claim_status == EscrowStatus.RELEASING:
                deal = await db.get(Deal, deal_id)
                if deal is None:
                    raise NotFoundError("Deal", deal_id)
                if not can_transition(deal.status, DealStatus.COMPLETED, role):
                    raise InvalidTransitionError(
                        deal.status, DealStatus.COMPLETED, role, reason="funds cannot be released",
                    )
            if not await _claim(db, escrow, _RELEASABLE, status=claim_status.value):
                await db.rollback()
                raise InvalidStateError(f"Escrow {escrow.id} is already being settled")
            await db.commit()
        return escrow

    async def _rollback_settlement(self, escrow: Escrow, claim_status: EscrowStatus) -> None:
        async with self._session_factory() as db:
            await _claim(db, escrow, [claim_status], status=EscrowStatus.FUNDED.value)
            await db.commit()
        logger.warning("Escrow %d rolled back %s -> FUNDED", escrow.id, claim_status)

    async def release_funds(
        self,
        deal_id: int,
        role: str = Role.SYSTEM,
        *,
        completion_action: str = "complete",
        actor_id: int | None = None,
    ) -> Escrow:
        """Pay the channel owner and complete the deal."""
        escrow = await self._begin_settlement(deal_id, EscrowStatus.RELEASING, role)

        try:
            tx_hash = await self._ledger.send_release(escrow.contract_address)
        except Exception:
            logger.exception("Release failed for escrow %d (deal %d)", escrow.id, deal_id)
            await self._rollback_settlement(escrow, EscrowStatus.RELEASING)
            raise

        async with self._session_factory() as db:
            now = utcnow()
            escrow = await db.get(Escrow, escrow.id)
            escrow.status = EscrowStatus.RELEASED.value
            escrow.release_tx_hash = tx_hash
            escrow.released_at = now
            db.add(Transaction(
                escrow_id=escrow.id,
                type=TransactionType.PAYOUT,
                status=TransactionStatus.CONFIRMED,
                amount=escrow.amount,
                from_address=escrow.contract_address,
                to_address=escrow.owner_wallet,
                tx_hash=tx_hash,
                confirmed_at=now,
                description="Payout to channel owner",
            ))

            deal = await db.get(Deal, deal_id)
            owner = await db.get(User, deal.owner_id)
            if owner is not None:
                owner.balance_available = (owner.balance_available or 0) + escrow.amount
                owner.total_earned = (owner.total_earned or 0) + escrow.amount
            for user in (owner, await db.get(User, deal.advertiser_id)):
                if user is not None:
                    user.total_deals = (user.total_deals or 0) + 1
                    user.successful_deals = (user.successful_deals or 0) + 1
            channel = await db.get(Channel, deal.channel_id)
            if channel is not None:
                channel.total_deals = (channel.total_deals or 0) + 1
                channel.successful_deals = (channel.successful_deals or 0) + 1
                channel.total_earnings = (channel.total_earnings or 0) + escrow.amount
            await db.commit()

        logger.info("Escrow %d released %d nanoTON to owner (deal %d)", escrow.id, escrow.amount, deal_id)

        if deal.status != DealStatus.COMPLETED:
            try:
                await self._dsm.complete(deal_id, role, action=completion_action, actor_id=actor_id)
            except InvalidTransitionError:
                logger.exception("Funds released but deal %d could not be completed", deal_id)

        await self._events.publish(EscrowReleased(
            deal_id, escrow_id=escrow.id, tx_hash=tx_hash, amount=escrow.amount,
        ))
        return escrow

    async def refund_advertiser(self, deal_id: int, reason: str | None = None) -> Escrow:
        """Return the full deposit to the advertiser. Does not change the deal status."""
        escrow = await self._begin_settlement(deal_id, EscrowStatus.REFUNDING)

        try:
            tx_hash = await self._ledger.send_refund(escrow.contract_address)
        except Exception:
            logger.exception("Refund failed for escrow %d (deal %d)", escrow.id, deal_id)
            await self._rollback_settlement(escrow, EscrowStatus.REFUNDING)
            raise

        async with self._session_factory() as db:
            now = utcnow()
            escrow = await db.get(Escrow, escrow.id)
            escrow.status = EscrowStatus.REFUNDED.value
            escrow.refund_tx_hash = tx_hash
            escrow.refunded_at = now
            db.add(Transaction(
                escrow_id=escrow.id,
                type=TransactionType.ESCROW_REFUND,
                status=TransactionStatus.CONFIRMED,
                amount=escrow.total_amount,
                from_address=escrow.contract_address,
                to_address=escrow.advertiser_wallet,
                tx_hash=tx_hash,
                confirmed_at=now,
                description=f"Refund to advertiser ({reason})" if reason else "Refund to advertiser",
            ))
            await db.commit()

        logger.info("Escrow %d refunded to advertiser (deal %d, reason=%s)", escrow.id, deal_id, reason)
        await self._events.publish(EscrowRefunded(
            deal_id, escrow_id=escrow.id, tx_hash=tx_hash, amount=escrow.total_amount, reason=reason,
        ))
        return escrow

    # -- holds and expiry ---------------------------------------------------

    async def lock_for_dispute(self, deal_id: int) -> bool:
        """Put a funded escrow on hold while a dispute is open."""
        async with self._session_factory() as db:
            escrow = await get_escrow_for_deal(db, deal_id)
            if escrow is None:
                return False
            locked = await _claim(db, escrow, [EscrowStatus.FUNDED], status=EscrowStatus.LOCKED.value)
            await db.commit()
        if locked:
            logger.info("Escrow %d locked for dispute on deal %d", escrow.id, deal_id)
        return locked

    async def expire_pending(self, escrow_id: int) -> bool:
        """Cancel an escrow that was never funded."""
        async with self._session_factory() as db:
            escrow = await db.get(Escrow, escrow_id)
            if escrow is None:
                return False
            cancelled = await _claim(db, escrow, [EscrowStatus.PENDING], status=EscrowStatus.CANCELLED.value)
            await db.commit()
        if cancelled:
            logger.info("Escrow %d cancelled: funding deadline passed", escrow_id)
        return cancelled
