"""User-facing deal operations.

Resolves the caller's role from the deal, then delegates to the state
machine and the escrow, posting and timeout services.
"""

import logging
import secrets
import string
import time
from datetime import datetime
from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adescrow.core.config import settings
from adescrow.core.errors import (
    InvalidStateError,
    InvalidTransitionError,
    LedgerError,
    MissingWalletError,
    NotFoundError,
    UnauthorizedError,
    ValidationFailure,
)
from adescrow.core.events import DealCreated, EventBus
from adescrow.db.base import utcnow
from adescrow.models.channel import Channel
from adescrow.models.deal import Deal
from adescrow.models.escrow import EscrowStatus
from adescrow.models.published_post import PublishedPost
from adescrow.models.user import User
from adescrow.services import timeline
from adescrow.services.deal_state_machine import (
    DealStateMachine,
    DealStatus,
    Role,
    can_transition,
    get_allowed_transitions,
)
from adescrow.services.escrow import EscrowService
from adescrow.services.posting import PostingService
from adescrow.services.timeouts import TimeoutSweeper

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase

# Deposit already paid out or mid-settlement
_SETTLING_OR_PAID_OUT = (EscrowStatus.RELEASING, EscrowStatus.RELEASED, EscrowStatus.REFUNDING)


class DisputeOutcome(StrEnum):
    RELEASE = "release"
    REFUND = "refund"


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_reference_code() -> str:
    """Human-readable deal reference: AD-<base36 ms timestamp>-<4 random>."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"AD-{_base36(int(time.time() * 1000))}-{suffix}"


def calculate_fee(price: int, fee_percent: int | None = None) -> int:
    percent = settings.platform_fee_percent if fee_percent is None else fee_percent
    return price * percent // 100


class DealService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        events: EventBus,
        state_machine: DealStateMachine,
        escrow: EscrowService,
        posting: PostingService,
        timeouts: TimeoutSweeper,
    ) -> None:
        self._session_factory = session_factory
        self._events = events
        self._dsm = state_machine
        self._escrow = escrow
        self._posting = posting
        self._timeouts = timeouts

    async def create_deal(
        self,
        advertiser_id: int,
        channel_id: int,
        price: int,
        *,
        brief: str | None = None,
        requirements: str | None = None,
        scheduled_post_time: datetime | None = None,
        duration_hours: int | None = None,
        is_permanent: bool = False,
        timeout_minutes: int | None = None,
    ) -> Deal:
        if price <= 0:
            raise ValidationFailure("Price must be positive")
        duration = settings.default_post_duration_hours if duration_hours is None else duration_hours
        if not is_permanent and duration <= 0:
            raise ValidationFailure("Post duration must be positive")
        timeout = timeout_minutes or settings.deal_timeout_minutes

        async with self._session_factory() as db:
            advertiser = await db.get(User, advertiser_id)
            if advertiser is None:
                raise NotFoundError("User", advertiser_id)
            channel = await db.get(Channel, channel_id)
            if channel is None:
                raise NotFoundError("Channel", channel_id)
            if channel.owner_id == advertiser_id:
                raise ValidationFailure("Cannot buy an ad placement in your own channel")

            fee = calculate_fee(price)
            deal = Deal(
                reference_code=generate_reference_code(),
                status=DealStatus.CREATED.value,
                advertiser_id=advertiser_id,
                owner_id=channel.owner_id,
                channel_id=channel.id,
                price=price,
                platform_fee=fee,
                total_amount=price + fee,
                brief=brief,
                requirements=requirements,
                scheduled_post_time=scheduled_post_time,
                duration_hours=duration,
                is_permanent=is_permanent,
                timeout_minutes=timeout,
                last_activity_at=utcnow(),
            )
            db.add(deal)
            await db.flush()
            timeline.add_timeline_entry(
                db, deal.id, timeline.DEAL_CREATED,
                to_status=DealStatus.CREATED.value,
                actor_id=advertiser_id,
                actor_type="USER",
                details={"price": price, "platform_fee": fee},
            )
            await db.commit()

        logger.info(
            "Deal %d (%s) created: channel=%d price=%d fee=%d",
            deal.id, deal.reference_code, channel_id, price, fee,
        )
        await self._timeouts.schedule_deal_timeout(deal.id, timeout)
        await self._events.publish(DealCreated(
            deal.id, advertiser_id=advertiser_id, owner_id=deal.owner_id, total_amount=deal.total_amount,
        ))
        return deal

    async def get_deal(self, deal_id: int, user_id: int) -> Deal:
        deal = await self._dsm.get_deal(deal_id)
        self._resolve_role(deal, user_id)
        return deal

    @staticmethod
    def _resolve_role(deal: Deal, user_id: int) -> Role:
        if user_id == deal.advertiser_id:
            return Role.ADVERTISER
        if user_id == deal.owner_id:
            return Role.CHANNEL_OWNER
        raise UnauthorizedError(f"User {user_id} is not a party to deal {deal.id}")

    async def _role_for(self, deal_id: int, user_id: int) -> Role:
        deal = await self._dsm.get_deal(deal_id)
        return self._resolve_role(deal, user_id)

    async def get_allowed_actions(self, deal_id: int, user_id: int) -> list[str]:
        deal = await self._dsm.get_deal(deal_id)
        role = self._resolve_role(deal, user_id)
        return [target.value for target in get_allowed_transitions(deal.status, role)]

    # -- negotiation ----------------------------------------------------------

    async def accept(self, deal_id: int, user_id: int) -> Deal:
        role = await self._role_for(deal_id, user_id)
        deal = await self._dsm.accept(deal_id, role, actor_id=user_id)
        try:
            await self._escrow.create_escrow(deal_id)
        except (MissingWalletError, LedgerError) as exc:
            # Escrow is created lazily on the payment-info request instead
            logger.warning("Deal %d accepted but escrow not created yet: %s", deal_id, exc)
        return deal

    async def reject(self, deal_id: int, user_id: int, reason: str | None = None) -> Deal:
        role = await self._role_for(deal_id, user_id)
        deal = await self._dsm.reject(deal_id, role, actor_id=user_id, reason=reason)
        await self._timeouts.cancel_deal_timeout(deal_id)
        return deal

    async def cancel(self, deal_id: int, user_id: int, reason: str | None = None) -> Deal:
        role = await self._role_for(deal_id, user_id)
        deal = await self._dsm.cancel(deal_id, role, actor_id=user_id, reason=reason)

        escrow = await self._escrow.get_escrow_for_deal(deal_id)
        if escrow is not None and escrow.status == EscrowStatus.FUNDED:
            await self._escrow.refund_advertiser(deal_id, reason="cancelled")
        await self._posting.cancel_posts_for_deal(deal_id)
        await self._timeouts.cancel_deal_timeout(deal_id)
        return deal

    # -- creative -------------------------------------------------------------

    async def submit_creative(self, deal_id: int, user_id: int, note: str | None = None) -> Deal:
        role = await self._role_for(deal_id, user_id)
        return await self._dsm.submit_creative(deal_id, role, actor_id=user_id, note=note)

    async def approve_creative(self, deal_id: int, user_id: int) -> Deal:
        role = await self._role_for(deal_id, user_id)
        return await self._dsm.approve_creative(deal_id, role, actor_id=user_id)

    async def request_revision(self, deal_id: int, user_id: int, feedback: str | None = None) -> Deal:
        role = await self._role_for(deal_id, user_id)
        return await self._dsm.request_revision(deal_id, role, actor_id=user_id, feedback=feedback)

    # -- posting and completion -------------------------------------------------

    async def confirm_posted(
        self,
        deal_id: int,
        user_id: int,
        *,
        message_id: int | None = None,
        post_url: str | None = None,
    ) -> PublishedPost:
        return await self._posting.confirm_manual_post(
            deal_id, user_id, message_id=message_id, post_url=post_url,
        )

    async def confirm_completion(self, deal_id: int, user_id: int) -> Deal:
        """Advertiser accepts the placement early: pays out and completes."""
        deal = await self._dsm.get_deal(deal_id)
        role = self._resolve_role(deal, user_id)
        if not can_transition(deal.status, DealStatus.COMPLETED, role):
            raise InvalidTransitionError(deal.status, DealStatus.COMPLETED, role)
        await self._escrow.release_funds(
            deal_id, role, completion_action="confirm_completion", actor_id=user_id,
        )
        return await self._dsm.get_deal(deal_id)

    # -- disputes -------------------------------------------------------------

    async def open_dispute(self, deal_id: int, user_id: int, reason: str | None = None) -> Deal:
        role = await self._role_for(deal_id, user_id)
        deal = await self._dsm.open_dispute(deal_id, role, actor_id=user_id, reason=reason)
        await self._escrow.lock_for_dispute(deal_id)
        return deal

    async def resolve_dispute(
        self, deal_id: int, admin_id: int, outcome: str, note: str | None = None,
    ) -> Deal:
        outcome = DisputeOutcome(outcome)
        deal = await self._dsm.get_deal(deal_id)
        if deal.status != DealStatus.DISPUTED:
            target = DealStatus.COMPLETED if outcome == DisputeOutcome.RELEASE else DealStatus.REFUNDED
            raise InvalidTransitionError(deal.status, target, Role.ADMIN)

        if outcome == DisputeOutcome.RELEASE:
            await self._escrow.release_funds(
                deal_id, Role.ADMIN, completion_action="resolve_dispute", actor_id=admin_id,
            )
            return await self._dsm.get_deal(deal_id)

        escrow = await self._escrow.get_escrow_for_deal(deal_id)
        if escrow is not None and escrow.status in (EscrowStatus.FUNDED, EscrowStatus.LOCKED):
            await self._escrow.refund_advertiser(deal_id, reason="dispute_resolved")
        elif escrow is not None and escrow.status in _SETTLING_OR_PAID_OUT:
            raise InvalidStateError(
                f"Escrow {escrow.id} is {escrow.status}, the deposit cannot be refunded"
            )
        return await self._dsm.resolve_dispute(
            deal_id, DealStatus.REFUNDED, Role.ADMIN, actor_id=admin_id, note=note,
        )
