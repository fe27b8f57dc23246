"""Deal state machine.

The transition table and its read-only helpers are pure logic. The
``DealStateMachine`` service is the only writer of ``Deal.status``: every
transition is a conditional UPDATE narrowed on the current status plus one
DealTimeline row, committed together, followed by outbound events.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adescrow.core.config import settings
from adescrow.core.errors import InvalidTransitionError, NotFoundError, ValidationFailure
from adescrow.core.events import DealCompleted, DealStatusChanged, EventBus
from adescrow.db.base import utcnow
from adescrow.models.deal import Deal
from adescrow.models.deal_timeline import DealTimeline

logger = logging.getLogger(__name__)


class DealStatus(StrEnum):
    CREATED = "CREATED"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    IN_PROGRESS = "IN_PROGRESS"
    CREATIVE_PENDING = "CREATIVE_PENDING"
    CREATIVE_SUBMITTED = "CREATIVE_SUBMITTED"
    CREATIVE_REVISION_REQUESTED = "CREATIVE_REVISION_REQUESTED"
    CREATIVE_APPROVED = "CREATIVE_APPROVED"
    SCHEDULED = "SCHEDULED"
    POSTED = "POSTED"
    VERIFYING = "VERIFYING"
    VERIFIED = "VERIFIED"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    EXPIRED = "EXPIRED"


class Role(StrEnum):
    ADVERTISER = "advertiser"
    CHANNEL_OWNER = "channel_owner"
    ADMIN = "admin"
    SYSTEM = "system"


class ActorType(StrEnum):
    USER = "USER"
    SYSTEM = "SYSTEM"
    BOT = "BOT"


TERMINAL_STATUSES = frozenset({
    DealStatus.COMPLETED,
    DealStatus.CANCELLED,
    DealStatus.REFUNDED,
    DealStatus.EXPIRED,
})

_ADV = Role.ADVERTISER
_OWN = Role.CHANNEL_OWNER
_ADM = Role.ADMIN
_SYS = Role.SYSTEM

# current status -> {target status: roles allowed to perform it}
TRANSITIONS: dict[DealStatus, dict[DealStatus, frozenset[Role]]] = {
    DealStatus.CREATED: {
        DealStatus.PENDING_PAYMENT: frozenset({_OWN}),
        DealStatus.CANCELLED: frozenset({_OWN, _ADV}),
    },
    DealStatus.PENDING_PAYMENT: {
        DealStatus.PAYMENT_RECEIVED: frozenset({_SYS}),
        DealStatus.CANCELLED: frozenset({_ADV}),
        DealStatus.EXPIRED: frozenset({_SYS}),
    },
    DealStatus.PAYMENT_RECEIVED: {
        DealStatus.IN_PROGRESS: frozenset({_SYS}),
    },
    DealStatus.IN_PROGRESS: {
        DealStatus.CREATIVE_PENDING: frozenset({_SYS}),
    },
    DealStatus.CREATIVE_PENDING: {
        DealStatus.CREATIVE_SUBMITTED: frozenset({_OWN}),
        DealStatus.CANCELLED: frozenset({_ADV, _OWN}),
        DealStatus.EXPIRED: frozenset({_SYS}),
    },
    DealStatus.CREATIVE_SUBMITTED: {
        DealStatus.CREATIVE_APPROVED: frozenset({_ADV}),
        DealStatus.CREATIVE_REVISION_REQUESTED: frozenset({_ADV}),
    },
    DealStatus.CREATIVE_REVISION_REQUESTED: {
        DealStatus.CREATIVE_SUBMITTED: frozenset({_OWN}),
    },
    DealStatus.CREATIVE_APPROVED: {
        DealStatus.SCHEDULED: frozenset({_SYS}),
        DealStatus.POSTED: frozenset({_SYS, _OWN}),
    },
    DealStatus.SCHEDULED: {
        DealStatus.POSTED: frozenset({_SYS, _OWN}),
        DealStatus.EXPIRED: frozenset({_SYS}),
    },
    DealStatus.POSTED: {
        DealStatus.VERIFYING: frozenset({_SYS}),
        DealStatus.COMPLETED: frozenset({_ADV, _SYS}),
    },
    DealStatus.VERIFYING: {
        DealStatus.VERIFIED: frozenset({_SYS}),
    },
    DealStatus.VERIFIED: {
        DealStatus.COMPLETED: frozenset({_SYS, _ADM}),
    },
    DealStatus.DISPUTED: {
        DealStatus.COMPLETED: frozenset({_ADM}),
        DealStatus.REFUNDED: frozenset({_ADM}),
    },
}

# Any non-terminal, non-disputed status may be disputed by either party
DISPUTE_ROLES = frozenset({_ADV, _OWN})

# Timeline event recorded when the caller does not name the action
_DEFAULT_ACTIONS: dict[DealStatus, str] = {
    DealStatus.PENDING_PAYMENT: "accept",
    DealStatus.PAYMENT_RECEIVED: "confirm_payment",
    DealStatus.IN_PROGRESS: "start",
    DealStatus.CREATIVE_PENDING: "request_creative",
    DealStatus.CREATIVE_SUBMITTED: "submit_creative",
    DealStatus.CREATIVE_APPROVED: "approve_creative",
    DealStatus.CREATIVE_REVISION_REQUESTED: "request_revision",
    DealStatus.SCHEDULED: "schedule",
    DealStatus.POSTED: "mark_posted",
    DealStatus.VERIFYING: "start_verification",
    DealStatus.VERIFIED: "mark_verified",
    DealStatus.COMPLETED: "complete",
    DealStatus.DISPUTED: "open_dispute",
    DealStatus.REFUNDED: "resolve_dispute",
    DealStatus.CANCELLED: "cancel",
    DealStatus.EXPIRED: "expire",
}


def _as_status(value: str) -> DealStatus | None:
    try:
        return DealStatus(value)
    except ValueError:
        return None


def allowed_roles(current: str, target: str) -> frozenset[Role]:
    """Roles permitted to move a deal from ``current`` to ``target`` (empty if the edge does not exist)."""
    cur = _as_status(current)
    tgt = _as_status(target)
    if cur is None or tgt is None:
        return frozenset()
    roles = TRANSITIONS.get(cur, {}).get(tgt)
    if roles is not None:
        return roles
    if tgt == DealStatus.DISPUTED and cur not in TERMINAL_STATUSES and cur != DealStatus.DISPUTED:
        return DISPUTE_ROLES
    return frozenset()


def can_transition(current: str, target: str, role: str) -> bool:
    try:
        return Role(role) in allowed_roles(current, target)
    except ValueError:
        return False


def get_allowed_transitions(current: str, role: str | None = None) -> list[DealStatus]:
    """Targets reachable from ``current``, optionally restricted to one role."""
    wanted = Role(role) if role is not None else None
    result = []
    for target in DealStatus:
        roles = allowed_roles(current, target)
        if roles and (wanted is None or wanted in roles):
            result.append(target)
    return result


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def _stage_values(target: DealStatus, now: datetime) -> dict[str, Any]:
    """Stage timestamp and deadline columns written alongside a transition."""
    if target == DealStatus.PENDING_PAYMENT:
        return {"payment_deadline": now + timedelta(hours=settings.payment_timeout_hours)}
    if target == DealStatus.PAYMENT_RECEIVED:
        return {"paid_at": now}
    if target == DealStatus.CREATIVE_PENDING:
        return {"creative_deadline": now + timedelta(hours=settings.creative_timeout_hours)}
    if target == DealStatus.CREATIVE_SUBMITTED:
        return {"content_submitted_at": now}
    if target == DealStatus.POSTED:
        return {"published_at": now}
    if target == DealStatus.COMPLETED:
        return {"completed_at": now}
    if target == DealStatus.CANCELLED:
        return {"cancelled_at": now}
    return {}


@dataclass
class TransitionContext:
    deal_id: int
    actor_id: int | None = None
    actor_type: str | None = None
    note: str | None = None
    metadata: Mapping[str, Any] | None = None
    action: str | None = None


class DealStateMachine:
    """Validates and executes deal status transitions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], events: EventBus) -> None:
        self._session_factory = session_factory
        self._events = events

    async def get_deal(self, deal_id: int) -> Deal:
        async with self._session_factory() as db:
            deal = await db.get(Deal, deal_id)
        if deal is None:
            raise NotFoundError("Deal", deal_id)
        return deal

    async def transition(self, target: str, role: str, ctx: TransitionContext) -> Deal:
        target = DealStatus(target)
        role = Role(role)

        async with self._session_factory() as db:
            deal = await db.get(Deal, ctx.deal_id)
            if deal is None:
                raise NotFoundError("Deal", ctx.deal_id)

            current = deal.status
            if not can_transition(current, target, role):
                raise InvalidTransitionError(current, target, role)

            now = utcnow()
            action = ctx.action or _DEFAULT_ACTIONS[target]
            values: dict[str, Any] = {
                "status": target.value,
                "previous_status": current,
                "last_activity_at": now,
                **_stage_values(target, now),
            }
            result = await db.execute(
                update(Deal)
                .where(Deal.id == deal.id, Deal.status == current)
                .values(**values)
            )
            if result.rowcount == 0:
                await db.rollback()
                raise InvalidTransitionError(
                    current, target, role, reason="deal status changed concurrently"
                )
            for key, value in values.items():
                setattr(deal, key, value)

            actor_type = ctx.actor_type or (
                ActorType.SYSTEM if role == Role.SYSTEM else ActorType.USER
            )
            db.add(DealTimeline(
                deal_id=deal.id,
                event=action,
                from_status=current,
                to_status=target.value,
                actor_id=ctx.actor_id,
                actor_type=actor_type,
                details=dict(ctx.metadata) if ctx.metadata else None,
                note=ctx.note,
            ))
            await db.commit()

        logger.info(
            "Deal %d: %s -> %s (action=%s, role=%s)",
            deal.id, current, target, action, role,
        )

        events = [DealStatusChanged(
            deal.id,
            action=action,
            from_status=current,
            to_status=target.value,
            role=role.value,
            actor_id=ctx.actor_id,
        )]
        if target == DealStatus.COMPLETED:
            events.append(DealCompleted(deal.id))
        await self._events.publish_all(events)
        return deal

    async def _run(
        self,
        deal_id: int,
        target: DealStatus,
        role: str,
        action: str,
        *,
        actor_id: int | None = None,
        note: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Deal:
        return await self.transition(
            target,
            role,
            TransitionContext(
                deal_id=deal_id, actor_id=actor_id, note=note, metadata=metadata, action=action,
            ),
        )

    # -- named operations ---------------------------------------------------

    async def accept(self, deal_id: int, role: str = Role.CHANNEL_OWNER, *, actor_id: int | None = None) -> Deal:
        return await self._run(deal_id, DealStatus.PENDING_PAYMENT, role, "accept", actor_id=actor_id)

    async def reject(
        self, deal_id: int, role: str = Role.CHANNEL_OWNER, *, actor_id: int | None = None, reason: str | None = None,
    ) -> Deal:
        return await self._run(deal_id, DealStatus.CANCELLED, role, "reject", actor_id=actor_id, note=reason)

    async def cancel(
        self, deal_id: int, role: str, *, actor_id: int | None = None, reason: str | None = None,
    ) -> Deal:
        return await self._run(deal_id, DealStatus.CANCELLED, role, "cancel", actor_id=actor_id, note=reason)

    async def confirm_payment(self, deal_id: int, *, tx_hash: str | None = None) -> Deal:
        return await self._run(
            deal_id, DealStatus.PAYMENT_RECEIVED, Role.SYSTEM, "confirm_payment",
            metadata={"tx_hash": tx_hash} if tx_hash else None,
        )

    async def start(self, deal_id: int) -> Deal:
        """Move a paid deal into work and open the creative stage."""
        await self._run(deal_id, DealStatus.IN_PROGRESS, Role.SYSTEM, "start")
        return await self._run(deal_id, DealStatus.CREATIVE_PENDING, Role.SYSTEM, "request_creative")

    async def submit_creative(
        self, deal_id: int, role: str = Role.CHANNEL_OWNER, *, actor_id: int | None = None, note: str | None = None,
    ) -> Deal:
        return await self._run(deal_id, DealStatus.CREATIVE_SUBMITTED, role, "submit_creative", actor_id=actor_id, note=note)

    async def approve_creative(self, deal_id: int, role: str = Role.ADVERTISER, *, actor_id: int | None = None) -> Deal:
        return await self._run(deal_id, DealStatus.CREATIVE_APPROVED, role, "approve_creative", actor_id=actor_id)

    async def request_revision(
        self, deal_id: int, role: str = Role.ADVERTISER, *, actor_id: int | None = None, feedback: str | None = None,
    ) -> Deal:
        return await self._run(
            deal_id, DealStatus.CREATIVE_REVISION_REQUESTED, role, "request_revision",
            actor_id=actor_id, note=feedback,
        )

    async def schedule(self, deal_id: int, *, scheduled_for: datetime | None = None) -> Deal:
        return await self._run(
            deal_id, DealStatus.SCHEDULED, Role.SYSTEM, "schedule",
            metadata={"scheduled_for": scheduled_for.isoformat()} if scheduled_for else None,
        )

    async def mark_posted(
        self,
        deal_id: int,
        role: str = Role.SYSTEM,
        *,
        actor_id: int | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Deal:
        return await self._run(deal_id, DealStatus.POSTED, role, "mark_posted", actor_id=actor_id, metadata=metadata)

    async def confirm_posted(
        self, deal_id: int, *, actor_id: int | None = None, metadata: Mapping[str, Any] | None = None,
    ) -> Deal:
        """Channel owner reports the post as live."""
        return await self._run(
            deal_id, DealStatus.POSTED, Role.CHANNEL_OWNER, "confirm_posted",
            actor_id=actor_id, metadata=metadata,
        )

    async def confirm_completion(self, deal_id: int, role: str = Role.ADVERTISER, *, actor_id: int | None = None) -> Deal:
        return await self._run(deal_id, DealStatus.COMPLETED, role, "confirm_completion", actor_id=actor_id)

    async def start_verification(self, deal_id: int) -> Deal:
        return await self._run(deal_id, DealStatus.VERIFYING, Role.SYSTEM, "start_verification")

    async def mark_verified(self, deal_id: int, *, metadata: Mapping[str, Any] | None = None) -> Deal:
        return await self._run(deal_id, DealStatus.VERIFIED, Role.SYSTEM, "mark_verified", metadata=metadata)

    async def complete(
        self,
        deal_id: int,
        role: str = Role.SYSTEM,
        *,
        action: str = "complete",
        actor_id: int | None = None,
        note: str | None = None,
    ) -> Deal:
        return await self._run(deal_id, DealStatus.COMPLETED, role, action, actor_id=actor_id, note=note)

    async def open_dispute(
        self, deal_id: int, role: str, *, actor_id: int | None = None, reason: str | None = None,
    ) -> Deal:
        return await self._run(deal_id, DealStatus.DISPUTED, role, "open_dispute", actor_id=actor_id, note=reason)

    async def resolve_dispute(
        self,
        deal_id: int,
        outcome: str,
        role: str = Role.ADMIN,
        *,
        actor_id: int | None = None,
        note: str | None = None,
    ) -> Deal:
        if outcome not in (DealStatus.COMPLETED, DealStatus.REFUNDED):
            raise ValidationFailure(f"Dispute outcome must be COMPLETED or REFUNDED, got {outcome}")
        return await self._run(deal_id, DealStatus(outcome), role, "resolve_dispute", actor_id=actor_id, note=note)

    async def expire(self, deal_id: int, *, reason: str | None = None) -> Deal:
        return await self._run(deal_id, DealStatus.EXPIRED, Role.SYSTEM, "expire", note=reason)
