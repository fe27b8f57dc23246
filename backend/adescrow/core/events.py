"""Outbound domain events.

Services publish events only after the owning transaction has committed.
Subscribers (notifications, analytics) are fire-and-forget: a failing
handler is logged and never breaks the flow that emitted the event.
"""

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    deal_id: int
    occurred_at: datetime = field(default_factory=_now, kw_only=True)


@dataclass(frozen=True)
class DealStatusChanged(Event):
    action: str
    from_status: str
    to_status: str
    role: str
    actor_id: int | None = None


@dataclass(frozen=True)
class DealCompleted(Event):
    pass


@dataclass(frozen=True)
class DealCreated(Event):
    advertiser_id: int
    owner_id: int
    total_amount: int


@dataclass(frozen=True)
class EscrowCreated(Event):
    escrow_id: int
    contract_address: str
    total_amount: int
    deployed: bool


@dataclass(frozen=True)
class EscrowFunded(Event):
    escrow_id: int
    tx_hash: str


@dataclass(frozen=True)
class EscrowReleased(Event):
    escrow_id: int
    tx_hash: str
    amount: int


@dataclass(frozen=True)
class EscrowRefunded(Event):
    escrow_id: int
    tx_hash: str
    amount: int
    reason: str | None = None


@dataclass(frozen=True)
class PostPublished(Event):
    post_id: int
    message_id: int | None
    post_url: str | None = None


@dataclass(frozen=True)
class PostViolation(Event):
    post_id: int
    reason: str


@dataclass(frozen=True)
class PostVerified(Event):
    post_id: int
    views: int


@dataclass(frozen=True)
class PostDeletionUpcoming(Event):
    post_id: int
    minutes_left: int


Handler = Callable[[Any], Awaitable[None]]


class EventBus:
    """In-process publish/subscribe keyed by event class."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    async def publish(self, event: Event) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Event handler %s failed for %s (deal %s)",
                    getattr(handler, "__qualname__", handler), type(event).__name__, event.deal_id,
                )

    async def publish_all(self, events: list[Event]) -> None:
        for event in events:
            await self.publish(event)
