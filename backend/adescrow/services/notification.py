"""Fire-and-forget Telegram notifications for deal events.

Subscribes to the event bus and sends direct messages through the channel
gateway. Exceptions are caught and logged; notifications never break the
main flow.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adescrow.core.events import (
    DealCreated,
    DealStatusChanged,
    EscrowCreated,
    EscrowRefunded,
    EscrowReleased,
    EventBus,
    PostDeletionUpcoming,
    PostPublished,
    PostViolation,
)
from adescrow.models.deal import Deal
from adescrow.models.user import User
from adescrow.services.escrow import format_ton
from adescrow.services.telegram import ChannelGateway

logger = logging.getLogger(__name__)

ADVERTISER = "advertiser"
OWNER = "owner"
BOTH = (ADVERTISER, OWNER)

_STATUS_TEMPLATES = {
    "en": {
        "PENDING_PAYMENT": "Deal {ref}: the channel owner accepted. Waiting for escrow payment.",
        "PAYMENT_RECEIVED": "Deal {ref}: escrow payment received.",
        "CREATIVE_PENDING": "Deal {ref}: waiting for the creative from the channel owner.",
        "CREATIVE_SUBMITTED": "Deal {ref}: creative submitted for review.",
        "CREATIVE_REVISION_REQUESTED": "Deal {ref}: changes requested for the creative.",
        "CREATIVE_APPROVED": "Deal {ref}: creative approved!",
        "SCHEDULED": "Deal {ref}: post has been scheduled.",
        "VERIFIED": "Deal {ref}: post verified, releasing payment.",
        "COMPLETED": "Deal {ref}: deal completed.",
        "DISPUTED": "Deal {ref}: a dispute was opened. An administrator will review it.",
        "CANCELLED": "Deal {ref}: deal has been cancelled.",
        "REFUNDED": "Deal {ref}: dispute resolved with a refund to the advertiser.",
        "EXPIRED": "Deal {ref}: deal has expired.",
    },
    "ru": {
        "PENDING_PAYMENT": "Сделка {ref}: владелец канала принял сделку. Ожидается оплата эскроу.",
        "PAYMENT_RECEIVED": "Сделка {ref}: оплата эскроу получена.",
        "CREATIVE_PENDING": "Сделка {ref}: ожидание креатива от владельца канала.",
        "CREATIVE_SUBMITTED": "Сделка {ref}: креатив отправлен на проверку.",
        "CREATIVE_REVISION_REQUESTED": "Сделка {ref}: запрошены изменения в креативе.",
        "CREATIVE_APPROVED": "Сделка {ref}: креатив одобрен!",
        "SCHEDULED": "Сделка {ref}: пост запланирован.",
        "VERIFIED": "Сделка {ref}: пост проверен, оплата переводится.",
        "COMPLETED": "Сделка {ref}: сделка завершена.",
        "DISPUTED": "Сделка {ref}: открыт спор. Администратор рассмотрит его.",
        "CANCELLED": "Сделка {ref}: сделка отменена.",
        "REFUNDED": "Сделка {ref}: спор решён возвратом средств рекламодателю.",
        "EXPIRED": "Сделка {ref}: срок сделки истёк.",
    },
}

_EVENT_TEMPLATES = {
    "en": {
        "deal_created": "New deal {ref}: {amount} TON offered for a post in your channel.",
        "escrow_created": "Deal {ref}: send {amount} TON to {address} to fund the escrow.",
        "post_published": "Deal {ref}: the post is live. {url}",
        "post_violation": "Deal {ref}: the post was deleted before the agreed duration ended.",
        "post_deletion": "Deal {ref}: the post will be removed in {minutes} minutes.",
        "released": "Deal {ref}: payment released! {amount} TON sent to your wallet.",
        "refunded": "Deal {ref}: refund completed! {amount} TON returned to your wallet.",
    },
    "ru": {
        "deal_created": "Новая сделка {ref}: {amount} TON за пост в вашем канале.",
        "escrow_created": "Сделка {ref}: отправьте {amount} TON на адрес {address} для пополнения эскроу.",
        "post_published": "Сделка {ref}: пост опубликован. {url}",
        "post_violation": "Сделка {ref}: пост удалён раньше оговорённого срока.",
        "post_deletion": "Сделка {ref}: пост будет удалён через {minutes} мин.",
        "released": "Сделка {ref}: оплата получена! {amount} TON отправлены на ваш кошелёк.",
        "refunded": "Сделка {ref}: возврат выполнен! {amount} TON возвращены на ваш кошелёк.",
    },
}


def _get_locale(user) -> str:
    """Get user locale, defaulting to 'en'."""
    locale = getattr(user, "locale", "en") or "en"
    return locale if locale in _STATUS_TEMPLATES else "en"


class NotificationService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], gateway: ChannelGateway) -> None:
        self._session_factory = session_factory
        self._gateway = gateway

    def register(self, events: EventBus) -> None:
        events.subscribe(DealCreated, self.on_deal_created)
        events.subscribe(DealStatusChanged, self.on_status_changed)
        events.subscribe(EscrowCreated, self.on_escrow_created)
        events.subscribe(EscrowReleased, self.on_escrow_released)
        events.subscribe(EscrowRefunded, self.on_escrow_refunded)
        events.subscribe(PostPublished, self.on_post_published)
        events.subscribe(PostViolation, self.on_post_violation)
        events.subscribe(PostDeletionUpcoming, self.on_post_deletion_upcoming)

    async def _send(self, deal_id: int, recipients, render) -> int:
        """Send ``render(lang, deal)`` to the selected parties. Returns the number sent."""
        sent = 0
        try:
            async with self._session_factory() as db:
                deal = await db.get(Deal, deal_id)
                if deal is None:
                    return 0
                users = {
                    ADVERTISER: await db.get(User, deal.advertiser_id),
                    OWNER: await db.get(User, deal.owner_id),
                }
            for party in recipients:
                user = users.get(party)
                if user is None:
                    continue
                text = render(_get_locale(user), deal)
                if not text:
                    continue
                try:
                    await self._gateway.send_direct_message(user.telegram_id, text)
                    sent += 1
                except Exception:
                    logger.exception("Failed to notify user %s about deal %s", user.id, deal_id)
        except Exception:
            logger.exception("Failed to send notification for deal %s", deal_id)
        return sent

    async def on_status_changed(self, event: DealStatusChanged) -> None:
        def render(lang, deal):
            template = _STATUS_TEMPLATES[lang].get(event.to_status)
            return template.format(ref=deal.reference_code) if template else None

        await self._send(event.deal_id, BOTH, render)

    async def on_deal_created(self, event: DealCreated) -> None:
        await self._send(event.deal_id, (OWNER,), lambda lang, deal: _EVENT_TEMPLATES[lang]["deal_created"].format(
            ref=deal.reference_code, amount=format_ton(deal.price),
        ))

    async def on_escrow_created(self, event: EscrowCreated) -> None:
        await self._send(event.deal_id, (ADVERTISER,), lambda lang, deal: _EVENT_TEMPLATES[lang]["escrow_created"].format(
            ref=deal.reference_code, amount=format_ton(event.total_amount), address=event.contract_address,
        ))

    async def on_escrow_released(self, event: EscrowReleased) -> None:
        await self._send(event.deal_id, (OWNER,), lambda lang, deal: _EVENT_TEMPLATES[lang]["released"].format(
            ref=deal.reference_code, amount=format_ton(event.amount),
        ))

    async def on_escrow_refunded(self, event: EscrowRefunded) -> None:
        await self._send(event.deal_id, (ADVERTISER,), lambda lang, deal: _EVENT_TEMPLATES[lang]["refunded"].format(
            ref=deal.reference_code, amount=format_ton(event.amount),
        ))

    async def on_post_published(self, event: PostPublished) -> None:
        await self._send(event.deal_id, BOTH, lambda lang, deal: _EVENT_TEMPLATES[lang]["post_published"].format(
            ref=deal.reference_code, url=event.post_url or "",
        ).strip())

    async def on_post_violation(self, event: PostViolation) -> None:
        await self._send(event.deal_id, BOTH, lambda lang, deal: _EVENT_TEMPLATES[lang]["post_violation"].format(
            ref=deal.reference_code,
        ))

    async def on_post_deletion_upcoming(self, event: PostDeletionUpcoming) -> None:
        await self._send(event.deal_id, (OWNER,), lambda lang, deal: _EVENT_TEMPLATES[lang]["post_deletion"].format(
            ref=deal.reference_code, minutes=event.minutes_left,
        ))
