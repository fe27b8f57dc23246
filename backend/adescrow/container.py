"""Service wiring shared by the API process and the Celery workers."""

import logging
from dataclasses import dataclass

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adescrow.core.config import settings
from adescrow.core.events import EventBus
from adescrow.core.jobs import CeleryJobQueue, JobQueue
from adescrow.services.deal import DealService
from adescrow.services.deal_state_machine import DealStateMachine
from adescrow.services.escrow import EscrowService
from adescrow.services.notification import NotificationService
from adescrow.services.posting import PostingService
from adescrow.services.telegram import ChannelGateway, TelegramChannelGateway
from adescrow.services.timeouts import TimeoutSweeper
from adescrow.services.ton.ledger import LedgerClient, TonLedgerClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    events: EventBus
    jobs: JobQueue
    state_machine: DealStateMachine
    escrow: EscrowService
    posting: PostingService
    timeouts: TimeoutSweeper
    deals: DealService
    notifications: NotificationService


def build_services(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    jobs: JobQueue | None = None,
    ledger: LedgerClient | None = None,
    gateway: ChannelGateway | None = None,
    events: EventBus | None = None,
) -> Services:
    if session_factory is None:
        from adescrow.db.session import async_session_factory

        session_factory = async_session_factory
    if jobs is None:
        from adescrow.workers import celery_app

        redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        jobs = CeleryJobQueue(celery_app, redis)
    ledger = ledger or TonLedgerClient()
    gateway = gateway or TelegramChannelGateway()
    events = events or EventBus()

    state_machine = DealStateMachine(session_factory, events)
    escrow = EscrowService(session_factory, ledger, jobs, events, state_machine)
    posting = PostingService(session_factory, jobs, gateway, events, state_machine)
    timeouts = TimeoutSweeper(session_factory, jobs, state_machine, escrow)
    deals = DealService(session_factory, events, state_machine, escrow, posting, timeouts)
    notifications = NotificationService(session_factory, gateway)
    notifications.register(events)

    return Services(
        events=events,
        jobs=jobs,
        state_machine=state_machine,
        escrow=escrow,
        posting=posting,
        timeouts=timeouts,
        deals=deals,
        notifications=notifications,
    )


_services: Services | None = None


def get_services() -> Services:
    """Process-wide services, built on first use."""
    global _services
    if _services is None:
        _services = build_services()
        logger.info("Services initialised")
    return _services
