import asyncio

from celery import Celery
from celery.schedules import crontab
from celery.signals import after_setup_logger

from adescrow.core.config import settings
from adescrow.core.logging_config import setup_logging

_loop = None


def worker_loop() -> asyncio.AbstractEventLoop:
    """Return a shared event loop for all Celery worker tasks.

    All async tasks must use the same loop to avoid 'Future attached to
    a different loop' errors caused by the shared asyncpg connection pool.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop


celery_app = Celery(
    "adescrow_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Countdown jobs can wait for days; keep them from being redelivered early
    broker_transport_options={"visibility_timeout": settings.broker_visibility_timeout},
    beat_schedule={
        "check-deal-timeouts-10m": {
            "task": "check_all_timeouts",
            "schedule": crontab(minute="*/10"),
        },
        "check-escrow-expiry-30m": {
            "task": "check_escrow_expiry",
            "schedule": crontab(minute="*/30"),
        },
        "retry-failed-refunds-hourly": {
            "task": "retry_failed_refunds",
            "schedule": crontab(minute=15, hour="*"),
        },
    },
)


@after_setup_logger.connect
def _configure_worker_logging(logger=None, **kwargs) -> None:
    setup_logging()


# Import tasks so they are registered with the celery app
import adescrow.workers.posting  # noqa: F401, E402
import adescrow.workers.escrow  # noqa: F401, E402
import adescrow.workers.deal_timeouts  # noqa: F401, E402
