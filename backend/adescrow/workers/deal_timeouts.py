"""Celery tasks for deal timeout handling.

- check_deal_timeout: per-deal delayed check scheduled at deal creation
- check_all_timeouts: periodic sweep over every deal that can time out
- check_escrow_expiry: periodic sweep cancelling unfunded escrows past deadline
- retry_failed_refunds: hourly sweep refunding deposits stranded on closed deals
"""

from adescrow.core import jobs
from adescrow.workers import celery_app
from adescrow.workers.runtime import run_job


@celery_app.task(name=jobs.CHECK_DEAL_TIMEOUT, bind=True, max_retries=3, default_retry_delay=60)
def check_deal_timeout(self, deal_id: int, action: str = "general", dedupe_key: str | None = None):
    async def _handle(services):
        return await services.timeouts.check_timeout(deal_id, action)

    return run_job(self, jobs.CHECK_DEAL_TIMEOUT, dedupe_key, _handle)


@celery_app.task(name="check_all_timeouts", bind=True, max_retries=3, default_retry_delay=60)
def check_all_timeouts(self) -> int:
    """Expire every deal whose deadline has passed."""

    async def _handle(services):
        return await services.timeouts.check_all_timeouts()

    return run_job(self, "check_all_timeouts", None, _handle)


@celery_app.task(name="check_escrow_expiry", bind=True, max_retries=3, default_retry_delay=60)
def check_escrow_expiry(self) -> int:
    async def _handle(services):
        return await services.timeouts.check_escrow_expiry()

    return run_job(self, "check_escrow_expiry", None, _handle)


@celery_app.task(name="retry_failed_refunds", bind=True, max_retries=3, default_retry_delay=60)
def retry_failed_refunds(self) -> int:
    """Refund deposits left FUNDED on cancelled or expired deals."""

    async def _handle(services):
        return await services.timeouts.retry_failed_refunds()

    return run_job(self, "retry_failed_refunds", None, _handle)
