"""Celery tasks for escrow funding detection and payout."""

from adescrow.core import jobs
from adescrow.workers import celery_app
from adescrow.workers.runtime import run_job


@celery_app.task(name=jobs.MONITOR_PAYMENT, bind=True, max_retries=3, default_retry_delay=60)
def monitor_payment(self, escrow_id: int, check: int = 1, dedupe_key: str | None = None):
    """One payment-detection round; re-enqueues itself while the escrow is unfunded."""

    async def _handle(services):
        return await services.escrow.poll_payment(escrow_id, check)

    return run_job(self, jobs.MONITOR_PAYMENT, dedupe_key, _handle)


@celery_app.task(name=jobs.RELEASE_FUNDS, bind=True, max_retries=3, default_retry_delay=60)
def release_funds(self, deal_id: int, dedupe_key: str | None = None):
    """Pay out a verified deal."""

    async def _handle(services):
        escrow = await services.escrow.release_funds(deal_id)
        return escrow.release_tx_hash

    return run_job(self, jobs.RELEASE_FUNDS, dedupe_key, _handle)
