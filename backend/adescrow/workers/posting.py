"""Celery tasks for the post lifecycle: publish, verify, delete, pre-delete notice."""

from adescrow.core import jobs
from adescrow.workers import celery_app
from adescrow.workers.runtime import run_job


@celery_app.task(name=jobs.PUBLISH_POST, bind=True, max_retries=3, default_retry_delay=60)
def publish_post(self, post_id: int, dedupe_key: str | None = None):
    """Publish a scheduled post when its time comes."""

    async def _handle(services):
        post = await services.posting.publish_post(post_id)
        return post.status

    return run_job(self, jobs.PUBLISH_POST, dedupe_key, _handle)


@celery_app.task(name=jobs.VERIFY_POST, bind=True, max_retries=3, default_retry_delay=60)
def verify_post(self, post_id: int, is_final: bool = False, dedupe_key: str | None = None):
    """Verification checkpoint; the final one triggers the payout."""

    async def _handle(services):
        result = await services.posting.verify_post(post_id, is_final=is_final)
        return result.exists

    return run_job(self, jobs.VERIFY_POST, dedupe_key, _handle)


@celery_app.task(name=jobs.DELETE_POST, bind=True, max_retries=3, default_retry_delay=60)
def delete_post(self, post_id: int, dedupe_key: str | None = None):
    """Remove the post at the end of its paid duration."""

    async def _handle(services):
        return await services.posting.delete_post(post_id)

    return run_job(self, jobs.DELETE_POST, dedupe_key, _handle)


@celery_app.task(name=jobs.NOTIFY_POST_DELETION, bind=True, max_retries=3, default_retry_delay=60)
def notify_post_deletion(self, post_id: int, minutes_left: int, dedupe_key: str | None = None):
    async def _handle(services):
        return await services.posting.notify_pre_delete(post_id, minutes_left)

    return run_job(self, jobs.NOTIFY_POST_DELETION, dedupe_key, _handle)
