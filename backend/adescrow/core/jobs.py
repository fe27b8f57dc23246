"""Delayed job queue with cancel-by-key.

Jobs are Celery tasks sent with a countdown. A Redis registry maps each
dedupe key to the token (Celery task id) of the delivery that currently
owns it:

- ``enqueue`` registers the key with ``SET NX``; an already-registered key
  means the job is pending and the call is a no-op.
- ``cancel`` revokes the registered task and removes the key.
- Workers run a delivery only while the key still maps to its token, so a
  cancelled or superseded delivery that slips past ``revoke`` is dropped.
"""

import logging
import uuid
from typing import Any, Protocol

import redis.asyncio as aioredis
from celery import Celery

from adescrow.core.config import settings

logger = logging.getLogger(__name__)

# Job names (registered Celery task names)
PUBLISH_POST = "publish_post"
VERIFY_POST = "verify_post"
DELETE_POST = "delete_post"
NOTIFY_POST_DELETION = "notify_post_deletion"
MONITOR_PAYMENT = "monitor_payment"
RELEASE_FUNDS = "release_funds"
CHECK_DEAL_TIMEOUT = "check_deal_timeout"

_KEY_PREFIX = "job:"

# Delete the key only if it still belongs to the given token
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class JobQueue(Protocol):
    async def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        *,
        delay_seconds: float = 0,
        dedupe_key: str | None = None,
    ) -> str | None: ...

    async def cancel(self, dedupe_key: str) -> bool: ...


def _registry_key(dedupe_key: str) -> str:
    return _KEY_PREFIX + dedupe_key


class CeleryJobQueue:
    """JobQueue backed by Celery countdown tasks and a Redis key registry."""

    def __init__(self, celery_app: Celery, redis: aioredis.Redis, ttl_seconds: int | None = None) -> None:
        self._celery = celery_app
        self._redis = redis
        self._ttl = ttl_seconds or settings.job_registry_ttl_seconds

    async def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        *,
        delay_seconds: float = 0,
        dedupe_key: str | None = None,
    ) -> str | None:
        token = uuid.uuid4().hex
        kwargs = dict(payload)
        if dedupe_key:
            registered = await self._redis.set(
                _registry_key(dedupe_key), token, nx=True, ex=self._ttl + int(delay_seconds)
            )
            if not registered:
                logger.info("Job %s already pending for key=%s, skipping", job_name, dedupe_key)
                return None
            kwargs["dedupe_key"] = dedupe_key

        self._celery.send_task(
            job_name,
            kwargs=kwargs,
            countdown=max(delay_seconds, 0),
            task_id=token,
        )
        logger.info(
            "Enqueued %s (key=%s, delay=%.0fs, token=%s)",
            job_name, dedupe_key, delay_seconds, token,
        )
        return token

    async def cancel(self, dedupe_key: str) -> bool:
        key = _registry_key(dedupe_key)
        token = await self._redis.get(key)
        if token is None:
            return False
        self._celery.control.revoke(token)
        await self._redis.delete(key)
        logger.info("Cancelled job key=%s (token=%s)", dedupe_key, token)
        return True

    async def is_current(self, dedupe_key: str, token: str) -> bool:
        """True while ``token`` still owns ``dedupe_key`` (not cancelled or replaced)."""
        return await self._redis.get(_registry_key(dedupe_key)) == token

    async def release(self, dedupe_key: str, token: str) -> None:
        """Drop the registry entry after the delivery owning it has completed."""
        await self._redis.eval(_RELEASE_SCRIPT, 1, _registry_key(dedupe_key), token)
