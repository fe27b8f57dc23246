"""Shared execution path for keyed jobs.

A delivery runs only while its task id still owns the job's dedupe key;
the key is released once the handler succeeds. Domain errors that another
attempt cannot fix are logged and dropped instead of retried.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from adescrow.container import Services, get_services
from adescrow.core.errors import DomainError, LedgerError, NotAdminError
from adescrow.workers import worker_loop

logger = logging.getLogger(__name__)

Handler = Callable[[Services], Awaitable[Any]]

_SKIPPED = object()


def is_retryable(exc: Exception) -> bool:
    """Ledger and permission failures may clear up; other domain errors will not."""
    if isinstance(exc, (LedgerError, NotAdminError)):
        return True
    return not isinstance(exc, DomainError)


async def _owns_key(services: Services, dedupe_key: str | None, token: str | None) -> bool:
    is_current = getattr(services.jobs, "is_current", None)
    if not dedupe_key or token is None or is_current is None:
        return True
    return await is_current(dedupe_key, token)


async def _release_key(services: Services, dedupe_key: str | None, token: str | None) -> None:
    release = getattr(services.jobs, "release", None)
    if dedupe_key and token is not None and release is not None:
        await release(dedupe_key, token)


async def execute_job(
    services: Services,
    name: str,
    dedupe_key: str | None,
    token: str | None,
    handler: Handler,
) -> Any:
    """Run one delivery; returns ``_SKIPPED`` for a cancelled or superseded one."""
    if not await _owns_key(services, dedupe_key, token):
        logger.info("%s: delivery %s no longer owns key=%s, skipping", name, token, dedupe_key)
        return _SKIPPED

    try:
        result = await handler(services)
    except DomainError as exc:
        if is_retryable(exc):
            raise
        logger.warning("%s (key=%s) dropped: %s", name, dedupe_key, exc)
        await _release_key(services, dedupe_key, token)
        return None

    await _release_key(services, dedupe_key, token)
    return result


def run_job(task, name: str, dedupe_key: str | None, handler: Handler) -> Any:
    """Celery task body: run ``handler`` on the worker loop, retry on failure."""
    token = task.request.id
    try:
        result = worker_loop().run_until_complete(
            execute_job(get_services(), name, dedupe_key, token, handler)
        )
    except Exception as exc:
        logger.exception("%s failed (key=%s)", name, dedupe_key)
        raise task.retry(exc=exc)
    return None if result is _SKIPPED else result
