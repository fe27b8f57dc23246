"""Tests for CeleryJobQueue: countdown tasks plus the Redis dedupe-key registry."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from adescrow.core.jobs import PUBLISH_POST, CeleryJobQueue


@pytest.fixture
def celery():
    return MagicMock()


@pytest.fixture
def redis():
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.delete = AsyncMock(return_value=1)
    client.eval = AsyncMock(return_value=1)
    return client


@pytest.fixture
def queue(celery, redis):
    return CeleryJobQueue(celery, redis, ttl_seconds=3600)


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_registers_key_and_sends_task(self, queue, celery, redis):
        token = await queue.enqueue(PUBLISH_POST, {"post_id": 7}, delay_seconds=120, dedupe_key="publish-7")

        assert token is not None
        redis.set.assert_awaited_once_with("job:publish-7", token, nx=True, ex=3600 + 120)
        celery.send_task.assert_called_once_with(
            PUBLISH_POST,
            kwargs={"post_id": 7, "dedupe_key": "publish-7"},
            countdown=120,
            task_id=token,
        )

    @pytest.mark.asyncio
    async def test_pending_key_is_noop(self, queue, celery, redis):
        redis.set.return_value = None

        token = await queue.enqueue(PUBLISH_POST, {"post_id": 7}, dedupe_key="publish-7")

        assert token is None
        celery.send_task.assert_not_called()

    @pytest.mark.asyncio
    async def test_unkeyed_job(self, queue, celery, redis):
        await queue.enqueue("check_all_timeouts", {}, delay_seconds=-5)

        redis.set.assert_not_awaited()
        kwargs = celery.send_task.call_args.kwargs
        assert kwargs["kwargs"] == {}
        assert kwargs["countdown"] == 0


class TestCancel:
    @pytest.mark.asyncio
    async def test_revokes_registered_task(self, queue, celery, redis):
        redis.get.return_value = "tok-1"

        assert await queue.cancel("publish-7") is True

        celery.control.revoke.assert_called_once_with("tok-1")
        redis.delete.assert_awaited_once_with("job:publish-7")

    @pytest.mark.asyncio
    async def test_unknown_key(self, queue, celery, redis):
        assert await queue.cancel("publish-7") is False
        celery.control.revoke.assert_not_called()


class TestOwnership:
    @pytest.mark.asyncio
    async def test_is_current(self, queue, redis):
        redis.get.return_value = "tok-1"

        assert await queue.is_current("publish-7", "tok-1") is True
        assert await queue.is_current("publish-7", "tok-2") is False

    @pytest.mark.asyncio
    async def test_release_only_own_token(self, queue, redis):
        await queue.release("publish-7", "tok-1")

        args = redis.eval.call_args.args
        assert args[1:] == (1, "job:publish-7", "tok-1")
