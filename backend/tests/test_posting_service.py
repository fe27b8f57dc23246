"""Tests for PostingService: scheduling, at-most-once publishing, verification, deletion."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from adescrow.core import jobs as job_names
from adescrow.core.errors import (
    InvalidStateError,
    NotAdminError,
    UnauthorizedError,
    ValidationFailure,
)
from adescrow.core.events import PostDeletionUpcoming, PostPublished, PostViolation
from adescrow.db.base import utcnow
from adescrow.models.deal_timeline import DealTimeline
from adescrow.models.post_verification import PostVerification
from adescrow.models.published_post import PostStatus, PublishedPost
from adescrow.services import timeline
from adescrow.services.deal_state_machine import DealStatus
from adescrow.services.posting import ACTIVE_POST_STATUSES, SchedulePostRequest, verification_offsets
from adescrow.services.telegram import MessageInfo
from adescrow.workers.runtime import _SKIPPED, execute_job


def _published(make, deal, **overrides):
    now = utcnow()
    values = dict(
        status=PostStatus.PUBLISHED,
        telegram_message_id=1001,
        published_at=now - timedelta(hours=1),
        scheduled_delete_at=now + timedelta(hours=23),
    )
    values.update(overrides)
    return make.post(deal, **values)


class TestVerificationOffsets:
    def test_default_checkpoints(self):
        assert verification_offsets(24) == [1, 6, 12, 24]

    def test_checkpoints_capped_by_duration(self):
        assert verification_offsets(4) == [1, 4]

    def test_single_hour(self):
        assert verification_offsets(1) == [1]


class TestScheduling:
    @pytest.mark.asyncio
    async def test_schedule_post(self, services, world, jobs):
        world.deal.status = "CREATIVE_APPROVED"
        when = utcnow() + timedelta(hours=2)

        post = await services.posting.schedule_post(
            SchedulePostRequest(deal_id=world.deal.id, content="Hello", scheduled_for=when)
        )

        assert post.status == PostStatus.SCHEDULED
        assert world.deal.status == DealStatus.SCHEDULED
        assert world.deal.scheduled_post_time == when
        job = jobs.named(job_names.PUBLISH_POST)[0]
        assert job["key"] == f"publish-{post.id}"
        assert job["payload"] == {"post_id": post.id}
        assert 7100 < job["delay"] <= 7200

    @pytest.mark.asyncio
    async def test_past_time_rejected(self, services, world):
        world.deal.status = "CREATIVE_APPROVED"

        with pytest.raises(ValidationFailure):
            await services.posting.schedule_post(
                SchedulePostRequest(deal_id=world.deal.id, content="x", scheduled_for=utcnow() - timedelta(minutes=1))
            )

    @pytest.mark.asyncio
    async def test_requires_approved_creative(self, services, world):
        world.deal.status = "CREATIVE_SUBMITTED"

        with pytest.raises(InvalidStateError):
            await services.posting.schedule_post(
                SchedulePostRequest(deal_id=world.deal.id, content="x", scheduled_for=utcnow() + timedelta(hours=1))
            )

    @pytest.mark.asyncio
    async def test_one_active_post_per_deal(self, services, world, make):
        world.deal.status = "SCHEDULED"
        make.post(world.deal)

        with pytest.raises(InvalidStateError, match="already has an active post"):
            await services.posting.schedule_post(
                SchedulePostRequest(deal_id=world.deal.id, content="x", scheduled_for=utcnow() + timedelta(hours=1))
            )

    @pytest.mark.asyncio
    async def test_concurrent_schedule_rejected(self, services, world, session, jobs):
        world.deal.status = "CREATIVE_APPROVED"
        session.fail_next_commit = IntegrityError(
            "INSERT INTO published_posts", {}, Exception("duplicate key value violates unique constraint"),
        )

        with pytest.raises(InvalidStateError, match="already has an active post"):
            await services.posting.schedule_post(
                SchedulePostRequest(deal_id=world.deal.id, content="x", scheduled_for=utcnow() + timedelta(hours=1))
            )

        assert session.rollbacks == 1
        assert world.deal.status == DealStatus.CREATIVE_APPROVED
        assert jobs.named(job_names.PUBLISH_POST) == []

    def test_active_post_unique_per_deal(self):
        index = next(i for i in PublishedPost.__table__.indexes if i.name == "uq_published_posts_deal_active")

        assert index.unique is True
        assert [c.name for c in index.columns] == ["deal_id"]
        where = str(index.dialect_options["postgresql"]["where"])
        for status in ACTIVE_POST_STATUSES:
            assert f"'{status}'" in where

    @pytest.mark.asyncio
    async def test_reschedule_replaces_publish_job(self, services, world, make, jobs):
        world.deal.status = "SCHEDULED"
        post = make.post(world.deal)
        new_time = utcnow() + timedelta(hours=5)

        await services.posting.reschedule_post(post.id, new_time)

        assert jobs.cancelled == [f"publish-{post.id}"]
        assert post.scheduled_for == new_time
        assert world.deal.scheduled_post_time == new_time
        assert len(jobs.named(job_names.PUBLISH_POST)) == 1

    @pytest.mark.asyncio
    async def test_reschedule_published_post_rejected(self, services, world, make):
        post = _published(make, world.deal)

        with pytest.raises(InvalidStateError):
            await services.posting.reschedule_post(post.id, utcnow() + timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_cancel_scheduled_post(self, services, world, make, jobs):
        post = make.post(world.deal)

        result = await services.posting.cancel_scheduled_post(post.id)

        assert result.status == PostStatus.CANCELLED
        assert jobs.cancelled == [f"publish-{post.id}"]

    @pytest.mark.asyncio
    async def test_cancel_loses_to_publisher(self, services, world, make, session):
        post = make.post(world.deal)
        session.lose_next_update.add("published_posts")

        with pytest.raises(InvalidStateError, match="claimed for publishing"):
            await services.posting.cancel_scheduled_post(post.id)
        assert post.status == PostStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_cancel_posts_for_deal(self, services, world, make):
        scheduled = make.post(world.deal)
        done = _published(make, world.deal)

        assert await services.posting.cancel_posts_for_deal(world.deal.id) == 1
        assert scheduled.status == PostStatus.CANCELLED
        assert done.status == PostStatus.PUBLISHED


class TestPublishing:
    @pytest.mark.asyncio
    async def test_publish_marks_deal_posted(self, services, world, make, gateway, jobs, events):
        world.deal.status = "SCHEDULED"
        post = make.post(world.deal)

        result = await services.posting.publish_post(post.id)

        assert result.status == PostStatus.PUBLISHED
        assert result.telegram_message_id == 1001
        assert result.post_url == "https://t.me/testchannel/1001"
        assert result.scheduled_delete_at == result.published_at + timedelta(hours=24)
        assert gateway.published == [(-1001234567890, "Buy our product")]
        assert world.deal.status == DealStatus.POSTED

        verify = jobs.named(job_names.VERIFY_POST)
        assert [j["delay"] for j in verify] == [3600, 6 * 3600, 12 * 3600, 24 * 3600]
        assert [j["payload"]["is_final"] for j in verify] == [False, False, False, True]
        assert jobs.named(job_names.DELETE_POST)[0]["key"] == f"delete-{post.id}"
        notices = jobs.named(job_names.NOTIFY_POST_DELETION)
        assert [j["payload"]["minutes_left"] for j in notices] == [60, 10]
        assert len(events.of_type(PostPublished)) == 1

    @pytest.mark.asyncio
    async def test_redelivery_is_noop(self, services, world, make, gateway):
        world.deal.status = "SCHEDULED"
        post = make.post(world.deal)

        await services.posting.publish_post(post.id)
        again = await services.posting.publish_post(post.id)

        assert again.status == PostStatus.PUBLISHED
        assert len(gateway.published) == 1

    @pytest.mark.asyncio
    async def test_retry_resumes_after_mark_posted_failure(self, services, world, make, gateway, jobs, monkeypatch):
        world.deal.status = "SCHEDULED"
        post = make.post(world.deal)
        mark_posted = services.state_machine.mark_posted
        calls = []

        async def flaky_mark_posted(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError("connection reset")
            return await mark_posted(*args, **kwargs)

        monkeypatch.setattr(services.state_machine, "mark_posted", flaky_mark_posted)

        with pytest.raises(RuntimeError):
            await services.posting.publish_post(post.id)
        assert post.status == PostStatus.PUBLISHED
        assert world.deal.status == DealStatus.SCHEDULED
        assert jobs.named(job_names.VERIFY_POST) == []

        result = await services.posting.publish_post(post.id)

        assert result.status == PostStatus.PUBLISHED
        assert world.deal.status == DealStatus.POSTED
        assert len(gateway.published) == 1
        assert len(jobs.named(job_names.VERIFY_POST)) == 4
        assert len(jobs.named(job_names.DELETE_POST)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_publish_sends_once(self, services, world, make, gateway):
        world.deal.status = "SCHEDULED"
        post = make.post(world.deal)
        gateway.gate = asyncio.Event()

        first = asyncio.create_task(services.posting.publish_post(post.id))
        await gateway.publish_started.wait()
        second = await services.posting.publish_post(post.id)
        assert second.status == PostStatus.PUBLISHING

        gateway.gate.set()
        result = await first

        assert result.status == PostStatus.PUBLISHED
        assert len(gateway.published) == 1

    @pytest.mark.asyncio
    async def test_stale_claim_is_retaken(self, services, world, make, gateway):
        world.deal.status = "SCHEDULED"
        post = make.post(
            world.deal, status=PostStatus.PUBLISHING, claimed_at=utcnow() - timedelta(minutes=30),
        )

        result = await services.posting.publish_post(post.id)

        assert result.status == PostStatus.PUBLISHED
        assert len(gateway.published) == 1

    @pytest.mark.asyncio
    async def test_bot_not_admin(self, services, world, make, gateway):
        world.deal.status = "SCHEDULED"
        post = make.post(world.deal)
        gateway.is_admin = False

        with pytest.raises(NotAdminError):
            await services.posting.publish_post(post.id)

        assert post.status == PostStatus.FAILED
        assert gateway.published == []
        assert world.deal.status == "SCHEDULED"

    @pytest.mark.asyncio
    async def test_gateway_failure_marks_failed(self, services, world, make, gateway):
        world.deal.status = "SCHEDULED"
        post = make.post(world.deal)
        gateway.publish_error = RuntimeError("flood wait")

        with pytest.raises(RuntimeError):
            await services.posting.publish_post(post.id)

        assert post.status == PostStatus.FAILED
        assert post.error_message == "flood wait"

    @pytest.mark.asyncio
    async def test_failed_post_can_be_forced(self, services, world, make, gateway, jobs):
        world.deal.status = "SCHEDULED"
        post = make.post(world.deal, status=PostStatus.FAILED)

        result = await services.posting.force_publish(post.id)

        assert result.status == PostStatus.PUBLISHED
        assert f"publish-{post.id}" in jobs.cancelled

    @pytest.mark.asyncio
    async def test_closed_deal_cancels_publication(self, services, world, make, gateway):
        world.deal.status = "CANCELLED"
        post = make.post(world.deal)

        result = await services.posting.publish_post(post.id)

        assert result.status == PostStatus.CANCELLED
        assert gateway.published == []

    @pytest.mark.asyncio
    async def test_permanent_post_has_no_deletion(self, services, world, make, jobs):
        world.deal.status = "SCHEDULED"
        world.deal.is_permanent = True
        post = make.post(world.deal)

        result = await services.posting.publish_post(post.id)

        assert result.scheduled_delete_at is None
        assert jobs.named(job_names.DELETE_POST) == []
        assert jobs.named(job_names.VERIFY_POST)[-1]["payload"]["is_final"] is True


class TestPublishJobDelivery:
    @staticmethod
    def _deliver(services, job, post_id):
        return execute_job(
            services, job_names.PUBLISH_POST, job["key"], job["token"],
            lambda s: s.posting.publish_post(post_id),
        )

    @pytest.mark.asyncio
    async def test_scheduled_job_publishes_and_marks_posted(self, services, world, gateway, jobs):
        world.deal.status = "CREATIVE_APPROVED"
        post = await services.posting.schedule_post(
            SchedulePostRequest(deal_id=world.deal.id, content="Hello", scheduled_for=utcnow() + timedelta(hours=1))
        )
        job = jobs.named(job_names.PUBLISH_POST)[0]

        result = await self._deliver(services, job, post.id)

        assert result.status == PostStatus.PUBLISHED
        assert gateway.published == [(-1001234567890, "Hello")]
        assert world.deal.status == DealStatus.POSTED
        assert job["key"] not in jobs.pending
        assert len(jobs.named(job_names.VERIFY_POST)) == 4

    @pytest.mark.asyncio
    async def test_superseded_delivery_skipped_after_reschedule(self, services, world, gateway, jobs):
        world.deal.status = "CREATIVE_APPROVED"
        post = await services.posting.schedule_post(
            SchedulePostRequest(deal_id=world.deal.id, content="Hello", scheduled_for=utcnow() + timedelta(hours=1))
        )
        await services.posting.reschedule_post(post.id, utcnow() + timedelta(hours=5))
        old_job, new_job = jobs.named(job_names.PUBLISH_POST)

        assert old_job["key"] == new_job["key"] == f"publish-{post.id}"
        assert 5 * 3600 - 100 < new_job["delay"] <= 5 * 3600

        assert await self._deliver(services, old_job, post.id) is _SKIPPED
        assert gateway.published == []
        assert post.status == PostStatus.SCHEDULED
        assert world.deal.status == DealStatus.SCHEDULED

        result = await self._deliver(services, new_job, post.id)

        assert result.status == PostStatus.PUBLISHED
        assert len(gateway.published) == 1
        assert world.deal.status == DealStatus.POSTED


class TestManualConfirmation:
    @pytest.mark.asyncio
    async def test_owner_confirms_post(self, services, world, session, jobs):
        world.deal.status = "CREATIVE_APPROVED"
        world.deal.brief = "Promo text"

        post = await services.posting.confirm_manual_post(
            world.deal.id, owner_id=2, message_id=77, post_url="https://t.me/testchannel/77",
        )

        assert post.status == PostStatus.PUBLISHED
        assert post.content == "Promo text"
        assert world.deal.status == DealStatus.POSTED
        assert session.all(DealTimeline)[-1].event == "confirm_posted"
        assert len(jobs.named(job_names.VERIFY_POST)) == 4

    @pytest.mark.asyncio
    async def test_confirm_replaces_scheduled_job(self, services, world, make, jobs):
        world.deal.status = "SCHEDULED"
        post = make.post(world.deal)

        result = await services.posting.confirm_manual_post(world.deal.id, owner_id=2, message_id=5)

        assert result is post
        assert jobs.cancelled == [f"publish-{post.id}"]

    @pytest.mark.asyncio
    async def test_only_owner_may_confirm(self, services, world):
        world.deal.status = "CREATIVE_APPROVED"

        with pytest.raises(UnauthorizedError):
            await services.posting.confirm_manual_post(world.deal.id, owner_id=1)

    @pytest.mark.asyncio
    async def test_publishing_post_cannot_be_confirmed(self, services, world, make, gateway):
        world.deal.status = "SCHEDULED"
        post = make.post(world.deal, status=PostStatus.PUBLISHING, claimed_at=utcnow())

        with pytest.raises(InvalidStateError, match="already PUBLISHING"):
            await services.posting.confirm_manual_post(world.deal.id, owner_id=2, message_id=5)

        assert post.status == PostStatus.PUBLISHING
        assert post.telegram_message_id is None
        assert world.deal.status == DealStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_confirm_loses_to_publisher(self, services, world, make, session, jobs):
        world.deal.status = "SCHEDULED"
        post = make.post(world.deal)
        session.lose_next_update.add("published_posts")

        with pytest.raises(InvalidStateError, match="claimed for publishing"):
            await services.posting.confirm_manual_post(world.deal.id, owner_id=2, message_id=5)

        assert post.status == PostStatus.SCHEDULED
        assert post.published_at is None
        assert world.deal.status == DealStatus.SCHEDULED
        assert jobs.cancelled == []


class TestVerification:
    @pytest.mark.asyncio
    async def test_intermediate_check_records_engagement(self, services, world, make, session, jobs):
        world.deal.status = "POSTED"
        post = _published(make, world.deal)

        result = await services.posting.verify_post(post.id)

        assert result.exists is True
        assert result.views == 100
        assert post.views == 100
        assert post.verification_count == 1
        assert len(session.all(PostVerification)) == 1
        assert jobs.named(job_names.RELEASE_FUNDS) == []

    @pytest.mark.asyncio
    async def test_early_deletion_is_violation(self, services, world, make, session, gateway, events, jobs):
        world.deal.status = "POSTED"
        post = _published(make, world.deal)
        gateway.info = MessageInfo(exists=False)

        result = await services.posting.verify_post(post.id)

        assert result.exists is False
        assert post.status == PostStatus.DELETED
        assert session.all(DealTimeline)[-1].event == timeline.POST_DELETED_EARLY
        assert events.of_type(PostViolation)[0].reason == "deleted_early"
        assert jobs.named(job_names.RELEASE_FUNDS) == []

    @pytest.mark.asyncio
    async def test_final_check_releases_funds(self, services, world, make, jobs):
        world.deal.status = "POSTED"
        post = _published(make, world.deal)

        await services.posting.verify_post(post.id, is_final=True)

        assert world.deal.status == DealStatus.VERIFIED
        release = jobs.named(job_names.RELEASE_FUNDS)
        assert release[0]["key"] == f"release-{world.deal.id}"
        assert release[0]["payload"] == {"deal_id": world.deal.id}

    @pytest.mark.asyncio
    async def test_final_check_after_scheduled_deletion(self, services, world, make, gateway, jobs):
        world.deal.status = "POSTED"
        end = utcnow() - timedelta(minutes=5)
        post = _published(
            make, world.deal, status=PostStatus.DELETED, scheduled_delete_at=end, deleted_at=end, views=420,
        )
        gateway.info_error = AssertionError("gateway should not be called")

        result = await services.posting.verify_post(post.id, is_final=True)

        assert result.exists is True
        assert result.views == 420
        assert world.deal.status == DealStatus.VERIFIED
        assert len(jobs.named(job_names.RELEASE_FUNDS)) == 1

    @pytest.mark.asyncio
    async def test_edit_recorded_on_timeline(self, services, world, make, session, gateway):
        world.deal.status = "POSTED"
        post = _published(make, world.deal)
        gateway.info = MessageInfo(exists=True, views=10, edited=True)

        result = await services.posting.verify_post(post.id)

        assert result.is_edited is True
        assert session.all(DealTimeline)[-1].event == timeline.POST_EDITED

    @pytest.mark.asyncio
    async def test_edit_recorded_once(self, services, world, make, session, gateway):
        world.deal.status = "POSTED"
        post = _published(make, world.deal)
        gateway.info = MessageInfo(exists=True, views=10, edited=True)

        await services.posting.verify_post(post.id)
        await services.posting.verify_post(post.id)

        edits = [e for e in session.all(DealTimeline) if e.event == timeline.POST_EDITED]
        assert len(edits) == 1
        checks = session.all(PostVerification)
        assert len(checks) == 2
        assert all(check.is_edited for check in checks)

    @pytest.mark.asyncio
    async def test_gateway_error_recorded_and_raised(self, services, world, make, session, gateway):
        world.deal.status = "POSTED"
        post = _published(make, world.deal)
        gateway.info_error = RuntimeError("mtproto timeout")

        with pytest.raises(RuntimeError):
            await services.posting.verify_post(post.id)

        check = session.all(PostVerification)[0]
        assert check.error == "mtproto timeout"
        assert post.status == PostStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_post_without_message_skipped(self, services, world, make):
        post = make.post(world.deal)

        result = await services.posting.verify_post(post.id)

        assert result.exists is False


class TestDeletion:
    @pytest.mark.asyncio
    async def test_delete_at_end_of_duration(self, services, world, make, gateway, session):
        post = _published(make, world.deal)

        assert await services.posting.delete_post(post.id) is True

        assert post.status == PostStatus.DELETED
        assert gateway.deleted == [(-1001234567890, 1001)]
        assert session.all(DealTimeline)[-1].event == timeline.POST_DURATION_ENDED
        assert await services.posting.delete_post(post.id) is False

    @pytest.mark.asyncio
    async def test_pre_delete_notice(self, services, world, make, events):
        post = _published(make, world.deal)

        assert await services.posting.notify_pre_delete(post.id, 10) is True
        assert events.of_type(PostDeletionUpcoming)[0].minutes_left == 10

    @pytest.mark.asyncio
    async def test_no_notice_for_deleted_post(self, services, world, make, events):
        post = _published(make, world.deal, status=PostStatus.DELETED)

        assert await services.posting.notify_pre_delete(post.id, 60) is False
