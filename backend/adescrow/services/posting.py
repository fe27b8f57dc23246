"""Post scheduling, publishing, verification and duration-end deletion.

A post is published at most once: the publisher claims the row with a
conditional update and a lost claim turns the call into a no-op. Automatic
publication and the owner's manual confirmation both finish through
``PostingService._on_published``, which advances the deal to POSTED and
schedules verification checkpoints and deletion.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adescrow.core import jobs as job_names
from adescrow.core.config import settings
from adescrow.core.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotAdminError,
    NotFoundError,
    UnauthorizedError,
    ValidationFailure,
)
from adescrow.core.events import (
    EventBus,
    PostDeletionUpcoming,
    PostPublished,
    PostVerified,
    PostViolation,
)
from adescrow.core.jobs import JobQueue
from adescrow.db.base import utcnow
from adescrow.models.channel import Channel
from adescrow.models.deal import Deal
from adescrow.models.post_verification import PostVerification
from adescrow.models.published_post import PostStatus, PublishedPost
from adescrow.services import timeline
from adescrow.services.deal_state_machine import DealStateMachine, DealStatus, Role
from adescrow.services.telegram import ChannelGateway, build_post_url

logger = logging.getLogger(__name__)

SCHEDULABLE_DEAL_STATUSES = (DealStatus.CREATIVE_APPROVED, DealStatus.SCHEDULED)
ACTIVE_POST_STATUSES = (PostStatus.SCHEDULED, PostStatus.PUBLISHING, PostStatus.PUBLISHED)

# Pre-deletion reminders: (minutes before deletion, dedupe key prefix)
_DELETION_NOTICES = ((60, "notify-delete-1h"), (10, "notify-delete-10m"))


@dataclass
class SchedulePostRequest:
    deal_id: int
    content: str
    scheduled_for: datetime
    media_urls: list[str] | None = None
    buttons: list[dict] | None = None


@dataclass(frozen=True)
class VerificationResult:
    post_id: int
    exists: bool
    is_final: bool
    views: int = 0
    reactions: int = 0
    forwards: int = 0
    is_edited: bool = False


def publish_key(post_id: int) -> str:
    return f"publish-{post_id}"


def verification_offsets(duration_hours: int) -> list[int]:
    """Checkpoint offsets in hours, capped at the duration; the last one is final."""
    checks = {h for h in settings.verification_check_hours if 0 < h < duration_hours}
    checks.add(duration_hours)
    return sorted(checks)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def get_active_post(db: AsyncSession, deal_id: int) -> PublishedPost | None:
    result = await db.execute(
        select(PublishedPost)
        .where(
            PublishedPost.deal_id == deal_id,
            PublishedPost.status.in_([str(s) for s in ACTIVE_POST_STATUSES]),
        )
        .order_by(PublishedPost.id.desc())
    )
    return result.scalars().first()


class PostingService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        jobs: JobQueue,
        gateway: ChannelGateway,
        events: EventBus,
        state_machine: DealStateMachine,
    ) -> None:
        self._session_factory = session_factory
        self._jobs = jobs
        self._gateway = gateway
        self._events = events
        self._dsm = state_machine

    async def get_post(self, post_id: int) -> PublishedPost:
        async with self._session_factory() as db:
            post = await db.get(PublishedPost, post_id)
        if post is None:
            raise NotFoundError("Post", post_id)
        return post

    # -- scheduling ---------------------------------------------------------

    async def schedule_post(self, request: SchedulePostRequest) -> PublishedPost:
        scheduled_for = _as_utc(request.scheduled_for)

        async with self._session_factory() as db:
            deal = await db.get(Deal, request.deal_id)
            if deal is None:
                raise NotFoundError("Deal", request.deal_id)
            if deal.status not in SCHEDULABLE_DEAL_STATUSES:
                raise InvalidStateError(f"Cannot schedule a post for deal in status {deal.status}")
            now = utcnow()
            if scheduled_for <= now:
                raise ValidationFailure("Scheduled time must be in the future")

            if await get_active_post(db, deal.id) is not None:
                raise InvalidStateError(f"Deal {deal.id} already has an active post")

            post = PublishedPost(
                deal_id=deal.id,
                channel_id=deal.channel_id,
                content=request.content,
                media_urls=request.media_urls,
                buttons=request.buttons,
                status=PostStatus.SCHEDULED.value,
                scheduled_for=scheduled_for,
            )
            db.add(post)
            deal.scheduled_post_time = scheduled_for
            try:
                await db.commit()
            except IntegrityError:
                # Another request scheduled a post for this deal first
                await db.rollback()
                raise InvalidStateError(f"Deal {deal.id} already has an active post")
            deal_status = deal.status

        if deal_status == DealStatus.CREATIVE_APPROVED:
            await self._dsm.schedule(request.deal_id, scheduled_for=scheduled_for)

        await self._jobs.enqueue(
            job_names.PUBLISH_POST,
            {"post_id": post.id},
            delay_seconds=(scheduled_for - now).total_seconds(),
            dedupe_key=publish_key(post.id),
        )
        logger.info("Post %d for deal %d scheduled at %s", post.id, request.deal_id, scheduled_for.isoformat())
        return post

    async def reschedule_post(self, post_id: int, new_time: datetime) -> PublishedPost:
        new_time = _as_utc(new_time)
        now = utcnow()
        if new_time <= now:
            raise ValidationFailure("Scheduled time must be in the future")

        async with self._session_factory() as db:
            post = await db.get(PublishedPost, post_id)
            if post is None:
                raise NotFoundError("Post", post_id)
            if post.status != PostStatus.SCHEDULED:
                raise InvalidStateError(f"Only scheduled posts can be rescheduled (post is {post.status})")

            await self._jobs.cancel(publish_key(post.id))
            post.scheduled_for = new_time
            deal = await db.get(Deal, post.deal_id)
            if deal is not None:
                deal.scheduled_post_time = new_time
            await db.commit()

        await self._jobs.enqueue(
            job_names.PUBLISH_POST,
            {"post_id": post.id},
            delay_seconds=(new_time - now).total_seconds(),
            dedupe_key=publish_key(post.id),
        )
        logger.info("Post %d rescheduled to %s", post.id, new_time.isoformat())
        return post

    async def cancel_scheduled_post(self, post_id: int) -> PublishedPost:
        async with self._session_factory() as db:
            post = await db.get(PublishedPost, post_id)
            if post is None:
                raise NotFoundError("Post", post_id)
            if post.status != PostStatus.SCHEDULED:
                raise InvalidStateError(f"Only scheduled posts can be cancelled (post is {post.status})")

            await self._jobs.cancel(publish_key(post.id))
            result = await db.execute(
                update(PublishedPost)
                .where(PublishedPost.id == post.id, PublishedPost.status == PostStatus.SCHEDULED)
                .values(status=PostStatus.CANCELLED.value)
            )
            if result.rowcount == 0:
                await db.rollback()
                raise InvalidStateError(f"Post {post.id} was claimed for publishing")
            post.status = PostStatus.CANCELLED.value
            await db.commit()

        logger.info("Scheduled post %d cancelled", post.id)
        return post

    async def cancel_posts_for_deal(self, deal_id: int) -> int:
        """Cancel every still-scheduled post of a deal (deal cancelled or expired)."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(PublishedPost).where(
                    PublishedPost.deal_id == deal_id,
                    PublishedPost.status == PostStatus.SCHEDULED,
                )
            )
            posts = result.scalars().all()

        count = 0
        for post in posts:
            try:
                await self.cancel_scheduled_post(post.id)
                count += 1
            except InvalidStateError:
                logger.info("Post %d no longer scheduled, leaving it", post.id)
        return count

    # -- publishing ---------------------------------------------------------

    async def publish_post(self, post_id: int) -> PublishedPost:
        async with self._session_factory() as db:
            post = await db.get(PublishedPost, post_id)
            if post is None:
                raise NotFoundError("Post", post_id)
            if post.status == PostStatus.PUBLISHED or post.published_at is not None:
                deal = await db.get(Deal, post.deal_id)
                if (
                    post.status == PostStatus.PUBLISHED
                    and deal is not None
                    and deal.status in SCHEDULABLE_DEAL_STATUSES
                ):
                    # Message is live but an earlier attempt failed before the deal reached POSTED
                    logger.warning("Post %d published but deal %d not posted yet, resuming", post_id, deal.id)
                    await self._on_published(post, Role.SYSTEM)
                else:
                    logger.info("Post %d already published, skipping", post_id)
                return post
            if post.status in (PostStatus.CANCELLED, PostStatus.DELETED):
                logger.info("Post %d is %s, nothing to publish", post_id, post.status)
                return post

            deal = await db.get(Deal, post.deal_id)
            if deal is None or deal.status not in SCHEDULABLE_DEAL_STATUSES:
                logger.warning(
                    "Post %d: deal %s is %s, cancelling publication",
                    post_id, post.deal_id, deal.status if deal else None,
                )
                post.status = PostStatus.CANCELLED.value
                await db.commit()
                return post

            channel = await db.get(Channel, post.channel_id)
            if channel is None:
                raise NotFoundError("Channel", post.channel_id)
            chat_id = channel.telegram_channel_id

            if not await self._gateway.is_bot_admin(chat_id):
                post.status = PostStatus.FAILED.value
                post.error_message = "Bot is not an administrator of the channel"
                await db.commit()
                raise NotAdminError(chat_id)

            now = utcnow()
            stale_before = now - timedelta(seconds=settings.publish_claim_stale_seconds)
            try:
                result = await db.execute(
                    update(PublishedPost)
                    .where(
                        PublishedPost.id == post.id,
                        PublishedPost.published_at.is_(None),
                        or_(
                            PublishedPost.status.in_([PostStatus.SCHEDULED.value, PostStatus.FAILED.value]),
                            and_(
                                PublishedPost.status == PostStatus.PUBLISHING,
                                PublishedPost.claimed_at < stale_before,
                            ),
                        ),
                    )
                    .values(status=PostStatus.PUBLISHING.value, claimed_at=now)
                )
            except IntegrityError:
                await db.rollback()
                raise InvalidStateError(f"Deal {post.deal_id} already has another active post")
            if result.rowcount == 0:
                await db.rollback()
                logger.info("Post %d claimed by another worker, skipping", post_id)
                return await self.get_post(post_id)
            post.status = PostStatus.PUBLISHING.value
            post.claimed_at = now
            await db.commit()

            try:
                sent = await self._gateway.publish(chat_id, post.content, post.media_urls, post.buttons)
            except Exception as exc:
                logger.exception("Failed to publish post %d to chat %s", post_id, chat_id)
                post.status = PostStatus.FAILED.value
                post.error_message = str(exc)[:500]
                await db.commit()
                raise

            published_at = utcnow()
            post.status = PostStatus.PUBLISHED.value
            post.telegram_message_id = sent.message_id
            post.post_url = sent.post_url or build_post_url(chat_id, sent.message_id, channel.username)
            post.published_at = published_at
            post.error_message = None
            if not deal.is_permanent:
                post.scheduled_delete_at = published_at + timedelta(hours=deal.duration_hours)
            await db.commit()

        logger.info("Post %d published as message %s in chat %s", post_id, sent.message_id, chat_id)
        await self._on_published(post, Role.SYSTEM)
        return post

    async def force_publish(self, post_id: int) -> PublishedPost:
        """Publish now, replacing the pending publish job (admin retry after FAILED)."""
        post = await self.get_post(post_id)
        if post.status not in (PostStatus.SCHEDULED, PostStatus.FAILED):
            raise InvalidStateError(f"Post {post_id} is {post.status}, cannot force publish")
        await self._jobs.cancel(publish_key(post_id))
        return await self.publish_post(post_id)

    async def confirm_manual_post(
        self,
        deal_id: int,
        owner_id: int,
        *,
        message_id: int | None = None,
        post_url: str | None = None,
        content: str | None = None,
    ) -> PublishedPost:
        """Record a post the channel owner published by hand."""
        deal = await self._dsm.get_deal(deal_id)
        if deal.owner_id != owner_id:
            raise UnauthorizedError(f"User {owner_id} is not the channel owner of deal {deal_id}")
        if deal.status not in SCHEDULABLE_DEAL_STATUSES:
            raise InvalidTransitionError(deal.status, DealStatus.POSTED, Role.CHANNEL_OWNER)

        now = utcnow()
        values = {
            "status": PostStatus.PUBLISHED.value,
            "telegram_message_id": message_id,
            "post_url": post_url,
            "published_at": now,
        }
        if not deal.is_permanent:
            values["scheduled_delete_at"] = now + timedelta(hours=deal.duration_hours)

        superseded = None
        async with self._session_factory() as db:
            post = await get_active_post(db, deal_id)
            if post is None:
                post = PublishedPost(
                    deal_id=deal_id,
                    channel_id=deal.channel_id,
                    content=content or deal.brief or "",
                    **values,
                )
                db.add(post)
            elif post.status != PostStatus.SCHEDULED:
                raise InvalidStateError(f"Deal {deal_id} post is already {post.status}")
            else:
                # Loses to a publisher that claimed the post after it was read
                result = await db.execute(
                    update(PublishedPost)
                    .where(
                        PublishedPost.id == post.id,
                        PublishedPost.published_at.is_(None),
                        PublishedPost.status.in_([PostStatus.SCHEDULED.value, PostStatus.FAILED.value]),
                    )
                    .values(**values)
                )
                if result.rowcount == 0:
                    await db.rollback()
                    raise InvalidStateError(f"Post {post.id} was claimed for publishing")
                for key, value in values.items():
                    setattr(post, key, value)
                superseded = publish_key(post.id)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise InvalidStateError(f"Deal {deal_id} already has an active post")

        if superseded is not None:
            await self._jobs.cancel(superseded)
        await self._on_published(post, Role.CHANNEL_OWNER, actor_id=owner_id)
        return post

    async def _on_published(self, post: PublishedPost, role: Role, actor_id: int | None = None) -> None:
        """Single mark-posted path shared by automatic and manual publication."""
        deal = await self._dsm.get_deal(post.deal_id)
        metadata = {"post_id": post.id, "message_id": post.telegram_message_id}
        if deal.status in SCHEDULABLE_DEAL_STATUSES:
            if role == Role.CHANNEL_OWNER:
                deal = await self._dsm.confirm_posted(deal.id, actor_id=actor_id, metadata=metadata)
            else:
                deal = await self._dsm.mark_posted(deal.id, role, metadata=metadata)
        elif deal.status != DealStatus.POSTED:
            logger.warning("Post %d published but deal %d is %s", post.id, deal.id, deal.status)
            return

        duration = deal.duration_hours or settings.default_post_duration_hours
        horizon = settings.default_post_duration_hours if deal.is_permanent else duration
        await self.schedule_verification(post.id, horizon)
        if post.scheduled_delete_at is not None:
            await self.schedule_deletion(post.id, post.scheduled_delete_at)

        await self._events.publish(PostPublished(
            deal.id, post_id=post.id, message_id=post.telegram_message_id, post_url=post.post_url,
        ))

    async def schedule_verification(self, post_id: int, duration_hours: int) -> None:
        offsets = verification_offsets(duration_hours)
        for hours in offsets:
            delay = hours * 3600
            await self._jobs.enqueue(
                job_names.VERIFY_POST,
                {"post_id": post_id, "is_final": hours == duration_hours},
                delay_seconds=delay,
                dedupe_key=f"verify-{post_id}-{delay}",
            )
        logger.info("Post %d: verification checkpoints at %s hours", post_id, offsets)

    async def schedule_deletion(self, post_id: int, delete_at: datetime) -> None:
        delay = (delete_at - utcnow()).total_seconds()
        await self._jobs.enqueue(
            job_names.DELETE_POST,
            {"post_id": post_id},
            delay_seconds=max(delay, 0),
            dedupe_key=f"delete-{post_id}",
        )
        for minutes, prefix in _DELETION_NOTICES:
            notice_delay = delay - minutes * 60
            if notice_delay > 0:
                await self._jobs.enqueue(
                    job_names.NOTIFY_POST_DELETION,
                    {"post_id": post_id, "minutes_left": minutes},
                    delay_seconds=notice_delay,
                    dedupe_key=f"{prefix}-{post_id}",
                )

    # -- verification -------------------------------------------------------

    async def verify_post(self, post_id: int, is_final: bool = False) -> VerificationResult:
        """Check that the post is still live and record its engagement."""
        async with self._session_factory() as db:
            post = await db.get(PublishedPost, post_id)
            if post is None or not post.telegram_message_id:
                logger.warning("Post %d missing or has no message id, nothing to verify", post_id)
                return VerificationResult(post_id=post_id, exists=False, is_final=is_final)

            if post.status == PostStatus.DELETED and _removed_on_schedule(post):
                # Duration ended and the deletion job ran first: retention was kept
                deal_id = post.deal_id
                result = VerificationResult(
                    post_id=post_id, exists=True, is_final=is_final,
                    views=post.views or 0, reactions=post.reactions or 0, forwards=post.forwards or 0,
                )
                post = None
            elif post.status == PostStatus.DELETED:
                logger.info("Post %d already recorded as deleted", post_id)
                return VerificationResult(post_id=post_id, exists=False, is_final=is_final)

            if post is not None:
                channel = await db.get(Channel, post.channel_id)
                if channel is None:
                    raise NotFoundError("Channel", post.channel_id)
                try:
                    info = await self._gateway.get_message_info(channel.chat_ref, post.telegram_message_id)
                except Exception as exc:
                    db.add(PostVerification(
                        post_id=post.id, exists=False, is_final=is_final, error=str(exc)[:500],
                    ))
                    await db.commit()
                    raise

                result, events = await self._apply_check(db, post, info, is_final)
                deal_id = post.deal_id
                await db.commit()
                await self._events.publish_all(events)

        if result.exists and is_final:
            await self._complete_verification(deal_id, post_id, result.views)
        return result

    async def _apply_check(self, db: AsyncSession, post: PublishedPost, info, is_final: bool):
        now = utcnow()
        edit_seen = False
        if info.edited:
            previous = await db.execute(
                select(PostVerification).where(
                    PostVerification.post_id == post.id,
                    PostVerification.is_edited.is_(True),
                )
            )
            edit_seen = previous.scalars().first() is not None

        db.add(PostVerification(
            post_id=post.id,
            exists=info.exists,
            views=info.views,
            reactions=info.reactions,
            forwards=info.forwards,
            is_edited=info.edited,
            is_final=is_final,
        ))
        post.verification_count = (post.verification_count or 0) + 1
        post.last_verified_at = now

        events = []
        if not info.exists:
            post.status = PostStatus.DELETED.value
            post.deleted_at = now
            if is_final:
                logger.warning("Post %d missing at final check (deal %d)", post.id, post.deal_id)
            else:
                logger.warning("Post %d deleted before its duration ended (deal %d)", post.id, post.deal_id)
                timeline.add_timeline_entry(
                    db, post.deal_id, timeline.POST_DELETED_EARLY,
                    note="Post deleted before the agreed duration ended",
                    details={"post_id": post.id, "message_id": post.telegram_message_id},
                )
                events.append(PostViolation(post.deal_id, post_id=post.id, reason="deleted_early"))
        else:
            post.views = max(post.views or 0, info.views)
            post.reactions = info.reactions
            post.forwards = info.forwards
            if info.edited and not edit_seen:
                logger.warning("Post %d was edited (deal %d)", post.id, post.deal_id)
                timeline.add_timeline_entry(
                    db, post.deal_id, timeline.POST_EDITED,
                    note="Post was edited after publication",
                    details={"post_id": post.id},
                )

        result = VerificationResult(
            post_id=post.id,
            exists=info.exists,
            is_final=is_final,
            views=info.views,
            reactions=info.reactions,
            forwards=info.forwards,
            is_edited=info.edited,
        )
        return result, events

    async def _complete_verification(self, deal_id: int, post_id: int, views: int) -> None:
        deal = await self._dsm.get_deal(deal_id)
        if deal.status == DealStatus.POSTED:
            deal = await self._dsm.start_verification(deal_id)
        if deal.status == DealStatus.VERIFYING:
            deal = await self._dsm.mark_verified(deal_id, metadata={"post_id": post_id, "views": views})
        if deal.status != DealStatus.VERIFIED:
            logger.warning("Deal %d is %s after final verification, not releasing", deal_id, deal.status)
            return

        await self._events.publish(PostVerified(deal_id, post_id=post_id, views=views))
        await self._jobs.enqueue(
            job_names.RELEASE_FUNDS,
            {"deal_id": deal_id},
            dedupe_key=f"release-{deal_id}",
        )

    # -- duration end -------------------------------------------------------

    async def delete_post(self, post_id: int) -> bool:
        """Remove the post from the channel once the paid duration is over."""
        async with self._session_factory() as db:
            post = await db.get(PublishedPost, post_id)
            if post is None or post.status != PostStatus.PUBLISHED:
                return False

            if post.telegram_message_id:
                channel = await db.get(Channel, post.channel_id)
                if channel is not None:
                    await self._gateway.delete_message(channel.telegram_channel_id, post.telegram_message_id)

            post.status = PostStatus.DELETED.value
            post.deleted_at = utcnow()
            timeline.add_timeline_entry(
                db, post.deal_id, timeline.POST_DURATION_ENDED,
                note="Post removed at the end of the paid duration",
                details={"post_id": post.id},
            )
            await db.commit()

        logger.info("Post %d deleted at end of duration", post_id)
        return True

    async def notify_pre_delete(self, post_id: int, minutes_left: int) -> bool:
        post = await self.get_post(post_id)
        if post.status != PostStatus.PUBLISHED:
            return False
        await self._events.publish(PostDeletionUpcoming(post.deal_id, post_id=post.id, minutes_left=minutes_left))
        return True


def _removed_on_schedule(post: PublishedPost) -> bool:
    return (
        post.scheduled_delete_at is not None
        and post.deleted_at is not None
        and post.deleted_at >= post.scheduled_delete_at
    )
