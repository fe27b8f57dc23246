"""MTProto client (Pyrogram) for reading channel posts back.

The Bot API cannot read messages it did not receive as updates, so post
verification (liveness, edits, views, reactions) goes through a user
session. Unlike a missing message, an unreachable channel or an
unconfigured session is an error: verification must not mistake it for a
deleted post.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from adescrow.core.config import settings

logger = logging.getLogger(__name__)


class MTProtoUnavailable(RuntimeError):
    """MTProto session is not configured or the channel is not readable."""


@dataclass
class PostData:
    telegram_message_id: int
    views: int | None
    forward_count: int | None
    reactions_count: int | None
    edit_date: datetime | None
    text_preview: str | None


_client = None
_client_lock = asyncio.Lock()


async def get_client():
    """Return a connected Pyrogram Client, or None if not configured."""
    global _client

    if not settings.mtproto_configured:
        return None

    async with _client_lock:
        if _client is not None:
            if _client.is_connected:
                return _client
            _client = None

        from pyrogram import Client

        client = Client(
            name="adescrow_verifier",
            api_id=settings.mtproto_api_id,
            api_hash=settings.mtproto_api_hash,
            session_string=settings.mtproto_session_string,
            in_memory=True,
            no_updates=True,
        )
        await client.start()
        logger.info("MTProto client connected")
        _client = client
        return _client


async def stop_client() -> None:
    """Gracefully disconnect the MTProto client."""
    global _client
    if _client is not None:
        try:
            await _client.stop()
            logger.info("MTProto client disconnected")
        except Exception:
            logger.exception("Error stopping MTProto client")
        finally:
            _client = None


def _extract_post_data(msg) -> PostData:
    """Map a Pyrogram Message to PostData."""
    reactions_count = None
    if msg.reactions and msg.reactions.reactions:
        reactions_count = sum(r.count for r in msg.reactions.reactions)

    text = msg.text or msg.caption or None

    edit_date = msg.edit_date
    if edit_date and edit_date.tzinfo is None:
        edit_date = edit_date.replace(tzinfo=timezone.utc)

    return PostData(
        telegram_message_id=msg.id,
        views=msg.views,
        forward_count=msg.forwards,
        reactions_count=reactions_count,
        edit_date=edit_date,
        text_preview=str(text)[:500] if text else None,
    )


async def get_message(chat_id: int | str, message_id: int) -> PostData | None:
    """Read one channel message; None only if the message no longer exists."""
    client = await get_client()
    if client is None:
        raise MTProtoUnavailable("MTProto session is not configured")

    from pyrogram.errors import ChannelPrivate, ChatAdminRequired, FloodWait

    try:
        msg = await client.get_messages(chat_id, message_id)
    except FloodWait as e:
        logger.warning("MTProto FloodWait: sleeping %d seconds", e.value)
        await asyncio.sleep(e.value)
        msg = await client.get_messages(chat_id, message_id)
    except (ChannelPrivate, ChatAdminRequired) as e:
        raise MTProtoUnavailable(f"Channel {chat_id} is not readable: {e}") from e

    if msg is None or msg.empty:
        return None
    return _extract_post_data(msg)
