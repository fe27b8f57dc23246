"""Telegram channel gateway: Bot API for posting, MTProto for reading posts back."""

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from adescrow.core.config import settings
from adescrow.services import mtproto

logger = logging.getLogger(__name__)

_ADMIN_STATUSES = ("administrator", "creator")


class TelegramAPIError(Exception):
    """Bot API returned ok=false."""

    def __init__(self, method: str, description: str, error_code: int | None = None) -> None:
        super().__init__(f"{method}: {description}")
        self.method = method
        self.description = description
        self.error_code = error_code


@dataclass(frozen=True)
class PublishResult:
    message_id: int
    post_url: str | None = None


@dataclass(frozen=True)
class MessageInfo:
    exists: bool
    views: int = 0
    reactions: int = 0
    forwards: int = 0
    edited: bool = False


class ChannelGateway(Protocol):
    async def is_bot_admin(self, chat_id: int | str) -> bool: ...

    async def publish(
        self,
        chat_id: int | str,
        content: str,
        media_urls: list[str] | None = None,
        buttons: list[dict] | None = None,
    ) -> PublishResult: ...

    async def get_message_info(self, chat_ref: int | str, message_id: int) -> MessageInfo: ...

    async def delete_message(self, chat_id: int | str, message_id: int) -> bool: ...

    async def send_direct_message(self, telegram_user_id: int, text: str) -> None: ...


def build_post_url(chat_id: int | str, message_id: int, username: str | None = None) -> str:
    """Public t.me link for a channel message."""
    if username:
        return f"https://t.me/{username.lstrip('@')}/{message_id}"
    internal_id = str(chat_id)
    if internal_id.startswith("-100"):
        internal_id = internal_id[4:]
    return f"https://t.me/c/{internal_id.lstrip('-')}/{message_id}"


def _inline_keyboard(buttons: list[dict] | None) -> dict | None:
    if not buttons:
        return None
    rows = [[{"text": b["text"], "url": b["url"]}] for b in buttons if b.get("text") and b.get("url")]
    return {"inline_keyboard": rows} if rows else None


class TelegramChannelGateway:
    """ChannelGateway over the Bot API (httpx) and a Pyrogram MTProto session."""

    def __init__(self, bot_token: str | None = None) -> None:
        token = settings.bot_token if bot_token is None else bot_token
        self._base_url = f"https://api.telegram.org/bot{token}"
        self._bot_id: int | None = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
        reraise=True,
    )
    async def _call(self, method: str, **params: Any) -> Any:
        """Call a Bot API method and return its ``result``."""
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.post(f"{self._base_url}/{method}", json=params)
            data = resp.json()
        if not data.get("ok"):
            desc = data.get("description", "Unknown error")
            logger.error("Telegram API error: %s -> %s", method, desc)
            raise TelegramAPIError(method, desc, data.get("error_code"))
        return data["result"]

    async def _get_bot_id(self) -> int:
        if self._bot_id is None:
            me = await self._call("getMe")
            self._bot_id = me["id"]
        return self._bot_id

    async def is_bot_admin(self, chat_id: int | str) -> bool:
        bot_id = await self._get_bot_id()
        try:
            member = await self._call("getChatMember", chat_id=chat_id, user_id=bot_id)
        except TelegramAPIError as exc:
            logger.warning("Admin check failed for chat %s: %s", chat_id, exc.description)
            return False
        return member.get("status") in _ADMIN_STATUSES

    async def publish(
        self,
        chat_id: int | str,
        content: str,
        media_urls: list[str] | None = None,
        buttons: list[dict] | None = None,
    ) -> PublishResult:
        """Send the ad post: text, single photo with caption, or an album."""
        media = media_urls or []
        markup = _inline_keyboard(buttons)

        if len(media) >= 2:
            input_media: list[dict[str, Any]] = [{"type": "photo", "media": url} for url in media[:10]]
            input_media[0]["caption"] = content
            messages = await self._call("sendMediaGroup", chat_id=chat_id, media=input_media)
            message = messages[0]
        elif len(media) == 1:
            params: dict[str, Any] = {"chat_id": chat_id, "photo": media[0], "caption": content}
            if markup:
                params["reply_markup"] = markup
            message = await self._call("sendPhoto", **params)
        else:
            params = {"chat_id": chat_id, "text": content}
            if markup:
                params["reply_markup"] = markup
            message = await self._call("sendMessage", **params)

        chat = message.get("chat", {})
        message_id = message["message_id"]
        return PublishResult(
            message_id=message_id,
            post_url=build_post_url(chat.get("id", chat_id), message_id, chat.get("username")),
        )

    async def get_message_info(self, chat_ref: int | str, message_id: int) -> MessageInfo:
        post = await mtproto.get_message(chat_ref, message_id)
        if post is None:
            return MessageInfo(exists=False)
        return MessageInfo(
            exists=True,
            views=post.views or 0,
            reactions=post.reactions_count or 0,
            forwards=post.forward_count or 0,
            edited=post.edit_date is not None,
        )

    async def delete_message(self, chat_id: int | str, message_id: int) -> bool:
        try:
            return bool(await self._call("deleteMessage", chat_id=chat_id, message_id=message_id))
        except TelegramAPIError as exc:
            if "message to delete not found" in exc.description.lower():
                logger.info("Message %s in chat %s already gone", message_id, chat_id)
                return False
            raise

    async def send_direct_message(self, telegram_user_id: int, text: str) -> None:
        params: dict[str, Any] = {"chat_id": telegram_user_id, "text": text}
        if settings.mini_app_url:
            params["reply_markup"] = {
                "inline_keyboard": [[{"text": "Open", "web_app": {"url": settings.mini_app_url}}]]
            }
        await self._call("sendMessage", **params)
