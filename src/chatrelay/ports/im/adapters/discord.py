"""
Discord adapter for the chat relay.

Uses discord.py with a Gateway connection for both inbound and outbound,
running on the relay's own event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, List, Optional

from ....contracts.v1 import ChatEvent
from .base import EventHandler, IMAdapter

logger = logging.getLogger("chatrelay.discord")

# Discord limits
DISCORD_MAX_MESSAGE_LENGTH = 2000
READY_TIMEOUT_S = 30.0


def _as_id(value: str) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


class DiscordAdapter(IMAdapter):
    """
    Discord adapter using discord.py Gateway.

    `connect` starts the client as a task and waits for `on_ready`.
    """

    platform = "discord"
    max_message_length = DISCORD_MAX_MESSAGE_LENGTH

    def __init__(self, token: str, *, ignore_bots: bool = False, ready_timeout_s: float = READY_TIMEOUT_S):
        self.token = token
        self.ignore_bots = ignore_bots
        self.ready_timeout_s = ready_timeout_s

        self._client: Any = None
        self._task: Optional[asyncio.Task] = None
        self._on_event: Optional[EventHandler] = None
        self._ready = asyncio.Event()

    async def connect(self, on_event: EventHandler) -> bool:
        import discord

        self._on_event = on_event
        intents = discord.Intents.default()
        intents.message_content = True
        intents.guilds = True
        intents.guild_messages = True
        intents.guild_reactions = True
        self._client = discord.Client(intents=intents)

        @self._client.event
        async def on_ready():
            logger.info("connected as %s", self._client.user, extra={"platform": self.platform})
            self._ready.set()

        @self._client.event
        async def on_message(message):
            await self._handle_message(message)

        self._task = asyncio.ensure_future(self._client.start(self.token))
        ready = asyncio.ensure_future(self._ready.wait())
        done, _ = await asyncio.wait({self._task, ready}, timeout=self.ready_timeout_s, return_when=asyncio.FIRST_COMPLETED)

        if ready in done:
            return True

        ready.cancel()
        if self._task in done and self._task.exception() is not None:
            logger.error("discord client failed: %s", self._task.exception(), extra={"platform": self.platform})
        else:
            logger.error("discord connection timeout", extra={"platform": self.platform})
        await self.disconnect()
        return False

    def _build_event(self, message: Any) -> Optional[ChatEvent]:
        text = (message.content or "").strip()
        if not text:
            return None

        author = message.author
        webhook = bool(getattr(message, "webhook_id", None))
        created = getattr(message, "created_at", None)
        channel = message.channel
        return ChatEvent(
            conversation_id=str(channel.id),
            author_id=str(author.id),
            author_name=getattr(author, "display_name", None) or author.name or str(author.id),
            text=text,
            is_automated=bool(getattr(author, "bot", False)) or webhook,
            is_webhook=webhook,
            created_at=created.timestamp() if created is not None else 0.0,
            message_id=str(message.id),
            conversation_title=getattr(channel, "name", None) or str(channel.id),
        )

    def _to_event(self, message: Any) -> Optional[ChatEvent]:
        me = self._client.user if self._client else None
        if me is not None and getattr(message.author, "id", None) == me.id:
            return None

        event = self._build_event(message)
        if event is None or (event.is_automated and self.ignore_bots):
            return None
        return event

    async def _handle_message(self, message: Any) -> None:
        """Handle incoming Discord message."""
        event = self._to_event(message)
        if event is None or self._on_event is None:
            return
        logger.debug(
            "inbound from %s (automated=%s)",
            event.author_name,
            event.is_automated,
            extra={"platform": self.platform, "conversation_id": event.conversation_id},
        )
        try:
            await self._on_event(event)
        except Exception:
            logger.exception("event handler failed", extra={"conversation_id": event.conversation_id})

    async def disconnect(self) -> None:
        """Disconnect from Discord."""
        if self._client is not None and not self._client.is_closed():
            await self._client.close()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._ready.clear()
        logger.info("disconnected", extra={"platform": self.platform})

    async def _channel(self, chat_id: str) -> Any:
        import discord

        cid = _as_id(chat_id)
        if cid is None or self._client is None:
            return None
        channel = self._client.get_channel(cid)
        if channel is None:
            try:
                channel = await self._client.fetch_channel(cid)
            except discord.DiscordException as e:
                logger.warning("channel %s not found: %s", chat_id, e, extra={"platform": self.platform})
                return None
        return channel

    async def send_text(self, chat_id: str, text: str) -> bool:
        import discord

        channel = await self._channel(chat_id)
        if channel is None:
            return False
        try:
            await channel.send(text)
            return True
        except discord.DiscordException as e:
            logger.error("send to %s failed: %s", chat_id, e, extra={"platform": self.platform})
            return False

    async def _react(self, chat_id: str, message_id: str, emoji: str, *, remove: bool) -> bool:
        import discord

        mid = _as_id(message_id)
        channel = await self._channel(chat_id)
        if channel is None or mid is None:
            return False
        msg = channel.get_partial_message(mid)
        try:
            if remove:
                await msg.remove_reaction(emoji, self._client.user)
            else:
                await msg.add_reaction(emoji)
            return True
        except discord.DiscordException as e:
            logger.warning("reaction %s on %s failed: %s", emoji, message_id, e, extra={"platform": self.platform})
            return False

    async def add_reaction(self, chat_id: str, message_id: str, emoji: str) -> bool:
        return await self._react(chat_id, message_id, emoji, remove=False)

    async def remove_reaction(self, chat_id: str, message_id: str, emoji: str) -> bool:
        return await self._react(chat_id, message_id, emoji, remove=True)

    async def resolve_channel(self, guild_id: str, name: str) -> Optional[str]:
        gid = _as_id(guild_id)
        if gid is None or self._client is None:
            return None
        guild = self._client.get_guild(gid)
        if guild is None:
            logger.error("guild %s not visible to the bot", guild_id, extra={"platform": self.platform})
            return None
        wanted = (name or "").strip().lstrip("#").lower()
        for channel in guild.text_channels:
            if channel.name.lower() == wanted:
                return str(channel.id)
        return None

    async def fetch_messages(self, chat_id: str, *, after: Optional[str] = None, limit: int = 100) -> List[ChatEvent]:
        import discord

        channel = await self._channel(chat_id)
        if channel is None or not hasattr(channel, "history"):
            return []
        after_id = _as_id(after) if after else None
        marker = discord.Object(id=after_id) if after_id is not None else None
        try:
            messages = [m async for m in channel.history(limit=limit, after=marker)]
        except discord.DiscordException as e:
            logger.warning("history of %s failed: %s", chat_id, e, extra={"platform": self.platform})
            return []

        events: List[ChatEvent] = []
        for m in messages:
            ev = self._build_event(m)
            if ev is not None:
                events.append(ev)
        return events
