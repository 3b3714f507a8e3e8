"""
Channel monitor.

Periodically reads extra chat channels and types their new messages straight
into the worker session. Monitored messages skip the aggregator and the reply
instruction.

Cursor semantics:
- per channel, the id of the newest message fetched so far
- first check: no history replay, only messages created after the monitor
  started are forwarded
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from ...contracts.v1 import ChatEvent
from .adapters.base import IMAdapter

logger = logging.getLogger("chatrelay.monitor")

DEFAULT_MONITOR_INTERVAL_S = 3600.0
FETCH_LIMIT = 100

ForwardSink = Callable[[str], Awaitable[bool]]


def format_monitored(event: ChatEvent, *, platform: str = "discord") -> str:
    """`[HH:MM][Platform][#channel][author]: text` in local time."""
    stamp = datetime.fromtimestamp(event.created_at).strftime("%H:%M")
    title = event.conversation_title or f"channel-{event.conversation_id}"
    return f"[{stamp}][{platform.capitalize()}][#{title}][{event.author_name}]: {event.text}"


def should_forward(event: ChatEvent) -> bool:
    # Bot accounts are skipped; webhook posts are kept.
    return event.is_webhook or not event.is_automated


class ChannelMonitor:
    def __init__(
        self,
        adapter: IMAdapter,
        forward: ForwardSink,
        channel_ids: Iterable[str],
        *,
        interval_s: float = DEFAULT_MONITOR_INTERVAL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.adapter = adapter
        self.forward = forward
        self.channel_ids: List[str] = [str(c) for c in channel_ids if str(c).strip()]
        self.interval_s = max(1.0, float(interval_s))
        self.started_at = clock()

        self._cursors: Dict[str, str] = {}
        self._task: Optional[asyncio.Task] = None

    def cursor(self, channel_id: str) -> Optional[str]:
        return self._cursors.get(channel_id)

    async def check_once(self) -> int:
        """Check every channel once. Returns how many messages were forwarded."""
        forwarded = 0
        for cid in self.channel_ids:
            try:
                forwarded += await self._check_channel(cid)
            except Exception:
                logger.exception("monitor check failed", extra={"conversation_id": cid})
        logger.info(
            "monitoring %d channel(s), forwarded %d; next check in %.0fs",
            len(self.channel_ids),
            forwarded,
            self.interval_s,
        )
        return forwarded

    async def _check_channel(self, cid: str) -> int:
        after = self._cursors.get(cid)
        events = await self.adapter.fetch_messages(cid, after=after, limit=FETCH_LIMIT)
        if not events:
            logger.debug("no new messages", extra={"conversation_id": cid})
            return 0

        events = sorted(events, key=lambda e: e.created_at)
        fresh = events if after is not None else [e for e in events if e.created_at > self.started_at]

        forwarded = 0
        for ev in fresh:
            if not should_forward(ev):
                continue
            if await self.forward(format_monitored(ev, platform=self.adapter.platform)):
                forwarded += 1
            else:
                logger.error("failed to forward monitored message %s", ev.message_id, extra={"conversation_id": cid})

        self._cursors[cid] = events[-1].message_id
        return forwarded

    def start(self) -> None:
        if not self.channel_ids:
            logger.info("no channels to monitor")
            return
        if self._task is not None and not self._task.done():
            return
        logger.info("monitoring %s every %.0fs", ", ".join(self.channel_ids), self.interval_s)
        self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await self.check_once()
            await asyncio.sleep(self.interval_s)
