"""Per-conversation message coalescing.

Each conversation buffer moves through:

    IDLE -> PENDING_SHORT -> (burst) PENDING_LONG -> FLUSHING -> IDLE
    IDLE/PENDING_* -> FLUSHING            when the buffer reaches max_size

Every enqueue cancels and re-arms the buffer's single timer (debounce). A
message arriving within `burst_window` of the previous one switches the
buffer to the long timeout until the next flush.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

logger = logging.getLogger("chatrelay.aggregator")

# Inclusive bound: a gap of exactly BURST_WINDOW_S is still a burst.
BURST_WINDOW_S = 30.0
SHORT_TIMEOUT_S = 10.0
LONG_TIMEOUT_S = 120.0
MAX_SIZE = 100


def within_burst_window(elapsed: float, window: float) -> bool:
    """True when `elapsed` (seconds since the previous message) is a burst gap."""
    return elapsed <= window


class BufferState(str, Enum):
    IDLE = "idle"
    PENDING_SHORT = "pending_short"
    PENDING_LONG = "pending_long"
    FLUSHING = "flushing"


class Cancellable(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], Cancellable]


@dataclass(frozen=True)
class QueuedMessage:
    author: str
    text: str
    arrived_at: float
    message_id: str = ""


@dataclass
class ConversationBuffer:
    conversation_id: str
    messages: List[QueuedMessage] = field(default_factory=list)
    burst: bool = False
    last_arrival: Optional[float] = None
    timer: Optional[Cancellable] = None
    deadline: Optional[float] = None
    state: BufferState = BufferState.IDLE
    flush_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


FlushSink = Callable[[str, List[QueuedMessage], str], Awaitable[Any]]
AckSink = Callable[[str, QueuedMessage], Awaitable[Any]]


def compose_prompt(messages: List[QueuedMessage]) -> str:
    """Number messages in arrival order and tag each with its author."""
    ordered = sorted(messages, key=lambda m: m.arrived_at)
    parts = []
    for i, m in enumerate(ordered, 1):
        who = (m.author or "user").strip() or "user"
        parts.append(f"[{i}] {who}: {m.text.strip()}")
    return "\n\n".join(parts)


class MessageAggregator:
    def __init__(
        self,
        on_flush: FlushSink,
        *,
        on_ack: Optional[AckSink] = None,
        clock: Callable[[], float] = time.time,
        scheduler: Optional[Scheduler] = None,
        burst_window_s: float = BURST_WINDOW_S,
        short_timeout_s: float = SHORT_TIMEOUT_S,
        long_timeout_s: float = LONG_TIMEOUT_S,
        max_size: int = MAX_SIZE,
    ) -> None:
        self._on_flush = on_flush
        self._on_ack = on_ack
        self._clock = clock
        self._scheduler = scheduler

        self.burst_window_s = float(burst_window_s)
        self.short_timeout_s = float(short_timeout_s)
        self.long_timeout_s = float(long_timeout_s)
        self.max_size = max(1, int(max_size))

        self._buffers: Dict[str, ConversationBuffer] = {}
        self._inflight: Set[asyncio.Future] = set()
        self._closed = False
        self.flush_count = 0

    def now(self) -> float:
        return self._clock()

    def buffer(self, conversation_id: str) -> ConversationBuffer:
        buf = self._buffers.get(conversation_id)
        if buf is None:
            buf = ConversationBuffer(conversation_id=conversation_id)
            self._buffers[conversation_id] = buf
        return buf

    def pending_counts(self) -> Dict[str, int]:
        return {cid: len(b.messages) for cid, b in self._buffers.items() if b.messages}

    def _schedule(self, delay: float, callback: Callable[[], None]) -> Cancellable:
        if self._scheduler is not None:
            return self._scheduler(delay, callback)
        return asyncio.get_running_loop().call_later(delay, callback)

    async def enqueue(self, conversation_id: str, message: QueuedMessage) -> None:
        buf = self.buffer(conversation_id)
        was_empty = not buf.messages

        if not was_empty and buf.last_arrival is not None:
            elapsed = message.arrived_at - buf.last_arrival
            if within_burst_window(elapsed, self.burst_window_s) and not buf.burst:
                buf.burst = True
                logger.info("burst detected (%.1fs apart)", elapsed, extra={"conversation_id": conversation_id})

        buf.messages.append(message)
        buf.last_arrival = message.arrived_at
        size = len(buf.messages)
        full = size >= self.max_size or self._closed

        if not full:
            self._rearm(buf)
        logger.debug("queued message (%d pending)", size, extra={"conversation_id": conversation_id})

        if was_empty:
            await self._ack(conversation_id, message)

        if full:
            logger.info("buffer full (%d), flushing now", size, extra={"conversation_id": conversation_id})
            await self.flush(conversation_id)

    def _rearm(self, buf: ConversationBuffer) -> None:
        if buf.timer is not None:
            buf.timer.cancel()
        delay = self.long_timeout_s if buf.burst else self.short_timeout_s
        cid = buf.conversation_id
        buf.timer = self._schedule(delay, lambda: self._on_deadline(cid))
        buf.deadline = (buf.last_arrival if buf.last_arrival is not None else self.now()) + delay
        buf.state = BufferState.PENDING_LONG if buf.burst else BufferState.PENDING_SHORT

    def _on_deadline(self, conversation_id: str) -> None:
        buf = self._buffers.get(conversation_id)
        if buf is not None:
            buf.timer = None
        fut = asyncio.ensure_future(self.flush(conversation_id))
        self._inflight.add(fut)
        fut.add_done_callback(self._inflight.discard)

    async def _ack(self, conversation_id: str, message: QueuedMessage) -> None:
        if self._on_ack is None:
            return
        try:
            await self._on_ack(conversation_id, message)
        except Exception:
            logger.exception("ack failed", extra={"conversation_id": conversation_id})

    async def flush(self, conversation_id: str) -> bool:
        """Hand everything buffered to the flush sink. False if nothing was pending."""
        buf = self._buffers.get(conversation_id)
        if buf is None or not buf.messages:
            return False

        # Swap before any await so messages arriving meanwhile start a new batch.
        messages, buf.messages = buf.messages, []
        if buf.timer is not None:
            buf.timer.cancel()
            buf.timer = None
        buf.deadline = None
        buf.burst = False
        buf.state = BufferState.FLUSHING
        self.flush_count += 1

        prompt = compose_prompt(messages)
        logger.info("flushing %d message(s)", len(messages), extra={"conversation_id": conversation_id})

        try:
            # FIFO lock: one flush at a time per conversation, in swap order.
            async with buf.flush_lock:
                await self._on_flush(conversation_id, messages, prompt)
        except Exception:
            logger.exception("flush sink failed", extra={"conversation_id": conversation_id})
        finally:
            if buf.state == BufferState.FLUSHING and not buf.messages:
                buf.state = BufferState.IDLE
        return True

    async def wait_idle(self) -> None:
        """Wait for timer-triggered flushes that are already running."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def shutdown(self) -> None:
        """Force-flush every non-empty buffer; later enqueues flush immediately."""
        self._closed = True
        for cid, buf in list(self._buffers.items()):
            if buf.messages:
                logger.info("flushing %d message(s) before shutdown", len(buf.messages), extra={"conversation_id": cid})
                await self.flush(cid)
        await self.wait_idle()
