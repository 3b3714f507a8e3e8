"""
Filesystem mailbox for worker replies.

Layout (one directory shared with the worker side):
- <dir>/chatrelay-pending-<session>-<i>.json  (i = 1..MAX_CHUNK_FILES)
- <dir>/chatrelay-pending-<session>.json      (legacy, read only)

Delivery is at-least-once: a file is deleted only after the sink accepted
it. There is no locking between writer and reader; a file that does not
parse yet is left in place and retried on the next tick.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from pydantic import ValidationError

from ..contracts.v1 import EnvelopeType, PendingResponseEnvelope
from ..util.fs import atomic_write_json, read_text_or_none, unlink_quietly

logger = logging.getLogger("chatrelay.mailbox")

MAILBOX_PREFIX = "chatrelay-pending"
MAX_CHUNK_FILES = 50
CHUNK_MAX_CHARS = 1900
DEFAULT_POLL_INTERVAL_S = 0.5
TRUNCATION_NOTICE = "… reply truncated: {dropped} more part(s) not sent"

_SESSION_SAFE = re.compile(r"[^A-Za-z0-9_.-]+")


class BridgeParseError(ValueError):
    """A mailbox file exists but does not hold a valid envelope (yet)."""


def mailbox_path(mailbox_dir: Path, session_name: str, index: Optional[int] = None) -> Path:
    name = _SESSION_SAFE.sub("_", session_name.strip()) or "default"
    if index is None:
        return Path(mailbox_dir) / f"{MAILBOX_PREFIX}-{name}.json"
    return Path(mailbox_dir) / f"{MAILBOX_PREFIX}-{name}-{int(index)}.json"


def parse_envelope(raw: str) -> PendingResponseEnvelope:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise BridgeParseError(f"invalid json: {e}") from e
    if not isinstance(data, dict):
        raise BridgeParseError("envelope must be a json object")
    try:
        return PendingResponseEnvelope.model_validate(data)
    except ValidationError as e:
        raise BridgeParseError(f"invalid envelope: {e.error_count()} error(s)") from e


def expand_escapes(text: str) -> str:
    """Turn literal \\n, \\t, \\r typed in a shell argument into real characters."""
    return (text or "").replace("\\n", "\n").replace("\\t", "\t").replace("\\r", "\r")


def split_on_lines(text: str, max_chars: int = CHUNK_MAX_CHARS) -> List[str]:
    """Split on line boundaries; a single over-long line stays whole."""
    if len(text) <= max_chars:
        return [text]

    chunks: List[str] = []
    current = ""
    for line in text.split("\n"):
        if current and len(current) + len(line) + 1 > max_chars:
            if current.strip():
                chunks.append(current.strip())
            current = line
        else:
            current = f"{current}\n{line}" if current else line
    if current.strip():
        chunks.append(current.strip())
    return chunks


def split_for_chat(text: str, max_chars: int = CHUNK_MAX_CHARS, max_parts: int = MAX_CHUNK_FILES) -> List[str]:
    """Line-boundary parts with `[i/n]` prefixes, at most `max_parts` of them.

    Parts beyond `max_parts` are dropped and the last kept part says so; the
    poller never looks past MAX_CHUNK_FILES.
    """
    chunks = split_on_lines(text, max_chars)
    limit = max(1, int(max_parts))
    if len(chunks) > limit:
        dropped = len(chunks) - limit
        chunks = chunks[:limit]
        chunks[-1] = f"{chunks[-1]}\n\n{TRUNCATION_NOTICE.format(dropped=dropped)}"
        logger.warning("reply too long, dropped %d part(s)", dropped, extra={"chunk": limit})
    if len(chunks) <= 1:
        return chunks
    total = len(chunks)
    return [f"📄 **[{i}/{total}]**\n\n{c}" for i, c in enumerate(chunks, 1)]


class MailboxWriter:
    """Worker-side helper: queue a reply for the relay to pick up."""

    def __init__(self, mailbox_dir: Path, session_name: str, *, max_chunks: int = MAX_CHUNK_FILES) -> None:
        self.mailbox_dir = Path(mailbox_dir)
        self.session_name = session_name
        self.max_chunks = int(max_chunks)

    def write(self, content: str, *, type: EnvelopeType = "claude-response") -> List[Path]:
        text = expand_escapes(content)
        if not text.strip():
            raise ValueError("empty reply")

        parts = split_for_chat(text, max_parts=self.max_chunks)
        total = len(parts)
        written: List[Path] = []
        for i, part in enumerate(parts, 1):
            env = PendingResponseEnvelope(content=part, type=type, chunkIndex=i, totalChunks=total)
            path = mailbox_path(self.mailbox_dir, self.session_name, i)
            atomic_write_json(path, env.to_wire())
            written.append(path)
        return written


@dataclass
class ReplyItem:
    index: int
    envelope: PendingResponseEnvelope
    path: Optional[Path] = None


class ReplyChannel(ABC):
    """Async reply source: `fetch` pending items in order, `ack` consumes one."""

    @abstractmethod
    def fetch(self) -> List[ReplyItem]:
        pass

    @abstractmethod
    def ack(self, item: ReplyItem) -> bool:
        pass


class FileMailbox(ReplyChannel):
    def __init__(self, mailbox_dir: Path, session_name: str, *, max_chunks: int = MAX_CHUNK_FILES) -> None:
        self.mailbox_dir = Path(mailbox_dir)
        self.session_name = session_name
        self.max_chunks = int(max_chunks)

    def candidates(self) -> List[Tuple[int, Path]]:
        out = [(0, mailbox_path(self.mailbox_dir, self.session_name))]
        for i in range(1, self.max_chunks + 1):
            out.append((i, mailbox_path(self.mailbox_dir, self.session_name, i)))
        return out

    def fetch(self) -> List[ReplyItem]:
        items: List[ReplyItem] = []
        for index, path in self.candidates():
            if not path.exists():
                continue
            raw = read_text_or_none(path)
            if raw is None:
                continue
            try:
                env = parse_envelope(raw)
            except BridgeParseError as e:
                logger.warning("skipping %s: %s", path.name, e, extra={"chunk": index})
                continue
            items.append(ReplyItem(index=index, envelope=env, path=path))
        items.sort(key=lambda it: it.index)
        return items

    def ack(self, item: ReplyItem) -> bool:
        if item.path is None:
            return True
        return unlink_quietly(item.path)


ReplySink = Callable[[PendingResponseEnvelope], Awaitable[bool]]


class ResponseBridge:
    """Poll a ReplyChannel and forward each item to `sink`, then ack it."""

    def __init__(self, channel: ReplyChannel, sink: ReplySink, *, interval_s: float = DEFAULT_POLL_INTERVAL_S) -> None:
        self.channel = channel
        self.sink = sink
        self.interval_s = float(interval_s)

        self._delivered = 0
        self._event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def delivered_count(self) -> int:
        return self._delivered

    async def poll_once(self) -> int:
        """Forward everything pending. Returns how many items were delivered."""
        items = await asyncio.to_thread(self.channel.fetch)
        delivered = 0
        for item in items:
            try:
                ok = bool(await self.sink(item.envelope))
            except Exception:
                logger.exception("reply sink raised", extra={"chunk": item.index})
                ok = False
            if not ok:
                # keep order: later chunks wait for this one
                logger.warning("reply not forwarded; will retry", extra={"chunk": item.index})
                break

            if not await asyncio.to_thread(self.channel.ack, item):
                logger.warning("forwarded reply could not be removed; may be redelivered", extra={"chunk": item.index})
            delivered += 1
            self._delivered += 1
            self._event.set()

        if delivered:
            logger.info("forwarded %d reply item(s)", delivered)
        return delivered

    async def wait_for_delivery(self, after: int, timeout_s: float) -> bool:
        """Wait until more than `after` items were delivered in total."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout_s)
        while self._delivered <= after:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            self._event.clear()
            try:
                await asyncio.wait_for(self._event.wait(), remaining)
            except asyncio.TimeoutError:
                return self._delivered > after
        return True

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
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
            try:
                await self.poll_once()
            except Exception:
                logger.exception("mailbox poll failed")
            await asyncio.sleep(self.interval_s)
