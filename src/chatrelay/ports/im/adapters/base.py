"""
Base class for chat platform adapters.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional

from ....contracts.v1 import ChatEvent

EventHandler = Callable[[ChatEvent], Awaitable[None]]


def split_message(text: str, max_chars: int) -> List[str]:
    """
    Split text for a platform message limit.

    Breaks on line boundaries; only a single line longer than the limit is
    hard-cut.
    """
    if not text:
        return []
    if len(text) <= max_chars:
        return [text]

    chunks: List[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > max_chars:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:max_chars])
            line = line[max_chars:]
        if current and len(current) + 1 + len(line) > max_chars:
            chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return [c for c in chunks if c.strip()]


class IMAdapter(ABC):
    """
    Abstract base class for chat platform adapters.

    Each adapter handles:
    - Connecting to the platform and pushing inbound events to a handler
    - Sending messages (outbound), split to the platform limit
    - Message reactions used as lightweight status markers
    """

    platform: str = "unknown"
    max_message_length: int = 2000

    @abstractmethod
    async def connect(self, on_event: EventHandler) -> bool:
        """
        Connect and start delivering inbound events to `on_event`.
        Returns True if successful.
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the platform."""
        pass

    @abstractmethod
    async def send_text(self, chat_id: str, text: str) -> bool:
        """Send one message that already fits the platform limit."""
        pass

    async def send_message(self, chat_id: str, text: str) -> bool:
        """
        Send a message to a chat, split into several when too long.
        Returns True if every part was sent.
        """
        parts = split_message(text, self.max_message_length)
        if not parts:
            return True
        for part in parts:
            if not await self.send_text(chat_id, part):
                return False
        return True

    async def add_reaction(self, chat_id: str, message_id: str, emoji: str) -> bool:
        return False

    async def remove_reaction(self, chat_id: str, message_id: str, emoji: str) -> bool:
        return False

    @abstractmethod
    async def resolve_channel(self, guild_id: str, name: str) -> Optional[str]:
        """Find a text channel id by name; None when absent."""
        pass

    async def fetch_messages(self, chat_id: str, *, after: Optional[str] = None, limit: int = 100) -> List[ChatEvent]:
        """Recent messages of a channel (newer than message `after` when given).

        Adapters without history access return nothing.
        """
        return []

    def summarize(self, text: str, max_chars: int = 900, max_lines: int = 8) -> str:
        """
        Summarize text for a short chat display.

        - Normalize newlines
        - Collapse multiple blank lines
        - Limit lines and characters
        """
        if not text:
            return ""

        t = text.replace("\r\n", "\n").replace("\r", "\n").replace("\t", "  ")
        lines = [ln.rstrip() for ln in t.split("\n")]

        while lines and not lines[0].strip():
            lines.pop(0)
        while lines and not lines[-1].strip():
            lines.pop()

        kept = []
        empty_count = 0
        for ln in lines:
            if not ln.strip():
                empty_count += 1
                if empty_count <= 1:
                    kept.append("")
            else:
                empty_count = 0
                kept.append(ln)

        out = "\n".join(kept[:max_lines]).strip()
        if len(out) > max_chars:
            out = out[: max(0, max_chars - 1)] + "…"
        return out
