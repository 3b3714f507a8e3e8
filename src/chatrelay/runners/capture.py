"""Extract the worker's latest reply from a pane snapshot.

Heuristic: the reply is whatever sits between the last two prompt lines, with
UI chrome removed. Any change to the worker's UI can silently break it.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence

from .tmux import SessionChannel

logger = logging.getLogger("chatrelay.capture")

PROMPT_GLYPHS = ("❯", ">", "$")

_SPINNER_CHARS = "✻✽✶✳✢✺·⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
_NOISE_SUBSTRINGS = (
    "↓",
    "tokens",
    "esc to interrupt",
    "───────",
    "╭─",
    "╰─",
    "│",
)
_SPINNER_LINE = re.compile(rf"^\s*[{_SPINNER_CHARS}]\s+\S")


def is_prompt_line(line: str) -> bool:
    return bool(line) and any(g in line for g in PROMPT_GLYPHS)


def is_noise_line(line: str) -> bool:
    if not line.strip():
        return True
    if line.startswith("["):
        # bracketed timestamps from diagnostics
        return True
    if _SPINNER_LINE.match(line):
        return True
    return any(s in line for s in _NOISE_SUBSTRINGS)


def prompt_indices(lines: Sequence[str]) -> List[int]:
    return [i for i, ln in enumerate(lines) if is_prompt_line(ln)]


def extract_reply(snapshot: str) -> str:
    """Return the latest reply in `snapshot`, or "" when no prompt is found."""
    lines = (snapshot or "").split("\n")
    marks = prompt_indices(lines)

    if len(marks) >= 2:
        body = lines[marks[-2] + 1 : marks[-1]]
    elif len(marks) == 1:
        body = lines[marks[0] + 1 :]
    else:
        return ""

    return "\n".join(ln for ln in body if not is_noise_line(ln)).strip()


class OutputCapture:
    """`snapshot -> reply text`; swap this out for a structured ack later."""

    def __init__(self, channel: SessionChannel) -> None:
        self.channel = channel

    async def latest_reply(self) -> Optional[str]:
        """None when no snapshot could be taken; "" when nothing was found."""
        snap = await self.channel.snapshot()
        if snap is None:
            return None
        reply = extract_reply(snap)
        logger.debug("captured %d chars from %d-char snapshot", len(reply), len(snap))
        return reply
