"""
Chat command parser for the relay.

Recognised commands (handled by the relay, never forwarded):
- /restart
- /status
- /attach
- /output
- /help

Any other text, including unknown slash commands such as the worker's own
`/compact`, is a regular message for the worker.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional


class CommandType(str, Enum):
    # Session control
    RESTART = "restart"

    # Status
    STATUS = "status"
    ATTACH = "attach"
    OUTPUT = "output"

    # Help
    HELP = "help"

    # Not a command - regular message
    MESSAGE = "message"


@dataclass
class ParsedCommand:
    """Result of parsing a chat message."""

    type: CommandType
    text: str  # Original text, or command arguments
    args: List[str]


_COMMAND_RE = re.compile(r"^(?:<@!?\d+>\s+)?/(\w+)(?:\s+(.*))?$", re.IGNORECASE | re.DOTALL)

COMMAND_DESCRIPTIONS: Dict[CommandType, str] = {
    CommandType.RESTART: "restart the worker tmux session",
    CommandType.STATUS: "show bot and session status",
    CommandType.ATTACH: "show the tmux attach command",
    CommandType.OUTPUT: "show the worker's latest terminal reply",
    CommandType.HELP: "show this help",
}


def parse_message(text: str) -> ParsedCommand:
    """
    Parse a chat message into a command or regular message.

    Commands start with / (optionally after a bot mention) and are
    case-insensitive.

    Examples:
        "/status" -> CommandType.STATUS
        "/STATUS now" -> CommandType.STATUS with args=["now"]
        "/compact" -> CommandType.MESSAGE (forwarded to the worker)
        "hello world" -> CommandType.MESSAGE
    """
    text = (text or "").strip()
    if not text:
        return ParsedCommand(type=CommandType.MESSAGE, text="", args=[])

    m = _COMMAND_RE.match(text)
    if m:
        cmd_type = _map_command(m.group(1).lower())
        if cmd_type != CommandType.MESSAGE:
            args_str = (m.group(2) or "").strip()
            return ParsedCommand(type=cmd_type, text=args_str, args=args_str.split() if args_str else [])

    return ParsedCommand(type=CommandType.MESSAGE, text=text, args=[])


def _map_command(cmd_name: str) -> CommandType:
    """Map command name to CommandType."""
    mapping = {
        "restart": CommandType.RESTART,
        "status": CommandType.STATUS,
        "attach": CommandType.ATTACH,
        "output": CommandType.OUTPUT,
        "help": CommandType.HELP,
    }
    return mapping.get(cmd_name, CommandType.MESSAGE)


def format_duration(seconds: float) -> str:
    s = int(max(0.0, seconds))
    hours, rem = divmod(s, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_help(session_name: str) -> str:
    """Generate help text for chat commands."""
    lines = [
        "🤖 Chat relay",
        "",
        "💬 Messages:",
        "  Post in this channel; messages are batched and sent to the worker.",
        "  Other /commands are passed through to the worker unchanged.",
        "",
        "🎮 Commands:",
    ]
    for cmd, desc in COMMAND_DESCRIPTIONS.items():
        lines.append(f"  /{cmd.value} - {desc}")
    lines.append("")
    lines.append(f"🔗 tmux attach -t {session_name}")
    return "\n".join(lines)


def format_attach(session_name: str) -> str:
    return "\n".join(
        [
            "🔧 Attach to the worker session:",
            "```bash",
            f"tmux attach -t {session_name}",
            "```",
            "Detach: `Ctrl+B` then `D`",
        ]
    )


def format_status(
    *,
    working_dir: str,
    session_name: str,
    session_exists: bool,
    idle_minutes: Optional[int],
    uptime_s: float,
    messages_processed: int,
    commands_executed: int,
    pending: Dict[str, int],
) -> str:
    """Format status response."""
    lines = ["📊 Relay status", ""]
    lines.append(f"📁 Path: {working_dir}")
    lines.append(f"🔄 Session {session_name}: {'✓ running' if session_exists else '✗ stopped'}")
    if session_exists and idle_minutes is not None:
        lines.append(f"⏰ Last activity: {idle_minutes}m ago")
    lines.append("")
    lines.append(f"🤖 Uptime: {format_duration(uptime_s)}")
    lines.append(f"📨 Messages processed: {messages_processed}")
    lines.append(f"⚡ Commands executed: {commands_executed}")

    total = sum(pending.values())
    if total:
        lines.append(f"⏳ Buffered: {total} message(s) in {len(pending)} conversation(s)")
    return "\n".join(lines)
