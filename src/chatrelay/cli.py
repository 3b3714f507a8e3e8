from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict

from . import __version__
from .kernel.mailbox import FileMailbox, MailboxWriter
from .kernel.settings import load_settings
from .runners.capture import OutputCapture
from .runners.tmux import SessionChannel, list_sessions, tmux_available
from .util.obslog import setup_root_json_logging


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """CLI options that were actually given; None means "not on the command line"."""
    keys = (
        "channel_name",
        "session_name",
        "log_level",
        "worker_command",
        "skip_permissions",
        "resume",
        "continue_session",
        "ultrathink",
        "orchestrator",
        "auto_commit",
        "auto_push",
        "keep_session",
        "progress_update",
        "progress_interval",
        "monitor_channel",
        "monitor_interval",
        "capture_fallback",
        "reply_timeout",
        "mailbox_dir",
        "ignore_bots",
    )
    return {k: getattr(args, k) for k in keys if getattr(args, k, None) is not None}


def cmd_start(args: argparse.Namespace) -> int:
    from .ports.im.bridge import start_relay

    working_dir = Path(args.path).expanduser().resolve()
    settings = load_settings(_overrides(args), working_dir=working_dir)
    setup_root_json_logging(component="chatrelay", level=settings.log_level)

    missing = settings.validate()
    if missing:
        _print_json({"ok": False, "error": {"code": "missing_settings", "message": ", ".join(missing)}})
        return 2
    return start_relay(settings)


def cmd_respond(args: argparse.Namespace) -> int:
    settings = load_settings(_overrides(args))
    writer = MailboxWriter(settings.mailbox_dir, settings.session_name)
    try:
        paths = writer.write(args.message, type=args.type)
    except ValueError as e:
        _print_json({"ok": False, "error": {"code": "invalid_reply", "message": str(e)}})
        return 2
    except OSError as e:
        _print_json({"ok": False, "error": {"code": "write_failed", "message": str(e)}})
        return 1
    _print_json({"ok": True, "result": {"chunks": len(paths), "files": [str(p) for p in paths]}})
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    settings = load_settings(_overrides(args))
    channel = SessionChannel(settings.session_name)
    st = asyncio.run(channel.status())
    pending = FileMailbox(settings.mailbox_dir, settings.session_name).fetch()
    _print_json(
        {
            "ok": True,
            "result": {
                "session": settings.session_name,
                "tmux_available": tmux_available(),
                "session_exists": st.exists,
                "sessions": list_sessions(),
                "pending_replies": len(pending),
                "settings": settings.to_dict(),
            },
        }
    )
    return 0


def cmd_kill(args: argparse.Namespace) -> int:
    settings = load_settings(_overrides(args))
    ok = asyncio.run(SessionChannel(settings.session_name).kill())
    _print_json({"ok": ok, "result": {"session": settings.session_name}})
    return 0 if ok else 1


def cmd_output(args: argparse.Namespace) -> int:
    settings = load_settings(_overrides(args))
    reply = asyncio.run(OutputCapture(SessionChannel(settings.session_name)).latest_reply())
    if reply is None:
        print(f"could not capture session {settings.session_name}", file=sys.stderr)
        return 1
    print(reply)
    return 0


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def _add_session_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument("--session", dest="session_name", default=None, help="tmux session name (default: claude-main)")
    p.add_argument("--mailbox-dir", dest="mailbox_dir", default=None, help="Reply mailbox directory (default: temp dir)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="chatrelay", description="Relay a chat channel to a tmux-hosted worker session")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_start = sub.add_parser("start", help="Run the relay in the foreground")
    p_start.add_argument("path", nargs="?", default=".", help="Working directory for the worker (default: .)")
    p_start.add_argument("--channel", dest="channel_name", default=None, help="Chat channel name (default: claude)")
    _add_session_arg(p_start)
    p_start.add_argument("--log-level", dest="log_level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    p_start.add_argument("--worker", dest="worker_command", default=None, help="Worker command (default: claude)")
    p_start.add_argument(
        "--dangerously-skip-permissions",
        dest="skip_permissions",
        action="store_true",
        default=None,
        help="Pass the skip-permissions flag to the worker",
    )
    p_start.add_argument("-r", "--resume", dest="resume", action="store_true", default=None, help="Resume the last worker conversation")
    p_start.add_argument(
        "-c", "--continue", dest="continue_session", action="store_true", default=None, help="Continue the last worker conversation"
    )
    p_start.add_argument("--ultrathink", action="store_true", default=None, help="Append the ultrathink keyword to prompts")
    p_start.add_argument(
        "-o", "--orch", dest="orchestrator", action="store_true", default=None, help="Prefix prompts with /project:orchestrator"
    )
    p_start.add_argument("--auto-commit", dest="auto_commit", action="store_true", default=None, help="Ask the worker to commit when a task is done")
    p_start.add_argument("--auto-push", dest="auto_push", action="store_true", default=None, help="Ask the worker to push when a task is done")
    p_start.add_argument("--keep-session", dest="keep_session", action="store_true", default=None, help="Leave the tmux session running on exit")
    p_start.add_argument("--progress-update", dest="progress_update", action="store_true", default=None, help="Post periodic status reports")
    p_start.add_argument("--progress-interval", dest="progress_interval", default=None, help="Status report interval (e.g. 30s, 2m; default: 1m)")
    p_start.add_argument(
        "--monitor-channel", dest="monitor_channel", default=None, help="Also forward new messages from this channel (name or id)"
    )
    p_start.add_argument("--monitor-interval", dest="monitor_interval", default=None, help="Monitor check interval (default: 1h)")
    p_start.add_argument("--reply-timeout", dest="reply_timeout", type=float, default=None, help="Seconds to wait for a reply (default: 30)")
    p_start.add_argument(
        "--capture-fallback",
        dest="capture_fallback",
        action="store_true",
        default=None,
        help="Scrape the terminal when no reply arrives in time",
    )
    p_start.add_argument("--ignore-bots", dest="ignore_bots", action="store_true", default=None, help="Ignore bot and webhook messages")
    p_start.set_defaults(func=cmd_start)

    p_respond = sub.add_parser("respond", help="Queue a reply for the relay (run by the worker)")
    p_respond.add_argument("message", help="Reply text; literal \\n, \\t are expanded")
    _add_session_arg(p_respond)
    p_respond.add_argument("--type", choices=["claude-response", "text", "error"], default="claude-response", help="Envelope type")
    p_respond.set_defaults(func=cmd_respond)

    p_status = sub.add_parser("status", help="Show session and mailbox status")
    _add_session_arg(p_status)
    p_status.set_defaults(func=cmd_status)

    p_kill = sub.add_parser("kill", help="Kill the worker tmux session")
    _add_session_arg(p_kill)
    p_kill.set_defaults(func=cmd_kill)

    p_output = sub.add_parser("output", help="Print the worker's latest terminal reply")
    _add_session_arg(p_output)
    p_output.set_defaults(func=cmd_output)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
