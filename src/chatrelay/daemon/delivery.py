"""
Worker delivery for flushed prompts.

Flow for one flush:
- ensure the tmux session exists (create it on demand)
- wrap the combined prompt with the reply instruction and inject it
- wait up to `reply_timeout` for the mailbox bridge to forward something

A missing reply is not an error: the worker may still be busy, or may have
answered in its own terminal only.
"""

from __future__ import annotations

import logging
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..kernel.mailbox import ResponseBridge
from ..kernel.settings import RelaySettings
from ..runners.capture import OutputCapture
from ..runners.tmux import LaunchFlags, SessionChannel

logger = logging.getLogger("chatrelay.delivery")

ULTRATHINK_KEYWORD = "ultrathink"
ORCHESTRATOR_PREFIX = "/project:orchestrator"
AUTO_COMMIT_COMMAND = 'git add . && git commit -m "task: auto commit on task completion"'
AUTO_PUSH_COMMAND = "git push"


def reply_command(session_name: str, mailbox_dir: Optional[Path] = None) -> str:
    """The shell command the worker runs to hand a reply back to the relay."""
    cmd = f'chatrelay respond "<your reply>" --session {shlex.quote(session_name)}'
    if mailbox_dir is not None:
        # The worker's shell does not inherit the relay's environment.
        cmd += f" --mailbox-dir {shlex.quote(str(Path(mailbox_dir).expanduser().absolute()))}"
    return cmd


def render_worker_prompt(
    prompt: str,
    *,
    session_name: str,
    mailbox_dir: Optional[Path] = None,
    ultrathink: bool = False,
    orchestrator: bool = False,
    auto_commit: bool = False,
    auto_push: bool = False,
) -> str:
    """Wrap a combined prompt for the worker.

    Order: orchestrator prefix, prompt, thinking keyword, git follow-up,
    reply instruction.
    """
    parts: List[str] = []
    if orchestrator:
        parts.append(ORCHESTRATOR_PREFIX)
    parts.append((prompt or "").strip())
    if ultrathink:
        parts.append(ULTRATHINK_KEYWORD)

    actions = []
    if auto_commit:
        actions.append(AUTO_COMMIT_COMMAND)
    if auto_push:
        actions.append(AUTO_PUSH_COMMAND)
    if actions:
        parts.append("Note: when the task is complete, run:\n" + " && ".join(actions))

    parts.append(
        "IMPORTANT: when you are done, send your reply back to the chat with:\n"
        + reply_command(session_name, mailbox_dir)
    )
    return "\n\n".join(parts)


def render_for_settings(prompt: str, settings: RelaySettings, *, session_name: str) -> str:
    return render_worker_prompt(
        prompt,
        session_name=session_name,
        mailbox_dir=settings.mailbox_dir,
        ultrathink=settings.ultrathink,
        orchestrator=settings.orchestrator,
        auto_commit=settings.auto_commit,
        auto_push=settings.auto_push,
    )


def launch_flags(settings: RelaySettings) -> LaunchFlags:
    return LaunchFlags(
        skip_permissions=settings.skip_permissions,
        resume=settings.resume,
        continue_session=settings.continue_session,
    )


@dataclass
class DeliveryResult:
    ok: bool
    replied: bool = False
    error: str = ""
    captured: str = ""
    elapsed_s: float = 0.0


class WorkerDelivery:
    def __init__(
        self,
        channel: SessionChannel,
        bridge: ResponseBridge,
        settings: RelaySettings,
        *,
        capture: Optional[OutputCapture] = None,
    ) -> None:
        self.channel = channel
        self.bridge = bridge
        self.settings = settings
        self.capture = capture

    async def ensure_ready(self) -> bool:
        return await self.channel.ensure_session(
            self.settings.working_dir,
            launch_flags(self.settings),
            worker_command=self.settings.worker_command,
        )

    async def deliver(self, prompt: str, *, wait_reply: bool = True) -> DeliveryResult:
        started = time.monotonic()
        session = self.channel.session_name

        if not await self.ensure_ready():
            err = self.channel.last_error or "could not create worker session"
            return DeliveryResult(ok=False, error=f"session unavailable: {err}")

        text = render_for_settings(prompt, self.settings, session_name=session)
        baseline = self.bridge.delivered_count
        if not await self.channel.send(text):
            err = self.channel.last_error or "send failed"
            return DeliveryResult(ok=False, error=f"delivery failed: {err}", elapsed_s=time.monotonic() - started)

        logger.info("prompt delivered (%d chars)", len(text), extra={"session": session, "op": "deliver"})
        if not wait_reply:
            return DeliveryResult(ok=True, elapsed_s=time.monotonic() - started)

        replied = await self.bridge.wait_for_delivery(baseline, self.settings.reply_timeout)
        if replied:
            return DeliveryResult(ok=True, replied=True, elapsed_s=time.monotonic() - started)

        logger.info(
            "no reply within %.0fs; worker may still be busy",
            self.settings.reply_timeout,
            extra={"session": session, "op": "deliver"},
        )
        captured = ""
        if self.settings.capture_fallback and self.capture is not None:
            captured = await self.capture.latest_reply() or ""
        return DeliveryResult(ok=True, captured=captured, elapsed_s=time.monotonic() - started)
