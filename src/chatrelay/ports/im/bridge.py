"""
Chat relay - core wiring.

Handles:
- Inbound: chat events -> commands, or MessageAggregator -> worker session
- Outbound: mailbox envelopes -> chat (most recently flushed conversation)
- Optional monitoring of extra channels straight into the worker session
- Status reporting and lifecycle (startup checks, graceful shutdown)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

from ...contracts.v1 import ChatEvent, PendingResponseEnvelope
from ...daemon.aggregator import MessageAggregator, QueuedMessage, Scheduler
from ...daemon.delivery import WorkerDelivery, launch_flags
from ...kernel.mailbox import FileMailbox, ResponseBridge
from ...kernel.settings import RelaySettings
from ...paths import ensure_home
from ...runners.capture import OutputCapture
from ...runners.tmux import SessionChannel, tmux_available, worker_available
from .adapters.base import IMAdapter
from .adapters.discord import DiscordAdapter
from .commands import (
    CommandType,
    ParsedCommand,
    format_attach,
    format_help,
    format_status,
    parse_message,
)
from .monitor import ChannelMonitor

logger = logging.getLogger("chatrelay.bridge")

ACK_EMOJI = "⏳"
HANDOFF_EMOJI = "👀"
OUTPUT_MAX_CHARS = 1900
OUTPUT_MAX_LINES = 60


def _acquire_singleton_lock(lock_path: Path) -> Optional[Any]:
    """
    Acquire singleton lock so only one relay drives a session.
    Returns file handle on success, None on failure.
    """
    import fcntl

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    f = open(lock_path, "w")
    try:
        fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
        f.write(str(os.getpid()))
        f.flush()
        return f
    except OSError:
        f.close()
        return None


@dataclass
class RelayStats:
    started_at: float = field(default_factory=time.time)
    messages_processed: int = 0
    commands_executed: int = 0
    prompts_delivered: int = 0
    last_activity: float = field(default_factory=time.time)


class RelayBridge:
    """
    Main relay class.

    Coordinates:
    - Adapter (chat platform)
    - MessageAggregator (per-conversation batching)
    - WorkerDelivery (tmux session + reply wait)
    - ResponseBridge (mailbox poller)
    - ChannelMonitor (optional, extra channels)
    """

    def __init__(
        self,
        settings: RelaySettings,
        adapter: IMAdapter,
        *,
        channel: Optional[SessionChannel] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.settings = settings
        self.adapter = adapter

        self.channel = channel or SessionChannel(settings.session_name)
        self.capture = OutputCapture(self.channel)
        self.mailbox = ResponseBridge(
            FileMailbox(settings.mailbox_dir, settings.session_name),
            self._forward_reply,
            interval_s=settings.poll_interval,
        )
        self.delivery = WorkerDelivery(self.channel, self.mailbox, settings, capture=self.capture)
        self.aggregator = MessageAggregator(self._on_flush, on_ack=self._on_ack, scheduler=scheduler)

        self.stats = RelayStats()
        self.primary_channel_id = ""
        self.reply_target = ""

        self._stopping = False
        self._status_task: Optional[asyncio.Task] = None
        self.monitor: Optional[ChannelMonitor] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> bool:
        """Connect, resolve the primary channel, check the worker, start pollers."""
        if not await self.adapter.connect(self.handle_event):
            logger.error("failed to connect adapter", extra={"platform": self.adapter.platform})
            return False

        cid = await self.adapter.resolve_channel(self.settings.guild_id, self.settings.channel_name)
        if not cid:
            logger.error("channel #%s not found in guild %s", self.settings.channel_name, self.settings.guild_id)
            await self.adapter.disconnect()
            return False
        self.primary_channel_id = cid

        await self._announce(
            f"🚀 Relay started\n📁 {self.settings.working_dir}\n🔗 tmux attach -t {self.settings.session_name}"
        )
        await self._startup_checks()

        self.mailbox.start()
        await self._start_monitor()
        if self.settings.progress_update:
            self._status_task = asyncio.ensure_future(self._status_loop())
        logger.info("relay started", extra={"session": self.settings.session_name, "conversation_id": cid})
        return True

    async def _startup_checks(self) -> None:
        if not await asyncio.to_thread(tmux_available):
            logger.error("tmux is not installed")
            await self._announce("❌ tmux is not installed; messages cannot be delivered.")
            return
        if not await asyncio.to_thread(worker_available, self.settings.worker_command):
            logger.warning("worker command %r did not answer --version", self.settings.worker_command)

        if await self.delivery.ensure_ready():
            await self._announce(f"🔧 Worker session `{self.settings.session_name}` is ready.")
        else:
            await self._announce(f"❌ Could not start worker session: {self.channel.last_error}")

    async def _start_monitor(self) -> None:
        target = self.settings.monitor_channel.strip().lstrip("#")
        if not target:
            return
        cid = target if target.isdigit() else await self.adapter.resolve_channel(self.settings.guild_id, target)
        if not cid:
            logger.warning("monitor channel %s not found", target)
            return
        self.monitor = ChannelMonitor(
            self.adapter,
            self._forward_monitored,
            [cid],
            interval_s=self.settings.monitor_interval,
        )
        self.monitor.start()

    async def _forward_monitored(self, text: str) -> bool:
        if not await self.delivery.ensure_ready():
            return False
        return await self.channel.send(text)

    async def stop(self) -> None:
        """Flush pending buffers, stop timers and pollers, then disconnect."""
        if self._stopping:
            return
        self._stopping = True

        if self._status_task is not None:
            self._status_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._status_task
            self._status_task = None

        if self.monitor is not None:
            await self.monitor.stop()
        await self.aggregator.shutdown()
        await self.mailbox.stop()

        await self._announce("🛑 Relay shutting down.")
        if not self.settings.keep_session:
            await self.channel.kill()
        await self.adapter.disconnect()
        logger.info("relay stopped", extra={"session": self.settings.session_name})

    async def _announce(self, text: str) -> None:
        if self.primary_channel_id:
            await self.adapter.send_message(self.primary_channel_id, text)

    # =========================================================================
    # Inbound
    # =========================================================================

    async def handle_event(self, event: ChatEvent) -> None:
        """Route one inbound chat event; failures are reported back to the chat."""
        if self.primary_channel_id and event.conversation_id != self.primary_channel_id:
            return
        if event.is_automated and self.settings.ignore_bots:
            return

        self.stats.last_activity = time.time()
        try:
            parsed = parse_message(event.text)
            if parsed.type != CommandType.MESSAGE:
                await self._handle_command(event, parsed)
                return
            if not parsed.text:
                return

            self.stats.messages_processed += 1
            msg = QueuedMessage(
                author=event.author_name,
                text=parsed.text,
                arrived_at=self.aggregator.now(),
                message_id=event.message_id,
            )
            await self.aggregator.enqueue(event.conversation_id, msg)
        except Exception as e:
            logger.exception("failed to handle message", extra={"conversation_id": event.conversation_id})
            await self.adapter.send_message(event.conversation_id, f"❌ Error while handling message: {e}")

    async def _on_ack(self, conversation_id: str, message: QueuedMessage) -> None:
        if message.message_id:
            await self.adapter.add_reaction(conversation_id, message.message_id, ACK_EMOJI)

    async def _on_flush(self, conversation_id: str, messages: List[QueuedMessage], prompt: str) -> None:
        self.reply_target = conversation_id
        first, last = messages[0], messages[-1]
        if first.message_id:
            await self.adapter.remove_reaction(conversation_id, first.message_id, ACK_EMOJI)

        result = await self.delivery.deliver(prompt, wait_reply=not self._stopping)
        if not result.ok:
            await self.adapter.send_message(
                conversation_id,
                f"❌ {result.error}\nUse /restart to recreate the worker session.",
            )
            return

        self.stats.prompts_delivered += 1
        if last.message_id:
            await self.adapter.add_reaction(conversation_id, last.message_id, HANDOFF_EMOJI)
        if result.captured:
            await self.adapter.send_message(conversation_id, result.captured)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def _forward_reply(self, envelope: PendingResponseEnvelope) -> bool:
        target = self.reply_target or self.primary_channel_id
        if not target:
            return False
        text = envelope.content
        if envelope.type == "error":
            text = f"❌ {text}"
        return await self.adapter.send_message(target, text)

    async def _status_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.progress_interval)
            try:
                await self._announce(await self.status_text())
            except Exception:
                logger.exception("status report failed")

    async def status_text(self) -> str:
        st = await self.channel.status()
        return format_status(
            working_dir=str(self.settings.working_dir),
            session_name=self.settings.session_name,
            session_exists=st.exists,
            idle_minutes=st.idle_minutes,
            uptime_s=time.time() - self.stats.started_at,
            messages_processed=self.stats.messages_processed,
            commands_executed=self.stats.commands_executed,
            pending=self.aggregator.pending_counts(),
        )

    # =========================================================================
    # Command Handlers
    # =========================================================================

    async def _handle_command(self, event: ChatEvent, parsed: ParsedCommand) -> None:
        chat_id = event.conversation_id
        logger.info("command /%s", parsed.type.value, extra={"conversation_id": chat_id, "op": parsed.type.value})

        if parsed.type == CommandType.RESTART:
            await self._handle_restart(chat_id)
        elif parsed.type == CommandType.STATUS:
            await self.adapter.send_message(chat_id, await self.status_text())
        elif parsed.type == CommandType.ATTACH:
            await self.adapter.send_message(chat_id, format_attach(self.settings.session_name))
        elif parsed.type == CommandType.OUTPUT:
            await self._handle_output(chat_id)
        elif parsed.type == CommandType.HELP:
            await self.adapter.send_message(chat_id, format_help(self.settings.session_name))
        self.stats.commands_executed += 1

    async def _handle_restart(self, chat_id: str) -> None:
        await self.adapter.send_message(chat_id, "🔄 Restarting worker session...")
        ok = await self.channel.restart(self.settings.working_dir, launch_flags(self.settings))
        if ok:
            await self.adapter.send_message(chat_id, "✅ Worker session restarted.")
        else:
            await self.adapter.send_message(chat_id, f"❌ Restart failed: {self.channel.last_error}")

    async def _handle_output(self, chat_id: str) -> None:
        reply = await self.capture.latest_reply()
        if reply is None:
            await self.adapter.send_message(chat_id, "❌ Could not read the worker terminal.")
        elif not reply:
            await self.adapter.send_message(chat_id, "ℹ️ No reply found in the worker terminal.")
        else:
            text = self.adapter.summarize(reply, OUTPUT_MAX_CHARS, OUTPUT_MAX_LINES)
            await self.adapter.send_message(chat_id, f"🖥️ Latest output:\n```\n{text}\n```")


async def run_relay(settings: RelaySettings, adapter: Optional[IMAdapter] = None) -> int:
    """Run until SIGINT/SIGTERM. Returns a process exit code."""
    adapter = adapter or DiscordAdapter(settings.discord_token, ignore_bots=settings.ignore_bots)
    relay = RelayBridge(settings, adapter)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    if not await relay.start():
        return 1
    try:
        await stop.wait()
    finally:
        logger.info("shutdown requested")
        await relay.stop()
    return 0


def start_relay(settings: RelaySettings) -> int:
    """
    Start the relay in the foreground.

    This is the main entry point called by the CLI.
    """
    missing = settings.validate()
    if missing:
        logger.error("missing required settings: %s", ", ".join(missing))
        return 2

    lock_path = ensure_home() / "state" / f"{settings.session_name}.lock"
    lock_file = _acquire_singleton_lock(lock_path)
    if lock_file is None:
        logger.error("another relay is already running for session %s", settings.session_name)
        return 1

    try:
        return asyncio.run(run_relay(settings))
    finally:
        lock_file.close()
