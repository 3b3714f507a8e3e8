"""tmux-hosted worker session.

SessionChannel turns "deliver this text" into keystroke injections:

1. literal text after an explicit `--` (text starting with `-` is never a tmux flag)
2. a settle delay that grows with payload length
3. a carriage return (`C-m`), not the named `Enter` key
4. a second carriage return for long payloads

A failed step 1 aborts before any terminator is sent. A failure at step 3/4
leaves the text typed in the worker's input line; there is no rollback.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger("chatrelay.tmux")

SETTLE_BASE_MS = 200
SETTLE_UNIT_CHARS = 200
SETTLE_STEP_MS = 100
SETTLE_MAX_EXTRA_MS = 2000

SECOND_SUBMIT_THRESHOLD = 300
SECOND_SUBMIT_DELAY_MS = 100

SUBMIT_KEY = "C-m"

DEFAULT_STARTUP_WAIT_S = 5.0
RESTART_PAUSE_S = 1.0


class SessionCreationError(RuntimeError):
    """tmux missing, or the session / worker could not be started."""


class CommandDeliveryError(RuntimeError):
    """A keystroke injection step failed.

    `typed` is True when the payload already reached the terminal.
    """

    def __init__(self, message: str, *, typed: bool) -> None:
        super().__init__(message)
        self.typed = typed


def _run_tmux(args: List[str], *, timeout_s: float = 5.0) -> Tuple[int, str, str]:
    try:
        p = subprocess.run(
            ["tmux", *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout_s,
            check=False,
        )
        return int(p.returncode), (p.stdout or ""), (p.stderr or "")
    except subprocess.TimeoutExpired:
        return 124, "", "tmux timeout"
    except FileNotFoundError:
        return 127, "", "tmux not found"
    except Exception as e:
        return 1, "", str(e)


def tmux_available() -> bool:
    code, _, _ = _run_tmux(["-V"])
    return code == 0


def worker_available(command: str) -> bool:
    """Probe the worker binary with `--version`."""
    argv = shlex.split(command or "")
    if not argv:
        return False
    try:
        p = subprocess.run(
            [*argv, "--version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=10,
            check=False,
        )
        return p.returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


def list_sessions(marker: str = "claude") -> List[str]:
    code, out, _ = _run_tmux(["list-sessions", "-F", "#{session_name}"])
    if code != 0:
        return []
    return [ln.strip() for ln in out.splitlines() if ln.strip() and marker in ln]


def settle_delay_ms(length: int) -> int:
    extra = min((max(0, length) // SETTLE_UNIT_CHARS) * SETTLE_STEP_MS, SETTLE_MAX_EXTRA_MS)
    return SETTLE_BASE_MS + extra


def normalize_payload(text: str) -> str:
    # A stray CR would submit early; keep one logical input.
    return (text or "").replace("\r\n", "\n").replace("\r", "\n").strip()


@dataclass(frozen=True)
class LaunchFlags:
    skip_permissions: bool = False
    resume: bool = False
    continue_session: bool = False

    def as_args(self) -> List[str]:
        args: List[str] = []
        if self.skip_permissions:
            args.append("--dangerously-skip-permissions")
        if self.resume:
            args.append("-r")
        if self.continue_session:
            args.append("-c")
        return args


@dataclass(frozen=True)
class SessionHandle:
    name: str
    working_dir: Path
    flags: LaunchFlags = field(default_factory=LaunchFlags)
    worker_command: str = "claude"

    def launch_command(self) -> str:
        parts = shlex.split(self.worker_command or "claude") + self.flags.as_args()
        return " ".join(shlex.quote(p) for p in parts)


@dataclass
class SessionStatus:
    exists: bool
    idle_minutes: Optional[int] = None


class SessionChannel:
    """Reliable command delivery into one named tmux session.

    Liveness is always asked from tmux; `handle` only remembers how the
    session was launched so it can be recreated.
    """

    def __init__(
        self,
        session_name: str = "claude-main",
        *,
        startup_wait_s: float = DEFAULT_STARTUP_WAIT_S,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        name = (session_name or "").strip()
        if not name:
            raise ValueError("missing session name")
        self.session_name = name
        self.startup_wait_s = float(startup_wait_s)
        self.handle: Optional[SessionHandle] = None
        self.last_error = ""

        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self._last_activity = clock()
        # Flushes from different conversations interleave at await points.
        self._lock = asyncio.Lock()

    async def _tmux(self, args: List[str]) -> Tuple[int, str, str]:
        code, out, err = await asyncio.to_thread(_run_tmux, args)
        logger.debug("tmux %s -> %s", args[0] if args else "", code, extra={"session": self.session_name})
        return code, out, err

    async def has_session(self) -> bool:
        code, _, _ = await self._tmux(["has-session", "-t", self.session_name])
        return code == 0

    async def ensure_session(
        self,
        working_dir: Path,
        flags: Optional[LaunchFlags] = None,
        *,
        worker_command: str = "claude",
    ) -> bool:
        handle = SessionHandle(
            name=self.session_name,
            working_dir=Path(working_dir),
            flags=flags or LaunchFlags(),
            worker_command=worker_command,
        )
        async with self._lock:
            if await self.has_session():
                if self.handle is None:
                    self.handle = handle
                return True

            logger.info("creating tmux session in %s", handle.working_dir, extra={"session": self.session_name})
            try:
                await self._create(handle)
            except SessionCreationError as e:
                self.last_error = str(e)
                logger.error("session creation failed: %s", e, extra={"session": self.session_name})
                await self._tmux(["kill-session", "-t", self.session_name])
                return False

            self.handle = handle
            self._touch()
            logger.info("worker started: %s", handle.launch_command(), extra={"session": self.session_name})
            return True

    async def _create(self, handle: SessionHandle) -> None:
        cwd = handle.working_dir.expanduser()
        if not cwd.is_dir():
            logger.warning("working directory %s missing, using %s", cwd, Path.cwd())
            cwd = Path.cwd()

        code, _, err = await self._tmux(["new-session", "-d", "-s", handle.name, "-c", str(cwd)])
        if code != 0:
            raise SessionCreationError(f"tmux new-session failed: {err.strip() or code}")

        try:
            await self._deliver(handle.launch_command())
        except CommandDeliveryError as e:
            raise SessionCreationError(f"worker launch failed: {e}") from e

        if self.startup_wait_s > 0:
            await self._sleep(self.startup_wait_s)

    async def send(self, text: str) -> bool:
        async with self._lock:
            self._touch()
            try:
                await self._deliver(text)
            except CommandDeliveryError as e:
                self.last_error = str(e)
                if e.typed:
                    logger.error(
                        "submit failed after text was typed; manual recovery needed: %s",
                        e,
                        extra={"session": self.session_name},
                    )
                else:
                    logger.error("text injection failed: %s", e, extra={"session": self.session_name})
                return False
            return True

    async def _deliver(self, text: str) -> None:
        payload = normalize_payload(text)
        if not payload:
            raise CommandDeliveryError("empty payload", typed=False)

        code, _, err = await self._tmux(["send-keys", "-t", self.session_name, "-l", "--", payload])
        if code != 0:
            raise CommandDeliveryError(f"send-keys text failed: {err.strip() or code}", typed=False)

        delay_ms = settle_delay_ms(len(payload))
        logger.debug("payload len=%d settle=%dms", len(payload), delay_ms, extra={"session": self.session_name})
        await self._sleep(delay_ms / 1000.0)

        code, _, err = await self._tmux(["send-keys", "-t", self.session_name, SUBMIT_KEY])
        if code != 0:
            raise CommandDeliveryError(f"send-keys submit failed: {err.strip() or code}", typed=True)

        if len(payload) > SECOND_SUBMIT_THRESHOLD:
            await self._sleep(SECOND_SUBMIT_DELAY_MS / 1000.0)
            code, _, err = await self._tmux(["send-keys", "-t", self.session_name, SUBMIT_KEY])
            if code != 0:
                raise CommandDeliveryError(f"second submit failed: {err.strip() or code}", typed=True)

    async def kill(self) -> bool:
        code, _, err = await self._tmux(["kill-session", "-t", self.session_name])
        if code == 0:
            logger.info("killed tmux session", extra={"session": self.session_name})
        else:
            logger.warning("kill-session failed: %s", err.strip(), extra={"session": self.session_name})
        return code == 0

    async def restart(self, working_dir: Optional[Path] = None, flags: Optional[LaunchFlags] = None) -> bool:
        prev = self.handle
        cwd = working_dir or (prev.working_dir if prev else Path.cwd())
        use_flags = flags or (prev.flags if prev else LaunchFlags())
        command = prev.worker_command if prev else "claude"

        await self.kill()
        self.handle = None
        await self._sleep(RESTART_PAUSE_S)
        return await self.ensure_session(cwd, use_flags, worker_command=command)

    async def snapshot(self) -> Optional[str]:
        """Visible pane plus full scrollback, or None when tmux fails."""
        code, out, err = await self._tmux(["capture-pane", "-t", self.session_name, "-p", "-S", "-"])
        if code != 0:
            logger.warning("capture-pane failed: %s", err.strip(), extra={"session": self.session_name})
            return None
        return out

    async def status(self) -> SessionStatus:
        if not await self.has_session():
            return SessionStatus(exists=False)
        idle = int(max(0.0, self._clock() - self._last_activity) // 60)
        return SessionStatus(exists=True, idle_minutes=idle)

    def _touch(self) -> None:
        self._last_activity = self._clock()
