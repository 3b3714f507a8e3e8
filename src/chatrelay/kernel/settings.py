"""Relay settings.

Sources, later wins:
1. defaults
2. <home>/settings.yaml (home = $CHATRELAY_HOME or ~/.chatrelay)
3. .chatrelay.env in the working directory (never overrides the environment)
4. environment variables
5. explicit overrides (CLI)
"""
from __future__ import annotations

import os
import re
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml  # type: ignore
from dotenv import load_dotenv

from ..paths import default_mailbox_dir, relay_home

ENV_FILE_NAME = ".chatrelay.env"

# env var -> settings key
ENV_KEYS: Dict[str, str] = {
    "DISCORD_BOT_TOKEN": "discord_token",
    "GUILD_ID": "guild_id",
    "DISCORD_CHANNEL_NAME": "channel_name",
    "TMUX_SESSION_NAME": "session_name",
    "LOG_LEVEL": "log_level",
    "CHATRELAY_MAILBOX_DIR": "mailbox_dir",
}

REQUIRED_KEYS = ("discord_token", "guild_id")

_INTERVAL_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$", re.IGNORECASE)


def _as_bool(v: Any, default: bool) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return bool(v)
    if isinstance(v, str):
        s = v.strip().lower()
        if s in ("1", "true", "yes", "y", "on"):
            return True
        if s in ("0", "false", "no", "n", "off"):
            return False
    return default


def _as_float(v: Any, default: float, *, min_value: float, max_value: float) -> float:
    try:
        n = float(v)
    except (TypeError, ValueError):
        n = float(default)
    return min(max(n, min_value), max_value)


def parse_interval(value: Any, default: float = 60.0) -> float:
    """Parse "30s" / "2m" / "1h" / bare seconds into seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) if value > 0 else default
    m = _INTERVAL_RE.match(str(value or ""))
    if not m:
        return default
    n = float(m.group(1))
    unit = m.group(2).lower()
    if unit == "m":
        n *= 60
    elif unit == "h":
        n *= 3600
    return n if n > 0 else default


@dataclass
class RelaySettings:
    discord_token: str = ""
    guild_id: str = ""
    channel_name: str = "claude"
    session_name: str = "claude-main"
    working_dir: Path = field(default_factory=Path.cwd)
    log_level: str = "INFO"

    worker_command: str = "claude"
    skip_permissions: bool = False
    resume: bool = False
    continue_session: bool = False
    ultrathink: bool = False
    orchestrator: bool = False
    auto_commit: bool = False
    auto_push: bool = False
    keep_session: bool = False

    progress_update: bool = False
    progress_interval: float = 60.0

    monitor_channel: str = ""
    monitor_interval: float = 3600.0

    mailbox_dir: Path = field(default_factory=default_mailbox_dir)
    reply_timeout: float = 30.0
    poll_interval: float = 0.5
    capture_fallback: bool = False
    ignore_bots: bool = False

    def validate(self) -> List[str]:
        """Names of required settings that are still empty."""
        return [k for k in REQUIRED_KEYS if not str(getattr(self, k) or "").strip()]

    def to_dict(self, *, redact: bool = True) -> Dict[str, Any]:
        d = asdict(self)
        d["working_dir"] = str(self.working_dir)
        d["mailbox_dir"] = str(self.mailbox_dir)
        if redact and d.get("discord_token"):
            d["discord_token"] = "***"
        return d

    def apply(self, raw: Mapping[str, Any]) -> "RelaySettings":
        """Merge a loosely-typed mapping; unknown keys and None values are ignored."""
        known = {f.name for f in fields(self)}
        for key, value in raw.items():
            if key not in known or value is None:
                continue
            current = getattr(self, key)
            if isinstance(current, bool):
                setattr(self, key, _as_bool(value, current))
            elif isinstance(current, Path):
                s = str(value).strip()
                if s:
                    setattr(self, key, Path(s).expanduser())
            elif key in ("progress_interval", "monitor_interval"):
                setattr(self, key, parse_interval(value, current))
            elif key == "reply_timeout":
                setattr(self, key, _as_float(value, current, min_value=1.0, max_value=3600.0))
            elif key == "poll_interval":
                setattr(self, key, _as_float(value, current, min_value=0.1, max_value=10.0))
            elif key == "log_level":
                setattr(self, key, str(value).strip().upper() or current)
            else:
                setattr(self, key, str(value).strip())
        return self


def settings_path() -> Path:
    return relay_home() / "settings.yaml"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return {}
    return data if isinstance(data, dict) else {}


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for env_name, key in ENV_KEYS.items():
        v = str(environ.get(env_name, "") or "").strip()
        if v:
            out[key] = v
    return out


def load_settings(
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    working_dir: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RelaySettings:
    cwd = Path(working_dir) if working_dir else Path.cwd()
    env_file = cwd / ENV_FILE_NAME
    if environ is None:
        if env_file.exists():
            load_dotenv(env_file, override=False)
        environ = os.environ

    s = RelaySettings(working_dir=cwd)
    s.apply(_load_yaml(settings_path()))
    s.apply(_env_overrides(environ))
    if overrides:
        s.apply(overrides)
    return s

