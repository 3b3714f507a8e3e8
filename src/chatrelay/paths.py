from __future__ import annotations

import os
import tempfile
from pathlib import Path


def relay_home() -> Path:
    env = os.environ.get("CHATRELAY_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".chatrelay").resolve()


def ensure_home() -> Path:
    home = relay_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def default_mailbox_dir() -> Path:
    """Directory shared by the relay and the worker-side respond helper."""
    env = os.environ.get("CHATRELAY_MAILBOX_DIR", "").strip()
    if env:
        return Path(env).expanduser()
    return Path(tempfile.gettempdir())
