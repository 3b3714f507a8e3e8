from __future__ import annotations

from . import capture, tmux

__all__ = ["capture", "tmux"]
