from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO


_CONFIGURED: Dict[str, bool] = {}

# Correlation keys accepted through `logger.*(..., extra={...})`.
_CONTEXT_KEYS = ("conversation_id", "session", "op", "chunk", "platform")


def _iso_utc(created: float) -> str:
    stamp = datetime.fromtimestamp(created or 0.0, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _context(record: logging.LogRecord) -> Dict[str, str]:
    """Non-blank correlation values set on the record, as strings."""
    out: Dict[str, str] = {}
    for key in _CONTEXT_KEYS:
        value = str(getattr(record, key, "") or "").strip()
        if value:
            out[key] = value
    return out


class JsonlFormatter(logging.Formatter):
    """One JSON object per line; small stable field set."""

    def __init__(self, *, component: str):
        super().__init__()
        self._component = str(component or "").strip() or "chatrelay"

    def format(self, record: logging.LogRecord) -> str:
        try:
            entry: Dict[str, Any] = {
                "ts": _iso_utc(record.created),
                "level": record.levelname,
                "logger": record.name,
                "component": self._component,
                "msg": record.getMessage(),
            }
            entry.update(_context(record))
            if record.exc_info:
                entry["exc"] = self.formatException(record.exc_info)
            # non-JSON values are stringified
            return json.dumps(entry, ensure_ascii=False, default=str)
        except Exception:
            # Last resort: never crash logging.
            return json.dumps(
                {
                    "level": str(record.levelname),
                    "logger": str(record.name),
                    "component": self._component,
                    "msg": "(log formatting failed)",
                }
            )


def parse_level(level: str, default: int = logging.INFO) -> int:
    s = str(level or "").strip().upper()
    if not s:
        return default
    value = getattr(logging, s, default)
    return value if isinstance(value, int) else default


def setup_root_json_logging(
    *,
    component: str = "chatrelay",
    level: str = "INFO",
    stream: Optional[TextIO] = None,
    force: bool = False,
) -> None:
    """Configure root logging once per process.

    `force=True` drops existing handlers first.
    """
    key = f"root:{component}"
    if _CONFIGURED.get(key) and not force:
        return
    _CONFIGURED[key] = True

    lvl = parse_level(level)
    root = logging.getLogger()
    root.setLevel(lvl)

    if force:
        for h in list(root.handlers):
            root.removeHandler(h)

    for h in root.handlers:
        if isinstance(getattr(h, "formatter", None), JsonlFormatter):
            h.setLevel(lvl)
            return

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(JsonlFormatter(component=component))
    root.addHandler(handler)
