"""
Entry point for running the relay as a module.

Usage:
    python -m chatrelay.ports.im [path]
"""

from __future__ import annotations

import sys
from pathlib import Path

from ...kernel.settings import load_settings
from ...util.obslog import setup_root_json_logging
from .bridge import start_relay


def main() -> int:
    path = Path(sys.argv[1]).expanduser().resolve() if len(sys.argv) > 1 else Path.cwd()
    settings = load_settings(working_dir=path)
    setup_root_json_logging(component="chatrelay", level=settings.log_level)
    return start_relay(settings)


if __name__ == "__main__":
    raise SystemExit(main())
