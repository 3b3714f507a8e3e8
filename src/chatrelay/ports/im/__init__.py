"""
Chat relay port

Binds one chat channel to one tmux-hosted worker session.

Architecture:
- Relay runs as one foreground process per session
- Inbound: chat messages -> batching -> keystrokes into the session
- Outbound: worker replies -> filesystem mailbox -> chat

Usage:
    chatrelay start [path] --channel <name> --session <name>
    chatrelay respond "<reply>" --session <name>
"""

from .bridge import RelayBridge, run_relay, start_relay

__all__ = ["RelayBridge", "run_relay", "start_relay"]
