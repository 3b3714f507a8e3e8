"""
Chat platform adapters

Each adapter handles platform-specific communication:
- Discord: Gateway (discord.py)
"""

from .base import IMAdapter, split_message
from .discord import DiscordAdapter

__all__ = ["IMAdapter", "DiscordAdapter", "split_message"]
