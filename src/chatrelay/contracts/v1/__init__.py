from __future__ import annotations

from .envelope import EnvelopeType, PendingResponseEnvelope
from .message import ChatEvent

__all__ = [
    "ChatEvent",
    "EnvelopeType",
    "PendingResponseEnvelope",
]
