from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

EnvelopeType = Literal["text", "claude-response", "error"]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class PendingResponseEnvelope(BaseModel):
    """A reply written by the worker side into the mailbox.

    Wire keys are camelCase (`chunkIndex`, `totalChunks`); both spellings are
    accepted on input.
    """

    content: str
    timestamp: str = Field(default_factory=_utc_now_iso)
    type: EnvelopeType = "text"
    chunk_index: Optional[int] = Field(default=None, alias="chunkIndex", ge=1)
    total_chunks: Optional[int] = Field(default=None, alias="totalChunks", ge=1)

    # Older helpers also wrote `isChunk`; keep unknown keys instead of failing.
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @model_validator(mode="after")
    def _check_chunk_bounds(self) -> "PendingResponseEnvelope":
        if self.chunk_index is not None and self.total_chunks is not None:
            if self.chunk_index > self.total_chunks:
                raise ValueError("chunkIndex exceeds totalChunks")
        return self

    @property
    def is_chunked(self) -> bool:
        return (self.total_chunks or 1) > 1

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
