from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ChatEvent(BaseModel):
    """Inbound chat message as delivered by a gateway adapter."""

    conversation_id: str = Field(alias="conversationId")
    author_id: str = Field(default="", alias="authorId")
    author_name: str = Field(default="user", alias="authorName")
    text: str = ""
    is_automated: bool = Field(default=False, alias="isAutomatedAccount")
    is_webhook: bool = Field(default=False, alias="isWebhook")
    # Unix seconds; 0 when the gateway does not say.
    created_at: float = Field(default=0.0, alias="createdAt")

    # Gateway bookkeeping (reactions, display).
    message_id: str = Field(default="", alias="messageId")
    conversation_title: str = Field(default="", alias="conversationTitle")

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)
