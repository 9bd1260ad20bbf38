"""Chat schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from config import settings


class SendMessageIn(BaseModel):
    text: str = Field(min_length=1, max_length=settings.MAX_MESSAGE_LENGTH)
    conversation_id: str | None = None
    backend_name: str | None = None

    @field_validator("text")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message cannot be empty")
        return value.strip()


class ExchangeOut(BaseModel):
    conversation_id: str
    reply_text: str
    backend_name: str
    token_cost: int
    latency_ms: int
    used_fallback: bool = False
    persisted: bool = True
    warning: str | None = None


class MessageOut(BaseModel):
    position: int
    role: str
    content: str
    backend: str | None = None
    tokens: int = 0
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class ConversationOut(BaseModel):
    id: str
    title: str
    total_tokens: int
    preferred_backend: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class ConversationDetailOut(ConversationOut):
    messages: list[MessageOut] = []


class ConversationUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=100)


class JoinConversationIn(BaseModel):
    conversation_id: str = Field(min_length=1)
