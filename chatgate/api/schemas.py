from __future__ import annotations

import uuid
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from chatgate.config import MAX_MESSAGE_CHARS
from chatgate.service.attachments import RawAttachment

# Maximum string length for otherwise unbounded strings
MAX_STRING_LENGTH = 65536
MAX_ATTACHMENTS = 10
MAX_CONTEXT_TURNS = 100


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class AttachmentIn(_CamelModel):
    id: Optional[str] = Field(None, max_length=128)
    name: str = Field(..., min_length=1, max_length=255)
    type: Optional[str] = Field(None, max_length=255)
    mime_type: Optional[str] = Field(None, max_length=255)
    size: int = Field(..., ge=0)
    base64: Optional[str] = None
    url: Optional[str] = Field(None, max_length=2048)

    @model_validator(mode="after")
    def _require_type(self) -> "AttachmentIn":
        if not (self.type or self.mime_type):
            raise ValueError("attachment type is required")
        return self

    def to_raw(self) -> RawAttachment:
        return RawAttachment(
            id=self.id,
            name=self.name,
            mime_type=self.mime_type or self.type or "",
            size=self.size,
            base64=self.base64,
            url=self.url,
        )


class ConversationTurn(_CamelModel):
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., max_length=MAX_STRING_LENGTH)


class ChatOptions(_CamelModel):
    model: Optional[str] = Field(None, max_length=128)
    temperature: Optional[float] = Field(None, ge=0, le=2)
    max_tokens: Optional[int] = Field(None, ge=1, le=8192)
    system_prompt: Optional[str] = Field(None, max_length=MAX_MESSAGE_CHARS)


class ChatRequest(_CamelModel):
    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_CHARS)
    session_id: Optional[str] = None
    attachments: List[AttachmentIn] = Field(default_factory=list, max_length=MAX_ATTACHMENTS)
    conversation_context: List[ConversationTurn] = Field(
        default_factory=list, max_length=MAX_CONTEXT_TURNS
    )
    continue_from: Optional[str] = Field(None, max_length=128)
    settings: Optional[ChatOptions] = None

    @field_validator("session_id")
    @classmethod
    def _validate_session_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            return str(uuid.UUID(value))
        except ValueError:
            raise ValueError("sessionId must be a UUID")


class ChatUsage(_CamelModel):
    message_count: int
    remaining_quota: Optional[int] = None
    tokens_used: int = 0


class ChatMetadata(_CamelModel):
    model: str
    temperature: float
    processing_time_ms: int
    attachment_count: int = 0
    degraded: bool = False
    continue_from: Optional[str] = None


class ChatResponse(_CamelModel):
    success: bool
    response: Optional[str] = None
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    is_incomplete: Optional[bool] = None
    usage: Optional[ChatUsage] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    details: Optional[Any] = None
    metadata: Optional[ChatMetadata] = None


class GuestCreateRequest(_CamelModel):
    user_agent: Optional[str] = Field(None, max_length=512)


class GuestVerifyRequest(_CamelModel):
    token: Optional[str] = Field(None, min_length=1, max_length=256)


class GuestUpdateRequest(_CamelModel):
    token: Optional[str] = Field(None, min_length=1, max_length=256)
    message_count: Optional[int] = Field(None, ge=1)
