from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.conversation import (
    ContentType,
    ConversationStatus,
    MessageDirection,
    MessageStatus,
)
from app.models.platform_connection import ConnectionStatus, Platform

T = TypeVar("T")


class ListResponse(BaseModel, Generic[T]):
    items: list[T]
    count: int
    limit: int
    offset: int


class PlatformConnectionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    platform: Platform
    platform_user_id: str
    platform_username: str | None = None
    status: ConnectionStatus
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


class ConversationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    platform_connection_id: UUID
    organization_id: UUID
    platform: Platform
    external_id: str
    contact_external_id: str
    contact_name: str | None = None
    contact_avatar_url: str | None = None
    status: ConversationStatus
    unread_count: int
    last_message_at: datetime | None = None
    last_message_preview: str | None = None
    created_at: datetime
    updated_at: datetime


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: UUID
    direction: MessageDirection
    content: str
    external_id: str | None = None
    content_type: ContentType
    media_url: str | None = None
    status: MessageStatus
    error_message: str | None = None
    sent_by_user_id: UUID | None = None
    platform_timestamp: datetime | None = None
    created_at: datetime


class MessageCreate(BaseModel):
    content: str = Field(min_length=1, max_length=2000)


class SyncFailure(BaseModel):
    connection_id: UUID
    platform: Platform
    message: str


class SyncSummary(BaseModel):
    complete: bool
    connections: int
    conversations_synced: int
    messages_created: int
    failures: list[SyncFailure] = Field(default_factory=list)
