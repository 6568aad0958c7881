from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """WebSocket event types for the inbox."""

    NEW_MESSAGE = "new_message"
    MESSAGE_STATUS = "message_status"
    CONVERSATION_READ = "conversation_read"
    CONNECTION_ACK = "connection_ack"
    JOINED = "joined"
    JOIN_DENIED = "join_denied"
    LEFT = "left"
    HEARTBEAT = "heartbeat"
    ERROR = "error"


class WebSocketEvent(BaseModel):
    """Outbound WebSocket event sent to clients."""

    event: str
    data: dict[str, Any]
    timestamp: datetime | None = None

    def model_post_init(self, __context: Any) -> None:
        if self.timestamp is None:
            object.__setattr__(self, "timestamp", datetime.now(UTC))


class InboundMessageType(str, Enum):
    """Types of messages clients can send."""

    JOIN_ORGANIZATION = "join_organization"
    LEAVE_ORGANIZATION = "leave_organization"
    PING = "ping"


class InboundMessage(BaseModel):
    """Message received from WebSocket client."""

    model_config = ConfigDict(populate_by_name=True)

    type: InboundMessageType
    organization_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("organization_id", "organizationId"),
    )
