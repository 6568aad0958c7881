from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.conversation import ContentType
from app.models.platform_connection import Platform


class MetaMessagingEvent(BaseModel):
    """One item of ``entry[].messaging`` in a Meta webhook delivery."""

    model_config = ConfigDict(extra="allow")

    sender: dict | None = None
    recipient: dict | None = None
    timestamp: int | float | None = None
    message: dict | None = None
    postback: dict | None = None
    delivery: dict | None = None
    read: dict | None = None


class MetaWebhookEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    time: int | float | None = None
    # Kept raw so one malformed event does not invalidate its siblings
    messaging: list[dict] | None = None
    changes: list[dict] | None = None


class MetaWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: str | None = None
    entry: list[dict] = Field(default_factory=list)


class InboundEvent(BaseModel):
    """Canonical inbound message, independent of the platform wire format."""

    platform: Platform
    sender_id: str
    recipient_id: str
    message_id: str
    text: str
    timestamp: datetime
    content_type: ContentType = ContentType.text
    media_url: str | None = None
    contact_name: str | None = None


class ReceiptEvent(BaseModel):
    """Delivery or read receipt for messages sent by a connected account."""

    platform: Platform
    kind: str
    account_id: str
    contact_id: str | None = None
    message_ids: list[str] = Field(default_factory=list)
    watermark: datetime | None = None


class ConnectPageRequest(BaseModel):
    organization_id: str
    page_id: str = Field(min_length=1, max_length=120)
    page_access_token: str = Field(min_length=1)
    page_name: str = Field(min_length=1, max_length=255)
    instagram_id: str | None = Field(default=None, max_length=120)
