"""Conversation upsert engine.

Maps canonical inbound events onto conversation/message state, sends agent
replies through a platform service, and applies delivery/read receipts.

Identity is enforced by the store: conversations are unique per
(platform_connection_id, external_id) and messages per
(conversation_id, external_id). Both are created with
``INSERT .. ON CONFLICT DO NOTHING`` and the conversation counters move
through one conditional ``UPDATE``, so concurrent redeliveries of the same
platform message resolve to a single row and a single unread increment.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import case, func, literal, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.conversation import (
    ContentType,
    Conversation,
    ConversationStatus,
    Message,
    MessageDirection,
    MessageStatus,
)
from app.models.platform_connection import ConnectionStatus, Platform, PlatformConnection
from app.schemas.inbox import ConversationRead, MessageRead
from app.schemas.meta import InboundEvent, ReceiptEvent
from app.services import connection_registry
from app.services.common import apply_pagination, coerce_uuid, try_coerce_uuid
from app.services.platform.base import PlatformError, PlatformService, run_platform_call

logger = get_logger(__name__)

PREVIEW_LENGTH = 255
SENDABLE_PLATFORMS = {Platform.facebook, Platform.instagram}


class InboxError(Exception):
    """Service-level failure carrying the HTTP status the API should return."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class OutboundSendError(InboxError):
    """The platform rejected an outbound message; the row is marked FAILED."""

    def __init__(self, message: str, *, platform_error: PlatformError | None = None, message_id=None):
        super().__init__(502, message)
        self.platform_error = platform_error
        self.message_id = message_id


@dataclass
class IngestResult:
    outcome: str
    conversation: Conversation | None = None
    message: Message | None = None
    conversation_created: bool = False


def _insert(db: Session, model):
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _preview(text: str | None) -> str | None:
    if text is None:
        return None
    return text[:PREVIEW_LENGTH]


def default_contact_name(sender_id: str) -> str:
    return f"User {sender_id[:5]}"


def serialize_conversation(conversation: Conversation) -> dict:
    return ConversationRead.model_validate(conversation).model_dump(mode="json")


def serialize_message(message: Message) -> dict:
    return MessageRead.model_validate(message).model_dump(mode="json")


def _notify(notifier, organization_id, event_name: str, payload: dict) -> None:
    if notifier is None:
        return
    try:
        notifier.emit_to_organization(str(organization_id), event_name, payload)
    except Exception as exc:
        logger.warning(
            "inbox_fanout_failed organization_id=%s event=%s error=%s",
            organization_id,
            event_name,
            exc,
        )


def _lookup_profile(profile_lookup, connection: PlatformConnection, sender_id: str) -> dict:
    if profile_lookup is None:
        return {}
    try:
        return profile_lookup(connection, sender_id) or {}
    except Exception as exc:
        logger.warning(
            "inbox_profile_lookup_failed connection_id=%s sender_id=%s error=%s",
            connection.id,
            sender_id,
            exc,
        )
        return {}


def find_conversation(
    db: Session, platform_connection_id, external_id: str
) -> Conversation | None:
    return db.scalars(
        select(Conversation)
        .where(Conversation.platform_connection_id == platform_connection_id)
        .where(Conversation.external_id == external_id)
    ).first()


def ensure_conversation(
    db: Session,
    connection: PlatformConnection,
    external_id: str,
    contact_name: str | None = None,
    contact_avatar_url: str | None = None,
) -> tuple[Conversation, bool]:
    """Return the conversation for ``external_id``, creating it atomically.

    Returns:
        Tuple of (conversation, created).
    """
    stmt = (
        _insert(db, Conversation)
        .values(
            platform_connection_id=connection.id,
            organization_id=connection.organization_id,
            platform=connection.platform,
            external_id=external_id,
            contact_external_id=external_id,
            contact_name=contact_name or default_contact_name(external_id),
            contact_avatar_url=contact_avatar_url,
            status=ConversationStatus.open,
            unread_count=0,
        )
        .on_conflict_do_nothing(index_elements=["platform_connection_id", "external_id"])
        .returning(Conversation.id)
    )
    created_id = db.execute(stmt).scalar_one_or_none()
    conversation = find_conversation(db, connection.id, external_id)
    if conversation is None:
        raise RuntimeError(
            f"conversation {external_id} vanished after upsert on connection {connection.id}"
        )
    return conversation, created_id is not None


def insert_message(
    db: Session,
    conversation_id,
    *,
    direction: MessageDirection,
    content: str,
    external_id: str | None,
    platform_timestamp: datetime | None,
    content_type: ContentType = ContentType.text,
    media_url: str | None = None,
    status: MessageStatus = MessageStatus.delivered,
) -> Message | None:
    """Insert a message unless one with the same external id already exists.

    Returns:
        The new message, or None for a duplicate.
    """
    stmt = (
        _insert(db, Message)
        .values(
            conversation_id=conversation_id,
            direction=direction,
            content=content,
            external_id=external_id,
            content_type=content_type,
            media_url=media_url,
            status=status,
            platform_timestamp=platform_timestamp,
        )
        .on_conflict_do_nothing(index_elements=["conversation_id", "external_id"])
        .returning(Message.id)
    )
    message_id = db.execute(stmt).scalar_one_or_none()
    if message_id is None:
        return None
    return db.get(Message, message_id)


def _advance_conversation(
    db: Session,
    conversation_id,
    timestamp: datetime,
    preview: str | None,
    *,
    increment_unread: bool,
) -> None:
    ts = literal(timestamp, type_=Conversation.last_message_at.type)
    is_newest = or_(
        Conversation.last_message_at.is_(None),
        Conversation.last_message_at <= ts,
    )
    values = {
        "status": ConversationStatus.open,
        "last_message_at": case((is_newest, ts), else_=Conversation.last_message_at),
        "last_message_preview": case(
            (is_newest, literal(preview, type_=Conversation.last_message_preview.type)),
            else_=Conversation.last_message_preview,
        ),
        "updated_at": datetime.now(timezone.utc),
    }
    if increment_unread:
        values["unread_count"] = Conversation.unread_count + 1
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def ingest_inbound_event(
    db: Session,
    event: InboundEvent,
    notifier=None,
    profile_lookup: Callable | None = None,
) -> IngestResult:
    """Apply one inbound message event.

    Outcomes:
        ``unattributed``: no connection owns the recipient account; nothing
            is written or emitted.
        ``duplicate``: the message id was already stored; state is unchanged.
        ``created``: a new message was stored and ``new_message`` emitted.
    """
    connection = connection_registry.resolve_connection(
        db, event.platform, event.recipient_id
    )
    if connection is None:
        logger.warning(
            "inbox_event_unattributed platform=%s account_id=%s mid=%s",
            event.platform.value,
            event.recipient_id,
            event.message_id,
        )
        return IngestResult(outcome="unattributed")

    contact_name = event.contact_name
    avatar_url = None
    if find_conversation(db, connection.id, event.sender_id) is None:
        profile = _lookup_profile(profile_lookup, connection, event.sender_id)
        contact_name = contact_name or profile.get("name")
        avatar_url = profile.get("avatar_url")

    conversation, created = ensure_conversation(
        db, connection, event.sender_id, contact_name, avatar_url
    )
    message = insert_message(
        db,
        conversation.id,
        direction=MessageDirection.inbound,
        content=event.text,
        external_id=event.message_id,
        platform_timestamp=event.timestamp,
        content_type=event.content_type,
        media_url=event.media_url,
    )
    if message is None:
        db.commit()
        logger.info(
            "inbox_event_duplicate conversation_id=%s mid=%s",
            conversation.id,
            event.message_id,
        )
        return IngestResult(outcome="duplicate", conversation=conversation)

    _advance_conversation(
        db, conversation.id, event.timestamp, _preview(event.text), increment_unread=True
    )
    db.commit()
    db.refresh(conversation)
    db.refresh(message)
    logger.info(
        "inbox_message_received conversation_id=%s message_id=%s created=%s",
        conversation.id,
        message.id,
        created,
    )
    _notify(
        notifier,
        conversation.organization_id,
        "new_message",
        {
            "conversationId": str(conversation.id),
            "message": serialize_message(message),
            "conversation": serialize_conversation(conversation),
        },
    )
    return IngestResult(
        outcome="created",
        conversation=conversation,
        message=message,
        conversation_created=created,
    )


def apply_receipt(db: Session, receipt: ReceiptEvent, notifier=None) -> int:
    """Advance outbound message status from a delivery or read receipt.

    Only messages of conversations owned by the resolved connection move,
    and only forward (SENT -> DELIVERED, SENT/DELIVERED -> READ).

    Returns:
        Number of messages updated.
    """
    connection = connection_registry.resolve_connection(
        db, receipt.platform, receipt.account_id
    )
    if connection is None or not receipt.contact_id:
        return 0
    conversation = find_conversation(db, connection.id, receipt.contact_id)
    if conversation is None:
        return 0

    if receipt.kind == "read":
        target = MessageStatus.read
        from_statuses = [MessageStatus.sent, MessageStatus.delivered]
    else:
        target = MessageStatus.delivered
        from_statuses = [MessageStatus.sent]

    stmt = (
        update(Message)
        .where(Message.conversation_id == conversation.id)
        .where(Message.direction == MessageDirection.outbound)
        .where(Message.status.in_(from_statuses))
    )
    if receipt.message_ids:
        stmt = stmt.where(Message.external_id.in_(receipt.message_ids))
    elif receipt.watermark is not None:
        watermark = literal(receipt.watermark, type_=Message.platform_timestamp.type)
        stmt = stmt.where(func.coalesce(Message.platform_timestamp, Message.created_at) <= watermark)
    else:
        return 0

    updated_ids = list(
        db.execute(
            stmt.values(status=target)
            .returning(Message.id)
            .execution_options(synchronize_session=False)
        ).scalars()
    )
    db.commit()
    if updated_ids:
        logger.info(
            "inbox_receipt_applied conversation_id=%s kind=%s count=%d",
            conversation.id,
            receipt.kind,
            len(updated_ids),
        )
    for message_id in updated_ids:
        _notify(
            notifier,
            conversation.organization_id,
            "message_status",
            {
                "conversationId": str(conversation.id),
                "messageId": str(message_id),
                "status": target.value,
            },
        )
    return len(updated_ids)


def get_conversation(db: Session, conversation_id) -> Conversation:
    conversation_uuid = try_coerce_uuid(conversation_id)
    conversation = db.get(Conversation, conversation_uuid) if conversation_uuid else None
    if not conversation:
        raise InboxError(404, "Conversation not found")
    return conversation


def list_conversations(
    db: Session,
    organization_id,
    status: ConversationStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Conversation], int]:
    stmt = select(Conversation).where(
        Conversation.organization_id == coerce_uuid(organization_id)
    )
    if status is not None:
        stmt = stmt.where(Conversation.status == status)
    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    stmt = stmt.order_by(
        Conversation.last_message_at.desc().nulls_last(), Conversation.created_at.desc()
    )
    items = list(db.scalars(apply_pagination(stmt, limit, offset)).all())
    return items, total


def list_messages(
    db: Session,
    conversation_id,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Message], int]:
    conversation = get_conversation(db, conversation_id)
    stmt = select(Message).where(Message.conversation_id == conversation.id)
    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    stmt = stmt.order_by(
        func.coalesce(Message.platform_timestamp, Message.created_at).asc(),
        Message.created_at.asc(),
    )
    items = list(db.scalars(apply_pagination(stmt, limit, offset)).all())
    return items, total


def mark_conversation_read(db: Session, conversation_id, notifier=None) -> Conversation:
    """Reset unread_count to zero and mark inbound messages READ."""
    conversation = get_conversation(db, conversation_id)
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id)
        .values(unread_count=0)
        .execution_options(synchronize_session=False)
    )
    db.execute(
        update(Message)
        .where(Message.conversation_id == conversation.id)
        .where(Message.direction == MessageDirection.inbound)
        .where(Message.status != MessageStatus.read)
        .values(status=MessageStatus.read)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(conversation)
    _notify(
        notifier,
        conversation.organization_id,
        "conversation_read",
        {"conversationId": str(conversation.id), "unreadCount": conversation.unread_count},
    )
    return conversation


def _finish_send_failure(
    db: Session,
    message: Message,
    connection: PlatformConnection,
    error: PlatformError,
) -> None:
    message.status = MessageStatus.failed
    message.error_message = error.message[:1000]
    db.commit()
    if error.is_token_error:
        connection_registry.mark_connection_status(
            db, connection, ConnectionStatus.expired, error.message
        )


def send_outbound_message(
    db: Session,
    conversation_id,
    content: str,
    user_id,
    platform_service: PlatformService,
    notifier=None,
) -> Message:
    """Send an agent reply and record it as an OUTBOUND message.

    The message is stored PENDING first, then moved to SENT (with the
    platform message id) or FAILED. It is never left PENDING.

    Raises:
        InboxError: 400 for empty content, 404 unknown conversation, 409 when
            the connection is disconnected, 422 for platforms without a send
            implementation.
        OutboundSendError: The platform rejected the message or timed out.
    """
    text = (content or "").strip()
    if not text:
        raise InboxError(400, "Message content is required")
    conversation = get_conversation(db, conversation_id)
    connection = conversation.platform_connection
    if connection is None or connection.status == ConnectionStatus.disconnected:
        raise InboxError(409, "Platform connection is disconnected")
    if connection.platform not in SENDABLE_PLATFORMS:
        raise InboxError(422, f"Sending is not supported for {connection.platform.value}")

    message = Message(
        conversation_id=conversation.id,
        direction=MessageDirection.outbound,
        content=text,
        content_type=ContentType.text,
        status=MessageStatus.pending,
        sent_by_user_id=coerce_uuid(user_id),
    )
    db.add(message)
    db.commit()
    db.refresh(message)

    timeout = settings.meta_api_timeout_seconds
    recipient_id = conversation.external_id

    async def _bounded_send():
        return await asyncio.wait_for(
            platform_service.send_message(connection, recipient_id, text),
            timeout=timeout,
        )

    try:
        result = run_platform_call(_bounded_send())
    except asyncio.TimeoutError:
        error = PlatformError(f"send_message timed out after {timeout}s")
        _finish_send_failure(db, message, connection, error)
        logger.warning("inbox_send_timeout conversation_id=%s", conversation.id)
        _notify_status(notifier, conversation, message)
        raise OutboundSendError(error.message, platform_error=error, message_id=message.id)
    except PlatformError as exc:
        _finish_send_failure(db, message, connection, exc)
        logger.warning(
            "inbox_send_failed conversation_id=%s code=%s error=%s",
            conversation.id,
            exc.code,
            exc.message,
        )
        _notify_status(notifier, conversation, message)
        raise OutboundSendError(exc.message, platform_error=exc, message_id=message.id) from exc

    sent_at = datetime.now(timezone.utc)
    message.status = MessageStatus.sent
    message.external_id = result.external_id
    message.platform_timestamp = sent_at
    db.flush()
    _advance_conversation(
        db, conversation.id, sent_at, _preview(f"You: {text}"), increment_unread=False
    )
    db.commit()
    db.refresh(message)
    db.refresh(conversation)
    logger.info(
        "inbox_message_sent conversation_id=%s message_id=%s external_id=%s",
        conversation.id,
        message.id,
        message.external_id,
    )
    _notify_status(notifier, conversation, message)
    return message


def _notify_status(notifier, conversation: Conversation, message: Message) -> None:
    _notify(
        notifier,
        conversation.organization_id,
        "message_status",
        {
            "conversationId": str(conversation.id),
            "messageId": str(message.id),
            "status": message.status.value,
            "message": serialize_message(message),
        },
    )

