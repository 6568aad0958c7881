"""Pull-based conversation reconciliation.

Fetches a connection's threads from the platform REST API and merges them
through the same identity keys the webhook path uses, so a thread seen by
both converges to one conversation and each platform message to one row.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from app.logging import get_logger
from app.models.conversation import Conversation, MessageDirection, MessageStatus
from app.models.platform_connection import ConnectionStatus, Platform, PlatformConnection
from app.schemas.inbox import SyncFailure, SyncSummary
from app.services import connection_registry
from app.services import inbox as inbox_service
from app.services.common import bounded_external_id, coerce_uuid, parse_platform_timestamp
from app.services.platform.base import (
    PlatformError,
    PlatformService,
    PlatformSyncError,
    run_platform_call,
)

logger = get_logger(__name__)

SYNCABLE_PLATFORMS = {Platform.facebook, Platform.instagram}
_MEDIA_PLACEHOLDER = "[Media/Attachment]"


@dataclass
class SyncResult:
    connection_id: object
    conversations: list[Conversation] = field(default_factory=list)
    messages_created: int = 0
    complete: bool = True
    error: str | None = None

    @property
    def conversations_synced(self) -> int:
        return len(self.conversations)


def _data(value) -> list[dict]:
    if isinstance(value, dict):
        value = value.get("data")
    return [item for item in value or [] if isinstance(item, dict)]


def _contact_for(thread: dict, account_id: str) -> dict | None:
    for participant in _data(thread.get("participants")):
        if participant.get("id") and participant.get("id") != account_id:
            return participant
    return None


def _avatar(participant: dict) -> str | None:
    picture = participant.get("picture")
    if isinstance(picture, dict):
        return (picture.get("data") or {}).get("url")
    return picture if isinstance(picture, str) else None


def _store_raw_message(
    db: Session,
    connection: PlatformConnection,
    conversation: Conversation,
    raw: dict,
) -> bool:
    # Same key as webhook ingestion, so both paths collapse on one row
    external_id = bounded_external_id(raw.get("id"))
    if not external_id:
        return False
    sender_id = (raw.get("from") or {}).get("id")
    outbound = sender_id == connection.platform_user_id
    message = inbox_service.insert_message(
        db,
        conversation.id,
        direction=MessageDirection.outbound if outbound else MessageDirection.inbound,
        content=raw.get("message") or _MEDIA_PLACEHOLDER,
        external_id=external_id,
        platform_timestamp=parse_platform_timestamp(raw.get("created_time")),
        status=MessageStatus.sent if outbound else MessageStatus.delivered,
    )
    return message is not None


def _merge_thread(
    db: Session,
    connection: PlatformConnection,
    thread: dict,
) -> tuple[Conversation | None, int]:
    contact = _contact_for(thread, connection.platform_user_id)
    if contact is None:
        logger.debug("sync_thread_without_contact thread_id=%s", thread.get("id"))
        return None, 0

    contact_id = contact["id"]
    contact_name = contact.get("name") or contact.get("username")
    avatar_url = _avatar(contact)
    latest = next(iter(_data(thread.get("messages"))), None)
    updated_at = parse_platform_timestamp(thread.get("updated_time"))
    if updated_at is None and latest:
        updated_at = parse_platform_timestamp(latest.get("created_time"))

    conversation, _created = inbox_service.ensure_conversation(
        db, connection, contact_id, contact_name, avatar_url
    )

    if updated_at is not None:
        values = {
            "last_message_at": updated_at,
            "contact_avatar_url": avatar_url or Conversation.contact_avatar_url,
            "contact_name": contact_name or Conversation.contact_name,
        }
        if latest:
            values["last_message_preview"] = (latest.get("message") or _MEDIA_PLACEHOLDER)[
                : inbox_service.PREVIEW_LENGTH
            ]
        # Only strictly newer threads move; a re-run with the same data is a no-op
        db.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .where(
                or_(
                    Conversation.last_message_at.is_(None),
                    Conversation.last_message_at < updated_at,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    created = 0
    if latest and _store_raw_message(db, connection, conversation, latest):
        created += 1
    db.commit()
    db.refresh(conversation)
    return conversation, created


def _merge_threads(
    db: Session,
    connection: PlatformConnection,
    threads: list[dict],
    result: SyncResult,
) -> None:
    for thread in threads:
        try:
            conversation, created = _merge_thread(db, connection, thread)
        except Exception as exc:
            db.rollback()
            result.complete = False
            result.error = result.error or f"Failed to merge thread {thread.get('id')}: {exc}"
            logger.exception(
                "sync_thread_merge_failed connection_id=%s thread_id=%s",
                connection.id,
                thread.get("id"),
            )
            continue
        if conversation is not None:
            result.conversations.append(conversation)
            result.messages_created += created


def sync_message_history(
    db: Session,
    connection: PlatformConnection,
    conversation: Conversation,
    raw_messages: list[dict],
) -> int:
    """Insert a thread's history; already stored messages are left alone."""
    created = 0
    for raw in raw_messages:
        if _store_raw_message(db, connection, conversation, raw):
            created += 1
    db.commit()
    return created


def _record_platform_failure(
    db: Session,
    connection: PlatformConnection,
    result: SyncResult,
    exc: PlatformError,
) -> None:
    result.complete = False
    result.error = exc.message
    if exc.is_token_error:
        connection_registry.mark_connection_status(
            db, connection, ConnectionStatus.expired, exc.message
        )


def sync_conversations(
    db: Session,
    connection: PlatformConnection,
    platform_service: PlatformService,
    include_history: bool = False,
) -> SyncResult:
    """Reconcile one connection's conversations with the platform.

    A platform failure makes the result incomplete; threads fetched before
    the failure are still merged. unread_count is never modified.
    """
    result = SyncResult(connection_id=connection.id)
    try:
        threads = run_platform_call(platform_service.sync_conversations(connection))
    except PlatformSyncError as exc:
        logger.warning(
            "sync_fetch_partial connection_id=%s fetched=%d error=%s",
            connection.id,
            len(exc.partial),
            exc.message,
        )
        threads = exc.partial
        _record_platform_failure(db, connection, result, exc)
    except PlatformError as exc:
        logger.warning("sync_fetch_failed connection_id=%s error=%s", connection.id, exc.message)
        threads = []
        _record_platform_failure(db, connection, result, exc)

    _merge_threads(db, connection, threads, result)

    if include_history:
        by_contact = {c.external_id: c for c in result.conversations}
        for thread in threads:
            contact = _contact_for(thread, connection.platform_user_id)
            conversation = by_contact.get(contact["id"]) if contact else None
            if conversation is None or not thread.get("id"):
                continue
            try:
                history = run_platform_call(
                    platform_service.get_message_history(connection, thread["id"])
                )
            except PlatformError as exc:
                result.complete = False
                result.error = result.error or exc.message
                logger.warning(
                    "sync_history_failed connection_id=%s thread_id=%s error=%s",
                    connection.id,
                    thread["id"],
                    exc.message,
                )
                continue
            result.messages_created += sync_message_history(
                db, connection, conversation, history
            )

    logger.info(
        "sync_connection_done connection_id=%s conversations=%d messages_created=%d complete=%s",
        connection.id,
        result.conversations_synced,
        result.messages_created,
        result.complete,
    )
    return result


def _sync_connections(
    db: Session,
    connections: list[PlatformConnection],
    platform_service: PlatformService,
    include_history: bool = False,
) -> SyncSummary:
    failures: list[SyncFailure] = []
    conversations_synced = 0
    messages_created = 0
    for connection in connections:
        result = sync_conversations(db, connection, platform_service, include_history)
        conversations_synced += result.conversations_synced
        messages_created += result.messages_created
        if not result.complete:
            failures.append(
                SyncFailure(
                    connection_id=connection.id,
                    platform=connection.platform,
                    message=result.error or "Sync incomplete",
                )
            )
    return SyncSummary(
        complete=not failures,
        connections=len(connections),
        conversations_synced=conversations_synced,
        messages_created=messages_created,
        failures=failures,
    )


def sync_organization(
    db: Session,
    organization_id,
    platform_service: PlatformService,
    include_history: bool = False,
) -> SyncSummary:
    """Sync every active Facebook/Instagram connection of an organization."""
    connections = connection_registry.list_active_connections(
        db, organization_id=coerce_uuid(organization_id), platforms=SYNCABLE_PLATFORMS
    )
    return _sync_connections(db, connections, platform_service, include_history)


def sync_all_connections(
    db: Session,
    platform_service: PlatformService,
) -> SyncSummary:
    connections = connection_registry.list_active_connections(
        db, platforms=SYNCABLE_PLATFORMS
    )
    return _sync_connections(db, connections, platform_service)
