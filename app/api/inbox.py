from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import (
    get_current_user,
    get_db,
    get_notifier,
    get_platform_service,
    raise_inbox_error,
    require_org_access,
    require_org_member,
)
from app.models.conversation import ConversationStatus
from app.schemas.inbox import (
    ConversationRead,
    ListResponse,
    MessageCreate,
    MessageRead,
    SyncSummary,
)
from app.services import inbox as inbox_service
from app.services import sync as sync_service
from app.services.inbox import InboxError

router = APIRouter(tags=["inbox"])


def _conversation_for_member(db: Session, conversation_id: str, current_user: dict):
    try:
        conversation = inbox_service.get_conversation(db, conversation_id)
    except InboxError as exc:
        raise_inbox_error(exc)
    require_org_member(db, current_user, conversation.organization_id)
    return conversation


@router.get(
    "/organizations/{organization_id}/conversations",
    response_model=ListResponse[ConversationRead],
)
def list_conversations(
    organization_id: str,
    conversation_status: ConversationStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _: dict = Depends(require_org_access),
):
    items, total = inbox_service.list_conversations(
        db, organization_id, status=conversation_status, limit=limit, offset=offset
    )
    return {"items": items, "count": total, "limit": limit, "offset": offset}


@router.post("/organizations/{organization_id}/sync", response_model=SyncSummary)
def sync_organization(
    organization_id: str,
    include_history: bool = Query(default=False),
    db: Session = Depends(get_db),
    platform_service=Depends(get_platform_service),
    _: dict = Depends(require_org_access),
):
    """Pull conversations from every active connection of the organization.

    ``complete`` is false when any connection failed; the failures list says
    which and why.
    """
    return sync_service.sync_organization(
        db, organization_id, platform_service, include_history=include_history
    )


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=ListResponse[MessageRead],
)
def list_messages(
    conversation_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    conversation = _conversation_for_member(db, conversation_id, current_user)
    items, total = inbox_service.list_messages(db, conversation.id, limit=limit, offset=offset)
    return {"items": items, "count": total, "limit": limit, "offset": offset}


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    conversation_id: str,
    payload: MessageCreate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    platform_service=Depends(get_platform_service),
    notifier=Depends(get_notifier),
):
    conversation = _conversation_for_member(db, conversation_id, current_user)
    try:
        return inbox_service.send_outbound_message(
            db,
            conversation.id,
            payload.content,
            current_user["user_id"],
            platform_service,
            notifier=notifier,
        )
    except InboxError as exc:
        raise_inbox_error(exc)


@router.post("/conversations/{conversation_id}/read", response_model=ConversationRead)
def mark_read(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    notifier=Depends(get_notifier),
):
    conversation = _conversation_for_member(db, conversation_id, current_user)
    return inbox_service.mark_conversation_read(db, conversation.id, notifier=notifier)
