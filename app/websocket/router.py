from __future__ import annotations

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from app.db import get_db
from app.logging import get_logger
from app.services.auth import is_member
from app.websocket.auth import authenticate_websocket
from app.websocket.events import (
    EventType,
    InboundMessage,
    InboundMessageType,
    WebSocketEvent,
)
from app.websocket.manager import ConnectionManager, room_key

logger = get_logger(__name__)

router = APIRouter(tags=["websocket"])


def _check_membership(app, user_id: str, organization_id: str) -> bool:
    # Honour dependency overrides so tests and the API share one session source
    provider = app.dependency_overrides.get(get_db, get_db)
    sessions = provider()
    db = next(sessions)
    try:
        return is_member(db, user_id, organization_id)
    finally:
        sessions.close()


@router.websocket("/ws/inbox")
async def inbox_websocket(websocket: WebSocket):
    """
    WebSocket endpoint for real-time inbox updates.

    Client actions:
    - join_organization: Join an organization's room (membership checked)
    - leave_organization: Leave a room
    - ping: Keep-alive ping
    """
    await websocket.accept()

    auth_result = await authenticate_websocket(websocket)
    if not auth_result:
        return

    user_id = auth_result["user_id"]
    manager: ConnectionManager = websocket.app.state.connection_manager

    await manager.register_connection(user_id, websocket)

    try:
        while True:
            data = await websocket.receive_text()
            await _handle_client_message(user_id, websocket, data, manager)
    except WebSocketDisconnect:
        logger.debug("websocket_disconnected user_id=%s", user_id)
    except Exception as exc:
        logger.warning("websocket_error user_id=%s error=%s", user_id, exc)
    finally:
        await manager.unregister_connection(websocket)


async def _handle_client_message(
    user_id: str, websocket: WebSocket, raw_data: str, manager: ConnectionManager
):
    """Process incoming client message."""
    try:
        message = InboundMessage.model_validate(json.loads(raw_data))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("websocket_invalid_message user_id=%s error=%s", user_id, exc)
        await manager.send_event(
            websocket,
            WebSocketEvent(event=EventType.ERROR, data={"message": "Invalid message"}),
        )
        return

    if message.type == InboundMessageType.PING:
        await manager.send_heartbeat(websocket)
        return

    organization_id = message.organization_id
    if not organization_id:
        await manager.send_event(
            websocket,
            WebSocketEvent(event=EventType.ERROR, data={"message": "organization_id required"}),
        )
        return

    if message.type == InboundMessageType.JOIN_ORGANIZATION:
        allowed = await run_in_threadpool(
            _check_membership, websocket.app, user_id, organization_id
        )
        if not allowed:
            logger.warning(
                "websocket_join_denied user_id=%s organization_id=%s",
                user_id,
                organization_id,
            )
            await manager.send_event(
                websocket,
                WebSocketEvent(
                    event=EventType.JOIN_DENIED,
                    data={"organization_id": organization_id, "reason": "not_a_member"},
                ),
            )
            return
        organization_id = room_key(organization_id)
        await manager.join_organization(websocket, organization_id)
        await manager.send_event(
            websocket,
            WebSocketEvent(event=EventType.JOINED, data={"organization_id": organization_id}),
        )

    elif message.type == InboundMessageType.LEAVE_ORGANIZATION:
        organization_id = room_key(organization_id)
        await manager.leave_organization(websocket, organization_id)
        await manager.send_event(
            websocket,
            WebSocketEvent(event=EventType.LEFT, data={"organization_id": organization_id}),
        )
