from __future__ import annotations

import asyncio
import json
import uuid

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from app.logging import get_logger
from app.metrics import FANOUT_EVENTS
from app.services.common import try_coerce_uuid
from app.websocket.events import EventType, WebSocketEvent

logger = get_logger(__name__)

CHANNEL_PREFIX = "inbox_org:"


def room_key(organization_id) -> str:
    """Canonical room name: the hyphenated lowercase UUID when the id is one."""
    parsed = try_coerce_uuid(organization_id)
    return str(parsed) if parsed is not None else str(organization_id)


class ConnectionManager:
    """
    Tracks inbox WebSocket sessions and the organization rooms they joined.

    One instance per application, created in ``create_app`` and kept on
    ``app.state``. With a Redis URL, emissions are also published so other
    instances can deliver them to their own sessions; each instance tags its
    publications and skips them on receipt, so local sessions see an event
    once.

    Rooms: organization_id -> set[WebSocket]
    """

    def __init__(self, redis_url: str | None = None):
        self.redis_url = redis_url
        self.instance_id = uuid.uuid4().hex
        self._rooms: dict[str, set[WebSocket]] = {}
        self._users: dict[WebSocket, str] = {}
        self._redis_client = None
        self._pubsub = None
        self._listener_task: asyncio.Task | None = None
        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop

    async def connect(self):
        """Capture the serving event loop and start the Redis relay if configured."""
        self._loop = asyncio.get_running_loop()
        if not self.redis_url:
            logger.info("websocket_manager_started relay=disabled")
            return
        try:
            import redis.asyncio as aioredis

            self._redis_client = aioredis.from_url(self.redis_url, decode_responses=True)
            self._pubsub = self._redis_client.pubsub()
            await self._pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
            self._running = True
            self._listener_task = asyncio.create_task(self._redis_listener())
            logger.info("websocket_manager_connected redis=%s", self.redis_url)
        except Exception as exc:
            self._redis_client = None
            self._pubsub = None
            logger.warning("websocket_manager_redis_failed error=%s", exc)

    async def disconnect(self):
        """Cleanup Redis connection and stop listener."""
        self._running = False
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        if self._pubsub:
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
        if self._redis_client:
            await self._redis_client.aclose()
            self._redis_client = None
        logger.info("websocket_manager_disconnected")

    async def _redis_listener(self):
        """Listen for relayed emissions and dispatch them to local sessions."""
        try:
            while self._running:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if message and message["type"] == "pmessage":
                    await self._handle_redis_message(message["data"])
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.error("websocket_redis_listener_error error=%s", exc)

    async def _handle_redis_message(self, data: str):
        try:
            payload = json.loads(data)
            if payload.get("origin") == self.instance_id:
                return
            organization_id = payload.get("organization_id")
            event_data = payload.get("event")
            if organization_id and event_data:
                await self._dispatch_to_room(organization_id, event_data)
        except Exception as exc:
            logger.warning("websocket_redis_message_error error=%s", exc)

    async def _send(self, websocket: WebSocket, event_data: dict) -> bool:
        try:
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.send_json(event_data)
                return True
        except Exception as exc:
            logger.debug("websocket_send_failed error=%s", exc)
        await self._remove_connection(websocket)
        return False

    async def _dispatch_to_room(self, organization_id: str, event_data: dict) -> int:
        delivered = 0
        for websocket in list(self._rooms.get(organization_id, ())):
            if await self._send(websocket, event_data):
                delivered += 1
        return delivered

    async def register_connection(self, user_id: str, websocket: WebSocket):
        """Register an authenticated session and acknowledge it."""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._users[websocket] = user_id
        logger.debug("websocket_registered user_id=%s", user_id)
        ack_event = WebSocketEvent(
            event=EventType.CONNECTION_ACK,
            data={"user_id": user_id, "status": "connected"},
        )
        await websocket.send_json(ack_event.model_dump(mode="json"))

    async def unregister_connection(self, websocket: WebSocket):
        await self._remove_connection(websocket)

    async def _remove_connection(self, websocket: WebSocket):
        user_id = self._users.pop(websocket, None)
        for organization_id in list(self._rooms):
            members = self._rooms[organization_id]
            members.discard(websocket)
            if not members:
                del self._rooms[organization_id]
        logger.debug("websocket_unregistered user_id=%s", user_id)

    async def join_organization(self, websocket: WebSocket, organization_id: str):
        """Admit a session to a room. Membership must be checked by the caller."""
        organization_id = room_key(organization_id)
        self._rooms.setdefault(organization_id, set()).add(websocket)
        logger.info(
            "websocket_joined user_id=%s organization_id=%s",
            self._users.get(websocket),
            organization_id,
        )

    async def leave_organization(self, websocket: WebSocket, organization_id: str):
        organization_id = room_key(organization_id)
        members = self._rooms.get(organization_id)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self._rooms[organization_id]
        logger.debug(
            "websocket_left user_id=%s organization_id=%s",
            self._users.get(websocket),
            organization_id,
        )

    def room_size(self, organization_id: str) -> int:
        return len(self._rooms.get(room_key(organization_id), ()))

    async def emit_to_organization(
        self, organization_id: str, event_name: str, payload: dict
    ) -> int:
        """Send an event to every session joined to the organization's room.

        Best effort: with nobody joined the event is dropped.

        Returns:
            Number of local sessions the event was written to.
        """
        organization_id = room_key(organization_id)
        event_data = WebSocketEvent(event=event_name, data=payload).model_dump(mode="json")

        if self._redis_client:
            try:
                relay = json.dumps(
                    {
                        "origin": self.instance_id,
                        "organization_id": organization_id,
                        "event": event_data,
                    }
                )
                await self._redis_client.publish(f"{CHANNEL_PREFIX}{organization_id}", relay)
            except Exception as exc:
                logger.warning("websocket_broadcast_redis_error error=%s", exc)

        delivered = await self._dispatch_to_room(organization_id, event_data)
        FANOUT_EVENTS.labels(
            event=event_name, outcome="delivered" if delivered else "dropped"
        ).inc()
        logger.debug(
            "websocket_emit organization_id=%s event=%s delivered=%d",
            organization_id,
            event_name,
            delivered,
        )
        return delivered

    async def send_event(self, websocket: WebSocket, event: WebSocketEvent):
        await self._send(websocket, event.model_dump(mode="json"))

    async def send_heartbeat(self, websocket: WebSocket):
        """Send heartbeat response to a specific connection."""
        await self.send_event(
            websocket, WebSocketEvent(event=EventType.HEARTBEAT, data={"status": "ok"})
        )
