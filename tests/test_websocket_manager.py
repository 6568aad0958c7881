"""Tests for the realtime connection manager and broadcaster."""

import asyncio
import json

import pytest

from app.websocket.broadcaster import InboxBroadcaster
from app.websocket.manager import CHANNEL_PREFIX, ConnectionManager
from tests.mocks import FakeRedis, FakeWebSocket

ORG_A = "0b7f6d6e-3a51-4f61-9f1c-8f7f0d9e2a11"
ORG_B = "5c2e8a90-17d4-4b8e-a6a3-2d9b1f0c4e22"


async def _joined(manager, organization_id, user_id="user-1", **kwargs):
    websocket = FakeWebSocket(**kwargs)
    await manager.register_connection(user_id, websocket)
    await manager.join_organization(websocket, organization_id)
    return websocket


@pytest.mark.asyncio
async def test_register_connection_sends_ack():
    manager = ConnectionManager()
    websocket = FakeWebSocket()

    await manager.register_connection("user-1", websocket)

    ack = websocket.events("connection_ack")
    assert ack[0]["data"] == {"user_id": "user-1", "status": "connected"}


@pytest.mark.asyncio
async def test_emit_reaches_only_joined_organization():
    manager = ConnectionManager()
    in_room = await _joined(manager, ORG_A)
    other_room = await _joined(manager, ORG_B, user_id="user-2")

    delivered = await manager.emit_to_organization(
        ORG_A, "new_message", {"conversationId": "c1"}
    )

    assert delivered == 1
    assert in_room.events("new_message")[0]["data"] == {"conversationId": "c1"}
    assert other_room.events("new_message") == []


@pytest.mark.asyncio
async def test_emit_to_empty_room_is_dropped():
    manager = ConnectionManager()

    assert await manager.emit_to_organization(ORG_A, "new_message", {}) == 0


@pytest.mark.asyncio
async def test_room_key_ignores_uuid_spelling():
    manager = ConnectionManager()
    upper = await _joined(manager, ORG_A.upper())
    compact = await _joined(manager, ORG_A.replace("-", ""), user_id="user-2")

    delivered = await manager.emit_to_organization(ORG_A, "new_message", {"n": 1})

    assert delivered == 2
    assert len(upper.events("new_message")) == 1
    assert len(compact.events("new_message")) == 1
    assert manager.room_size(ORG_A.upper()) == 2

    await manager.leave_organization(upper, ORG_A.upper())
    assert manager.room_size(ORG_A) == 1


@pytest.mark.asyncio
async def test_dead_socket_is_pruned_without_affecting_others():
    manager = ConnectionManager()
    healthy = await _joined(manager, ORG_A)
    await manager.join_organization(FakeWebSocket(should_fail=True), ORG_A)
    assert manager.room_size(ORG_A) == 2

    delivered = await manager.emit_to_organization(ORG_A, "new_message", {"n": 1})

    assert delivered == 1
    assert len(healthy.events("new_message")) == 1
    assert manager.room_size(ORG_A) == 1


@pytest.mark.asyncio
async def test_leave_and_unregister_remove_session():
    manager = ConnectionManager()
    first = await _joined(manager, ORG_A)
    second = await _joined(manager, ORG_A, user_id="user-2")

    await manager.leave_organization(first, ORG_A)
    assert manager.room_size(ORG_A) == 1

    await manager.unregister_connection(second)
    assert manager.room_size(ORG_A) == 0


@pytest.mark.asyncio
async def test_emit_publishes_to_relay_with_origin():
    manager = ConnectionManager()
    manager._redis_client = FakeRedis()

    await manager.emit_to_organization(ORG_A, "message_status", {"status": "SENT"})

    channel, raw = manager._redis_client.published[0]
    assert channel == f"{CHANNEL_PREFIX}{ORG_A}"
    relayed = json.loads(raw)
    assert relayed["origin"] == manager.instance_id
    assert relayed["organization_id"] == ORG_A
    assert relayed["event"]["event"] == "message_status"


@pytest.mark.asyncio
async def test_relay_failure_still_delivers_locally():
    manager = ConnectionManager()
    manager._redis_client = FakeRedis(should_fail=True)
    websocket = await _joined(manager, ORG_A)

    assert await manager.emit_to_organization(ORG_A, "new_message", {}) == 1
    assert len(websocket.events("new_message")) == 1


@pytest.mark.asyncio
async def test_relayed_message_from_own_instance_is_skipped():
    manager = ConnectionManager()
    websocket = await _joined(manager, ORG_A)
    event = {"event": "new_message", "data": {"conversationId": "c1"}}

    await manager._handle_redis_message(
        json.dumps({"origin": manager.instance_id, "organization_id": ORG_A, "event": event})
    )
    assert websocket.events("new_message") == []

    await manager._handle_redis_message(
        json.dumps({"origin": "another-instance", "organization_id": ORG_A, "event": event})
    )
    assert websocket.events("new_message") == [event]


@pytest.mark.asyncio
async def test_broadcaster_emits_from_loop_thread():
    manager = ConnectionManager()
    await manager.connect()
    websocket = await _joined(manager, ORG_A)
    broadcaster = InboxBroadcaster(manager)

    broadcaster.emit_to_organization(ORG_A, "conversation_read", {"unreadCount": 0})
    for _ in range(5):
        await asyncio.sleep(0)

    assert websocket.events("conversation_read")[0]["data"] == {"unreadCount": 0}
    await manager.disconnect()


@pytest.mark.asyncio
async def test_broadcaster_emits_from_worker_thread():
    manager = ConnectionManager()
    await manager.connect()
    websocket = await _joined(manager, ORG_A)
    broadcaster = InboxBroadcaster(manager)

    await asyncio.to_thread(
        broadcaster.emit_to_organization, ORG_A, "new_message", {"conversationId": "c1"}
    )
    for _ in range(20):
        if websocket.events("new_message"):
            break
        await asyncio.sleep(0.01)

    assert websocket.events("new_message")[0]["data"] == {"conversationId": "c1"}
    await manager.disconnect()


def test_broadcaster_without_running_manager_is_noop():
    broadcaster = InboxBroadcaster(ConnectionManager())

    broadcaster.emit_to_organization(ORG_A, "new_message", {})
