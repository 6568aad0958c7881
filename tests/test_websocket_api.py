"""Tests for the /ws/inbox realtime endpoint."""

import pytest
from starlette.websockets import WebSocketDisconnect

import app.api.meta as meta_api
from app.services.auth import issue_access_token
from tests.mocks import PAGE_ID


def _delivery(mid="m1"):
    return {
        "object": "page",
        "entry": [
            {
                "id": PAGE_ID,
                "messaging": [
                    {
                        "sender": {"id": "u1"},
                        "recipient": {"id": PAGE_ID},
                        "timestamp": 1700000000000,
                        "message": {"mid": mid, "text": "hello"},
                    }
                ],
            }
        ],
    }


@pytest.fixture()
def unsigned_webhooks(monkeypatch):
    monkeypatch.setattr(
        meta_api, "settings", meta_api.settings.model_copy(update={"meta_app_secret": None})
    )


def _connect(client, user):
    return client.websocket_connect(f"/ws/inbox?token={issue_access_token(user.id)}")


def test_connect_without_token_is_closed(client):
    with client.websocket_connect("/ws/inbox") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()

    assert exc_info.value.code == 4001


def test_connect_with_invalid_token_is_closed(client):
    with client.websocket_connect("/ws/inbox?token=garbage") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()

    assert exc_info.value.code == 4001


def test_connect_join_and_ping(client, user, organization, membership):
    with _connect(client, user) as websocket:
        ack = websocket.receive_json()
        assert ack["event"] == "connection_ack"
        assert ack["data"]["user_id"] == str(user.id)

        websocket.send_json({"type": "join_organization", "organizationId": str(organization.id)})
        joined = websocket.receive_json()
        assert joined["event"] == "joined"
        assert joined["data"] == {"organization_id": str(organization.id)}
        assert client.app.state.connection_manager.room_size(str(organization.id)) == 1

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json()["event"] == "heartbeat"

        websocket.send_json({"type": "leave_organization", "organization_id": str(organization.id)})
        assert websocket.receive_json()["event"] == "left"
        assert client.app.state.connection_manager.room_size(str(organization.id)) == 0


def test_join_foreign_organization_is_denied(client, user, membership, other_organization):
    with _connect(client, user) as websocket:
        websocket.receive_json()

        websocket.send_json(
            {"type": "join_organization", "organizationId": str(other_organization.id)}
        )
        denied = websocket.receive_json()

        assert denied["event"] == "join_denied"
        assert denied["data"]["reason"] == "not_a_member"
        assert client.app.state.connection_manager.room_size(str(other_organization.id)) == 0


def test_invalid_client_messages_get_error_event(client, user, membership):
    with _connect(client, user) as websocket:
        websocket.receive_json()

        websocket.send_text("{not json")
        assert websocket.receive_json()["event"] == "error"

        websocket.send_json({"type": "join_organization"})
        error = websocket.receive_json()
        assert error["event"] == "error"
        assert error["data"]["message"] == "organization_id required"


def test_webhook_message_reaches_joined_session_only(
    client, user, organization, membership, outsider, other_organization, connection,
    unsigned_webhooks,
):
    with _connect(client, user) as member_ws, _connect(client, outsider) as outsider_ws:
        member_ws.receive_json()
        outsider_ws.receive_json()
        member_ws.send_json({"type": "join_organization", "organizationId": str(organization.id)})
        assert member_ws.receive_json()["event"] == "joined"
        outsider_ws.send_json(
            {"type": "join_organization", "organizationId": str(other_organization.id)}
        )
        assert outsider_ws.receive_json()["event"] == "joined"

        response = client.post("/api/v1/meta/webhook", json=_delivery())
        assert response.status_code == 200

        event = member_ws.receive_json()
        assert event["event"] == "new_message"
        assert event["data"]["message"]["external_id"] == "m1"
        assert event["data"]["conversation"]["organization_id"] == str(organization.id)
        assert event["data"]["conversationId"] == event["data"]["conversation"]["id"]

        outsider_ws.send_json({"type": "ping"})
        assert outsider_ws.receive_json()["event"] == "heartbeat"


def test_join_with_uppercase_id_still_receives_events(
    client, user, organization, membership, connection, unsigned_webhooks
):
    with _connect(client, user) as websocket:
        websocket.receive_json()
        websocket.send_json(
            {"type": "join_organization", "organizationId": str(organization.id).upper()}
        )
        joined = websocket.receive_json()
        assert joined["event"] == "joined"
        assert joined["data"] == {"organization_id": str(organization.id)}

        response = client.post("/api/v1/meta/webhook", json=_delivery())
        assert response.status_code == 200

        event = websocket.receive_json()
        assert event["event"] == "new_message"
        assert event["data"]["message"]["external_id"] == "m1"


def test_reply_sent_over_rest_reaches_joined_session(
    client, user, organization, membership, connection, auth_headers, unsigned_webhooks
):
    client.post("/api/v1/meta/webhook", json=_delivery())
    conversation_id = client.get(
        f"/api/v1/organizations/{organization.id}/conversations", headers=auth_headers
    ).json()["items"][0]["id"]

    with _connect(client, user) as websocket:
        websocket.receive_json()
        websocket.send_json({"type": "join_organization", "organizationId": str(organization.id)})
        assert websocket.receive_json()["event"] == "joined"

        response = client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            json={"content": "Thanks!"},
            headers=auth_headers,
        )
        assert response.status_code == 201

        event = websocket.receive_json()
        assert event["event"] == "message_status"
        assert event["data"]["status"] == "SENT"
        assert event["data"]["conversationId"] == conversation_id
