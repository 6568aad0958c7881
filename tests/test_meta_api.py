"""Tests for the Meta webhook and page connection routes."""

import base64
import hashlib
import hmac
import json

import pytest
from sqlalchemy import func, select

import app.api.meta as meta_api
from app.models.conversation import Conversation, Message
from app.models.platform_connection import ConnectionStatus, Platform, PlatformConnection
from app.services import meta_webhooks
from app.services.auth import issue_access_token
from tests.mocks import PAGE_ID

WEBHOOK_URL = "/api/v1/meta/webhook"


@pytest.fixture()
def meta_settings(monkeypatch):
    def _apply(**values):
        monkeypatch.setattr(meta_api, "settings", meta_api.settings.model_copy(update=values))

    return _apply


def _delivery(object_type="page", mid="m1", sender="u1"):
    return {
        "object": object_type,
        "entry": [
            {
                "id": PAGE_ID,
                "time": 1700000000000,
                "messaging": [
                    {
                        "sender": {"id": sender},
                        "recipient": {"id": PAGE_ID},
                        "timestamp": 1700000000000,
                        "message": {"mid": mid, "text": "hello"},
                    }
                ],
            }
        ],
    }


def _signed_request(data: dict, secret: str) -> str:
    encoded_payload = base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()
    signature = hmac.new(secret.encode(), encoded_payload.encode(), hashlib.sha256).digest()
    encoded_sig = base64.urlsafe_b64encode(signature).rstrip(b"=").decode()
    return f"{encoded_sig}.{encoded_payload}"


def _count(db_session, model) -> int:
    return db_session.scalar(select(func.count()).select_from(model))


# =============================================================================
# Verification Handshake
# =============================================================================


def test_verify_webhook_returns_challenge(client, meta_settings):
    meta_settings(meta_webhook_verify_token="verify-me")

    response = client.get(
        WEBHOOK_URL,
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"},
    )

    assert response.status_code == 200
    assert response.text == "1158201444"


def test_verify_webhook_wrong_token_is_403(client, meta_settings):
    meta_settings(meta_webhook_verify_token="verify-me")

    response = client.get(
        WEBHOOK_URL,
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"},
    )

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "http_403"
    assert body["request_id"]


def test_verify_webhook_missing_params_is_400(client, meta_settings):
    meta_settings(meta_webhook_verify_token="verify-me")

    assert client.get(WEBHOOK_URL).status_code == 400


# =============================================================================
# Delivery
# =============================================================================


def test_receive_webhook_ingests_message(client, db_session, connection, meta_settings):
    meta_settings(meta_app_secret=None)

    response = client.post(WEBHOOK_URL, json=_delivery())

    assert response.status_code == 200
    assert response.text == "EVENT_RECEIVED"
    conversation = db_session.scalars(select(Conversation)).one()
    assert conversation.external_id == "u1"
    assert conversation.unread_count == 1


def test_receive_webhook_redelivery_keeps_counts(client, db_session, connection, meta_settings):
    meta_settings(meta_app_secret=None)

    client.post(WEBHOOK_URL, json=_delivery())
    response = client.post(WEBHOOK_URL, json=_delivery())

    assert response.status_code == 200
    assert _count(db_session, Conversation) == 1
    assert _count(db_session, Message) == 1


def test_receive_webhook_unsupported_object_is_404(client, db_session, meta_settings):
    meta_settings(meta_app_secret=None)

    response = client.post(WEBHOOK_URL, json=_delivery(object_type="whatsapp_business_account"))

    assert response.status_code == 404
    assert _count(db_session, Conversation) == 0


def test_receive_webhook_malformed_body_is_400(client, meta_settings):
    meta_settings(meta_app_secret=None)

    response = client.post(
        WEBHOOK_URL, content=b"{not json", headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 400


def test_receive_webhook_event_failure_still_acknowledged(
    client, db_session, connection, meta_settings, monkeypatch
):
    meta_settings(meta_app_secret=None)

    def _boom(*args, **kwargs):
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(meta_webhooks.inbox_service, "ingest_inbound_event", _boom)

    response = client.post(WEBHOOK_URL, json=_delivery())

    assert response.status_code == 200
    assert response.text == "EVENT_RECEIVED"


def test_receive_webhook_malformed_sibling_still_acknowledged(
    client, db_session, connection, meta_settings
):
    meta_settings(meta_app_secret=None)
    payload = _delivery(mid="m_ok")
    payload["entry"][0]["messaging"].append(
        {
            "sender": {"id": 12345},
            "recipient": {"id": PAGE_ID},
            "timestamp": 1700000000000,
            "message": {"mid": "m_bad", "text": "hi"},
        }
    )
    payload["entry"][0]["messaging"].append(
        {
            "sender": {"id": "u1"},
            "recipient": {"id": PAGE_ID},
            "delivery": {"mids": ["m_out"], "watermark": "abc"},
        }
    )

    response = client.post(WEBHOOK_URL, json=payload)

    assert response.status_code == 200
    assert response.text == "EVENT_RECEIVED"
    assert _count(db_session, Message) == 1


def test_receive_webhook_enforced_signature(client, db_session, connection, meta_settings):
    meta_settings(meta_app_secret="app-secret", meta_enforce_signature=True)
    body = json.dumps(_delivery()).encode()
    good = "sha256=" + hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

    rejected = client.post(
        WEBHOOK_URL,
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=bad"},
    )
    accepted = client.post(
        WEBHOOK_URL,
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": good},
    )

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    assert _count(db_session, Message) == 1


def test_receive_webhook_unenforced_signature_is_logged_only(
    client, db_session, connection, meta_settings
):
    meta_settings(meta_app_secret="app-secret", meta_enforce_signature=False)

    response = client.post(WEBHOOK_URL, json=_delivery())

    assert response.status_code == 200
    assert _count(db_session, Message) == 1


# =============================================================================
# Page Connection and Meta Callbacks
# =============================================================================


def test_connect_page_links_facebook_and_instagram(
    client, db_session, organization, membership, auth_headers
):
    response = client.post(
        "/api/v1/meta/connect-page",
        json={
            "organization_id": str(organization.id),
            "page_id": PAGE_ID,
            "page_access_token": "long-lived-page-token",
            "page_name": "Acme Page",
            "instagram_id": "17841400000000001",
        },
        headers=auth_headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert [item["platform"] for item in body] == ["FACEBOOK", "INSTAGRAM"]
    assert all(item["status"] == "ACTIVE" for item in body)
    assert "access_token" not in body[0]
    stored = db_session.scalars(
        select(PlatformConnection).where(PlatformConnection.platform == Platform.facebook)
    ).one()
    assert stored.access_token == "long-lived-page-token"


def test_connect_page_requires_membership(client, organization, outsider):
    headers = {"Authorization": f"Bearer {issue_access_token(outsider.id)}"}

    response = client.post(
        "/api/v1/meta/connect-page",
        json={
            "organization_id": str(organization.id),
            "page_id": PAGE_ID,
            "page_access_token": "token",
            "page_name": "Acme Page",
        },
        headers=headers,
    )

    assert response.status_code == 403


def test_connect_page_requires_auth(client, organization):
    response = client.post(
        "/api/v1/meta/connect-page",
        json={
            "organization_id": str(organization.id),
            "page_id": PAGE_ID,
            "page_access_token": "token",
            "page_name": "Acme Page",
        },
    )

    assert response.status_code == 401


def test_deauthorize_disconnects_connection(client, db_session, connection, meta_settings):
    meta_settings(meta_app_secret="app-secret")
    signed = _signed_request({"user_id": PAGE_ID, "algorithm": "HMAC-SHA256"}, "app-secret")

    response = client.post("/api/v1/meta/deauthorize", data={"signed_request": signed})

    assert response.status_code == 200
    assert response.json() == {"success": True}
    db_session.refresh(connection)
    assert connection.status == ConnectionStatus.disconnected


def test_deauthorize_rejects_bad_signature(client, db_session, connection, meta_settings):
    meta_settings(meta_app_secret="app-secret")
    signed = _signed_request({"user_id": PAGE_ID}, "wrong-secret")

    response = client.post("/api/v1/meta/deauthorize", data={"signed_request": signed})

    assert response.status_code == 400
    db_session.refresh(connection)
    assert connection.status == ConnectionStatus.active


def test_data_deletion_returns_confirmation(client, meta_settings):
    meta_settings(meta_app_secret="app-secret", frontend_url="https://inbox.example.com/")
    signed = _signed_request({"user_id": "555"}, "app-secret")

    response = client.post("/api/v1/meta/deletion", data={"signed_request": signed})

    assert response.status_code == 200
    body = response.json()
    assert body["url"] == "https://inbox.example.com/privacy-policy"
    assert body["confirmation_code"].startswith("del_555_")
