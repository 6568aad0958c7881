"""Meta webhook processing service.

Handles incoming webhooks from Facebook (Messenger) and Instagram (DMs):
verifies subscription handshakes and payload signatures, normalizes the
``entry[].messaging[]`` wire format into canonical inbound events, and hands
each event to the inbox upsert engine.

Environment Variables:
    META_APP_SECRET: Required for webhook signature verification
    META_WEBHOOK_VERIFY_TOKEN: Token for webhook verification challenge
"""

import base64
import hashlib
import hmac
import json
from collections.abc import Callable

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.logging import get_logger
from app.metrics import WEBHOOK_EVENTS
from app.models.conversation import ContentType
from app.models.platform_connection import Platform
from app.schemas.meta import (
    InboundEvent,
    MetaMessagingEvent,
    MetaWebhookEntry,
    MetaWebhookPayload,
    ReceiptEvent,
)
from app.services import inbox as inbox_service
from app.services.common import bounded_external_id, parse_platform_timestamp

logger = get_logger(__name__)

SUPPORTED_OBJECTS = {
    "page": Platform.facebook,
    "instagram": Platform.instagram,
}
MEDIA_PLACEHOLDER = "[Media/Attachment]"

_ATTACHMENT_TYPES = {
    "image": ContentType.image,
    "video": ContentType.video,
    "audio": ContentType.audio,
    "file": ContentType.file,
}


class WebhookObjectError(ValueError):
    """The delivery's ``object`` is not one this receiver handles."""

    def __init__(self, object_type: str | None):
        super().__init__(f"Unsupported webhook object: {object_type!r}")
        self.object_type = object_type


class WebhookVerificationError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class SignedRequestError(ValueError):
    pass


def verify_webhook_signature(
    payload_body: bytes,
    signature_header: str | None,
    app_secret: str,
) -> bool:
    """Verify Meta webhook signature (X-Hub-Signature-256).

    Meta signs all webhook payloads with the app secret. This function
    verifies the signature to ensure the webhook is authentic.

    Args:
        payload_body: Raw request body bytes
        signature_header: Value of X-Hub-Signature-256 header
        app_secret: Facebook App Secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature_header or not signature_header.startswith("sha256="):
        logger.warning("webhook_signature_missing_or_invalid")
        return False

    expected_signature = signature_header[7:]
    computed_signature = hmac.new(
        app_secret.encode(),
        payload_body,
        hashlib.sha256,
    ).hexdigest()

    is_valid = hmac.compare_digest(expected_signature, computed_signature)
    if not is_valid:
        logger.warning("webhook_signature_mismatch")
    return is_valid


def verify_subscription(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str | None,
) -> str:
    """Answer the ``hub.*`` verification handshake.

    Returns:
        The challenge to echo back.

    Raises:
        WebhookVerificationError: 400 when parameters are missing, 403 when
            the mode or token does not match.
    """
    if not mode or not token or challenge is None:
        raise WebhookVerificationError(400, "Missing hub.mode, hub.verify_token or hub.challenge")
    if not expected_token:
        logger.error("meta_webhook_verify_token_not_configured")
        raise WebhookVerificationError(403, "Verification failed")
    if mode != "subscribe" or not hmac.compare_digest(token, expected_token):
        logger.warning("meta_webhook_verification_failed mode=%s", mode)
        raise WebhookVerificationError(403, "Verification failed")
    logger.info("meta_webhook_verified")
    return challenge


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def parse_signed_request(signed_request: str | None, app_secret: str | None) -> dict:
    """Decode and verify a Meta ``signed_request`` (deauthorize / data deletion).

    Format is ``<base64url signature>.<base64url JSON payload>``, signed with
    HMAC-SHA256 over the encoded payload.
    """
    if not signed_request or "." not in signed_request:
        raise SignedRequestError("Malformed signed_request")
    if not app_secret:
        raise SignedRequestError("META_APP_SECRET is not configured")
    encoded_sig, encoded_payload = signed_request.split(".", 1)
    try:
        signature = _b64url_decode(encoded_sig)
        data = json.loads(_b64url_decode(encoded_payload))
    except (ValueError, json.JSONDecodeError) as exc:
        raise SignedRequestError("Malformed signed_request") from exc
    expected = hmac.new(
        app_secret.encode(), encoded_payload.encode(), hashlib.sha256
    ).digest()
    if not hmac.compare_digest(signature, expected):
        raise SignedRequestError("Invalid signed_request signature")
    if not isinstance(data, dict):
        raise SignedRequestError("Malformed signed_request payload")
    return data


def platform_for_object(object_type: str | None) -> Platform:
    platform = SUPPORTED_OBJECTS.get(object_type or "")
    if platform is None:
        raise WebhookObjectError(object_type)
    return platform


def _normalize_external_id(
    platform: Platform,
    mid,
    sender_id: str,
    recipient_id: str,
    timestamp,
    text: str,
) -> str:
    external_id = bounded_external_id(mid)
    if external_id:
        return external_id
    # No mid: derive a stable key so redeliveries still collapse
    raw = f"{platform.value}|{sender_id}|{recipient_id}|{timestamp}|{text}"
    return "dedupe:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:40]


def _first_attachment(message: dict) -> tuple[ContentType, str | None]:
    attachments = message.get("attachments") or []
    if not isinstance(attachments, list) or not attachments:
        return ContentType.text, None
    attachment = attachments[0]
    if not isinstance(attachment, dict):
        return ContentType.text, None
    content_type = _ATTACHMENT_TYPES.get(attachment.get("type"), ContentType.file)
    payload = attachment.get("payload")
    url = payload.get("url") if isinstance(payload, dict) else None
    return content_type, url


def _iter_messaging(payload: MetaWebhookPayload):
    for raw_entry in payload.entry:
        try:
            entry = MetaWebhookEntry.model_validate(raw_entry)
        except ValidationError as exc:
            logger.warning("meta_webhook_entry_malformed error=%s", exc.errors()[:1])
            continue
        for raw_event in entry.messaging or []:
            try:
                event = MetaMessagingEvent.model_validate(raw_event)
            except ValidationError as exc:
                logger.warning(
                    "meta_webhook_event_malformed entry_id=%s error=%s",
                    entry.id,
                    exc.errors()[:1],
                )
                continue
            yield entry, event


def _inbound_event(
    platform: Platform, entry: MetaWebhookEntry, messaging_event: MetaMessagingEvent
) -> InboundEvent | None:
    account_id = entry.id
    message = messaging_event.message
    if not message:
        # Delivery/read receipts, postbacks, typing indicators
        return None
    if message.get("is_echo"):
        return None

    sender = messaging_event.sender or {}
    sender_id = sender.get("id")
    if not sender_id:
        logger.warning("meta_webhook_missing_sender account_id=%s", account_id)
        return None
    recipient_id = (messaging_event.recipient or {}).get("id") or account_id
    if sender_id == account_id:
        logger.info(
            "meta_webhook_skip_self account_id=%s sender_id=%s",
            account_id,
            sender_id,
        )
        return None

    content_type, media_url = _first_attachment(message)
    text = message.get("text")
    if not text:
        if content_type == ContentType.text and not media_url:
            return None
        text = MEDIA_PLACEHOLDER

    timestamp = parse_platform_timestamp(messaging_event.timestamp or entry.time)
    if timestamp is None:
        logger.warning(
            "meta_webhook_missing_timestamp account_id=%s mid=%s",
            account_id,
            message.get("mid"),
        )
        return None

    return InboundEvent(
        platform=platform,
        sender_id=sender_id,
        recipient_id=recipient_id,
        message_id=_normalize_external_id(
            platform,
            message.get("mid"),
            sender_id,
            recipient_id,
            messaging_event.timestamp,
            text,
        ),
        text=text,
        timestamp=timestamp,
        content_type=content_type,
        media_url=media_url,
        contact_name=sender.get("name"),
    )


def normalize(raw_payload: dict | MetaWebhookPayload) -> list[InboundEvent]:
    """Turn a webhook delivery into canonical inbound message events.

    Every entry and every messaging event is visited. Receipts, postbacks,
    echoes and events sent by the connected account itself are skipped, as
    are individually malformed events.

    Raises:
        WebhookObjectError: If ``object`` is not ``page`` or ``instagram``.
    """
    payload = (
        raw_payload
        if isinstance(raw_payload, MetaWebhookPayload)
        else MetaWebhookPayload.model_validate(raw_payload)
    )
    platform = platform_for_object(payload.object)
    events: list[InboundEvent] = []

    for entry, messaging_event in _iter_messaging(payload):
        try:
            event = _inbound_event(platform, entry, messaging_event)
        except (ValidationError, TypeError, ValueError, AttributeError) as exc:
            logger.warning(
                "meta_webhook_event_malformed entry_id=%s error=%s", entry.id, exc
            )
            continue
        if event is not None:
            events.append(event)
    return events


def _receipt_event(
    platform: Platform, entry: MetaWebhookEntry, messaging_event: MetaMessagingEvent
) -> ReceiptEvent | None:
    contact_id = (messaging_event.sender or {}).get("id")
    account_id = (messaging_event.recipient or {}).get("id") or entry.id
    if messaging_event.delivery:
        delivery = messaging_event.delivery
        mids = delivery.get("mids") or []
        if not isinstance(mids, list):
            mids = []
        return ReceiptEvent(
            platform=platform,
            kind="delivery",
            account_id=account_id,
            contact_id=contact_id,
            message_ids=[bounded_external_id(mid) for mid in mids if mid],
            watermark=parse_platform_timestamp(delivery.get("watermark")),
        )
    if messaging_event.read:
        read = messaging_event.read
        mid = bounded_external_id(read.get("mid"))
        return ReceiptEvent(
            platform=platform,
            kind="read",
            account_id=account_id,
            contact_id=contact_id,
            message_ids=[mid] if mid else [],
            watermark=parse_platform_timestamp(read.get("watermark")),
        )
    if messaging_event.postback:
        logger.info(
            "meta_webhook_postback_ignored account_id=%s sender_id=%s",
            account_id,
            contact_id,
        )
    return None


def extract_receipts(raw_payload: dict | MetaWebhookPayload) -> list[ReceiptEvent]:
    """Collect delivery and read receipts for messages the connected account sent.

    A receipt with an unparseable watermark keeps its mids and drops the
    watermark; otherwise malformed receipts are skipped individually.
    """
    payload = (
        raw_payload
        if isinstance(raw_payload, MetaWebhookPayload)
        else MetaWebhookPayload.model_validate(raw_payload)
    )
    platform = platform_for_object(payload.object)
    receipts: list[ReceiptEvent] = []

    for entry, messaging_event in _iter_messaging(payload):
        if messaging_event.message:
            continue
        try:
            receipt = _receipt_event(platform, entry, messaging_event)
        except (ValidationError, TypeError, ValueError, AttributeError) as exc:
            logger.warning(
                "meta_webhook_receipt_malformed entry_id=%s error=%s", entry.id, exc
            )
            continue
        if receipt is not None:
            receipts.append(receipt)
    return receipts


def process_webhook(
    db: Session,
    payload: dict | MetaWebhookPayload,
    notifier=None,
    profile_lookup: Callable | None = None,
) -> list[dict]:
    """Process a webhook delivery end to end.

    Each event is ingested in isolation: a failure is rolled back, logged and
    reported in the results, and the remaining events still run.

    Args:
        db: Database session
        payload: Raw JSON body (or an already validated payload)
        notifier: Optional realtime notifier passed to the upsert engine
        profile_lookup: Optional ``(connection, sender_id) -> dict | None``

    Returns:
        List of result dicts with message_id and status

    Raises:
        WebhookObjectError: If the delivery is not a page/instagram object.
    """
    if not isinstance(payload, MetaWebhookPayload):
        payload = MetaWebhookPayload.model_validate(payload)
    events = normalize(payload)
    results: list[dict] = []

    for event in events:
        try:
            result = inbox_service.ingest_inbound_event(
                db, event, notifier=notifier, profile_lookup=profile_lookup
            )
        except Exception as exc:
            db.rollback()
            WEBHOOK_EVENTS.labels(platform=event.platform.value, outcome="failed").inc()
            logger.exception(
                "meta_webhook_event_failed platform=%s account_id=%s mid=%s error=%s",
                event.platform.value,
                event.recipient_id,
                event.message_id,
                exc,
            )
            results.append(
                {"message_id": event.message_id, "status": "failed", "error": str(exc)}
            )
            continue
        WEBHOOK_EVENTS.labels(platform=event.platform.value, outcome=result.outcome).inc()
        results.append(
            {
                "message_id": event.message_id,
                "status": result.outcome,
                "conversation_id": str(result.conversation.id) if result.conversation else None,
            }
        )

    for receipt in extract_receipts(payload):
        try:
            updated = inbox_service.apply_receipt(db, receipt, notifier=notifier)
        except Exception as exc:
            db.rollback()
            logger.exception(
                "meta_webhook_receipt_failed kind=%s account_id=%s error=%s",
                receipt.kind,
                receipt.account_id,
                exc,
            )
            continue
        results.append({"receipt": receipt.kind, "status": "applied", "updated": updated})

    logger.info(
        "meta_webhook_processed object=%s events=%d results=%d",
        payload.object,
        len(events),
        len(results),
    )
    return results
