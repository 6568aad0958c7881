import json
import time

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.api.deps import (
    get_current_user,
    get_db,
    get_notifier,
    get_platform_service,
    require_org_member,
)
from app.config import settings
from app.logging import get_logger
from app.schemas.inbox import PlatformConnectionRead
from app.schemas.meta import ConnectPageRequest, MetaWebhookPayload
from app.services import connection_registry
from app.services import meta_webhooks as meta_webhooks_service

logger = get_logger(__name__)

router = APIRouter(prefix="/meta", tags=["meta"])


@router.get("/webhook", response_class=PlainTextResponse)
def verify_webhook(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    try:
        return meta_webhooks_service.verify_subscription(
            hub_mode, hub_verify_token, hub_challenge, settings.meta_webhook_verify_token
        )
    except meta_webhooks_service.WebhookVerificationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.post("/webhook", response_class=PlainTextResponse)
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier),
    platform_service=Depends(get_platform_service),
):
    """Receive Messenger / Instagram deliveries.

    Answers 200 ``EVENT_RECEIVED`` once every event has been attempted;
    individual event failures never change the response.
    """
    body = await request.body()
    if settings.meta_app_secret:
        valid = meta_webhooks_service.verify_webhook_signature(
            body,
            request.headers.get("X-Hub-Signature-256"),
            settings.meta_app_secret,
        )
        if not valid and settings.meta_enforce_signature:
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = MetaWebhookPayload.model_validate(json.loads(body or b"{}"))
    except (ValueError, ValidationError) as exc:
        logger.warning("meta_webhook_malformed_body error=%s", exc)
        raise HTTPException(status_code=400, detail="Malformed webhook payload") from exc

    if payload.object not in meta_webhooks_service.SUPPORTED_OBJECTS:
        logger.info("meta_webhook_unsupported_object object=%s", payload.object)
        raise HTTPException(status_code=404, detail="Unsupported webhook object")

    profile_lookup = platform_service.fetch_profile if settings.meta_fetch_profiles else None
    await run_in_threadpool(
        meta_webhooks_service.process_webhook,
        db,
        payload,
        notifier,
        profile_lookup,
    )
    return "EVENT_RECEIVED"


@router.post("/connect-page", response_model=list[PlatformConnectionRead])
def connect_page(
    payload: ConnectPageRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    require_org_member(db, current_user, payload.organization_id)
    return connection_registry.connect_page(
        db,
        payload.organization_id,
        payload.page_id,
        payload.page_access_token,
        payload.page_name,
        payload.instagram_id,
    )


def _signed_request_user(signed_request: str) -> str:
    try:
        data = meta_webhooks_service.parse_signed_request(
            signed_request, settings.meta_app_secret
        )
    except meta_webhooks_service.SignedRequestError as exc:
        logger.warning("meta_signed_request_rejected error=%s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    user_id = data.get("user_id")
    if not user_id:
        raise HTTPException(status_code=400, detail="signed_request has no user_id")
    return str(user_id)


@router.post("/deauthorize")
def deauthorize(signed_request: str = Form(...), db: Session = Depends(get_db)):
    user_id = _signed_request_user(signed_request)
    count = connection_registry.disconnect_platform_user(db, [user_id])
    logger.info("meta_deauthorized user_id=%s connections=%d", user_id, count)
    return {"success": True}


@router.post("/deletion")
def data_deletion(signed_request: str = Form(...), db: Session = Depends(get_db)):
    user_id = _signed_request_user(signed_request)
    connection_registry.disconnect_platform_user(db, [user_id])
    confirmation_code = f"del_{user_id}_{int(time.time())}"
    logger.info("meta_data_deletion_requested user_id=%s code=%s", user_id, confirmation_code)
    return {
        "url": f"{settings.frontend_url.rstrip('/')}/privacy-policy",
        "confirmation_code": confirmation_code,
    }
