from fastapi import Depends, HTTPException, Request

from app.db import get_db
from app.services.auth import require_org_access, require_org_member, require_user_auth
from app.services.inbox import InboxError, OutboundSendError
from app.services.platform import FacebookService, PlatformService


def get_current_user(auth=Depends(require_user_auth)):
    """Get current authenticated user info.

    Returns a dict with user_id.
    """
    return auth


def get_platform_service(request: Request) -> PlatformService:
    service = getattr(request.app.state, "platform_service", None)
    return service if service is not None else FacebookService()


def get_notifier(request: Request):
    """The app's InboxBroadcaster, or None when realtime is not wired."""
    return getattr(request.app.state, "broadcaster", None)


def raise_inbox_error(exc: InboxError):
    if isinstance(exc, OutboundSendError):
        platform_error = exc.platform_error.to_dict() if exc.platform_error else None
        raise HTTPException(
            status_code=exc.status_code,
            detail={
                "code": "platform_send_failed",
                "message": exc.message,
                "details": {
                    "message_id": str(exc.message_id) if exc.message_id else None,
                    "platform_error": platform_error,
                },
            },
        ) from exc
    raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


__all__ = [
    "get_current_user",
    "get_db",
    "get_notifier",
    "get_platform_service",
    "raise_inbox_error",
    "require_org_access",
    "require_org_member",
    "require_user_auth",
]
