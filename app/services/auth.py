"""Bearer credential resolution and organization membership checks.

Tokens are HS256 JWTs issued elsewhere; the subject (``sub`` or the legacy
``userId`` claim) names a user. A valid token does not imply access to any
organization: every org-scoped surface checks membership explicitly.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, cast

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db
from app.models.organization import OrganizationMembership
from app.services.common import try_coerce_uuid


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def decode_access_token(token: str) -> dict:
    try:
        payload = cast(
            dict[Any, Any],
            jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]),
        )
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    if payload.get("typ") not in (None, "access"):
        raise HTTPException(status_code=401, detail="Invalid token type")
    return payload


def user_id_from_token(token: str) -> str:
    payload = decode_access_token(token)
    user_id = payload.get("sub") or payload.get("userId")
    if not user_id or try_coerce_uuid(user_id) is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return str(user_id)


def issue_access_token(user_id, expires_in: timedelta = timedelta(hours=1)) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "typ": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def is_member(db: Session, user_id, organization_id) -> bool:
    user_uuid = try_coerce_uuid(user_id)
    org_uuid = try_coerce_uuid(organization_id)
    if user_uuid is None or org_uuid is None:
        return False
    membership = db.scalars(
        select(OrganizationMembership.id)
        .where(OrganizationMembership.user_id == user_uuid)
        .where(OrganizationMembership.organization_id == org_uuid)
        .limit(1)
    ).first()
    return membership is not None


def require_user_auth(
    request: Request,
    authorization: str | None = Header(default=None),
) -> dict:
    token = extract_bearer_token(authorization)
    if not token:
        token = request.query_params.get("token")
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return {"user_id": user_id_from_token(token)}


def require_org_member(db: Session, current_user: dict, organization_id) -> None:
    if not is_member(db, current_user.get("user_id"), organization_id):
        raise HTTPException(status_code=403, detail="Not a member of this organization")


def require_org_access(
    organization_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_user_auth),
) -> dict:
    """Dependency for ``/organizations/{organization_id}/...`` routes."""
    require_org_member(db, current_user, organization_id)
    return current_user
