"""Connection registry.

Maps an external platform account (Page ID, Instagram business account ID)
to the owning organization and its stored access credential. Every inbound
webhook event is attributed to a tenant through ``resolve_connection``.
"""

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.logging import get_logger
from app.models.platform_connection import ConnectionStatus, Platform, PlatformConnection
from app.services.common import coerce_uuid

logger = get_logger(__name__)


def resolve_connection(
    db: Session,
    platform: Platform,
    external_account_id: str | None,
) -> PlatformConnection | None:
    """Find the connection that owns ``external_account_id`` on ``platform``.

    Returns None when the account is not linked to any organization (or was
    disconnected); callers treat that as an unattributable event.
    """
    if not external_account_id:
        return None
    return db.scalars(
        select(PlatformConnection)
        .where(PlatformConnection.platform == platform)
        .where(PlatformConnection.platform_user_id == external_account_id)
        .where(PlatformConnection.status != ConnectionStatus.disconnected)
        .order_by(PlatformConnection.updated_at.desc())
        .limit(1)
    ).first()


def get_connection(db: Session, connection_id) -> PlatformConnection | None:
    return db.get(PlatformConnection, coerce_uuid(connection_id))


def list_active_connections(
    db: Session,
    organization_id=None,
    platforms: set[Platform] | None = None,
) -> list[PlatformConnection]:
    stmt = select(PlatformConnection).where(
        PlatformConnection.status == ConnectionStatus.active
    )
    if organization_id is not None:
        stmt = stmt.where(PlatformConnection.organization_id == coerce_uuid(organization_id))
    if platforms:
        stmt = stmt.where(PlatformConnection.platform.in_(platforms))
    return list(db.scalars(stmt.order_by(PlatformConnection.created_at)).all())


def _upsert_connection(
    db: Session,
    organization_id,
    platform: Platform,
    platform_user_id: str,
    access_token: str,
    platform_username: str | None,
) -> PlatformConnection:
    connection = db.scalars(
        select(PlatformConnection)
        .where(PlatformConnection.organization_id == organization_id)
        .where(PlatformConnection.platform == platform)
        .where(PlatformConnection.platform_user_id == platform_user_id)
    ).first()
    if connection is None:
        connection = PlatformConnection(
            organization_id=organization_id,
            platform=platform,
            platform_user_id=platform_user_id,
        )
        db.add(connection)
    connection.access_token = access_token
    if platform_username:
        connection.platform_username = platform_username
    connection.status = ConnectionStatus.active
    connection.last_error = None
    connection.updated_at = datetime.now(timezone.utc)
    return connection


def connect_page(
    db: Session,
    organization_id,
    page_id: str,
    page_access_token: str,
    page_name: str,
    instagram_id: str | None = None,
) -> list[PlatformConnection]:
    """Link a Facebook Page (and optionally its Instagram account) to an organization.

    Re-connecting an existing page refreshes the token and reactivates it.

    Returns:
        The Facebook connection, followed by the Instagram one when linked.
    """
    org_id = coerce_uuid(organization_id)
    connections = [
        _upsert_connection(
            db, org_id, Platform.facebook, page_id, page_access_token, page_name
        )
    ]
    if instagram_id:
        connections.append(
            _upsert_connection(
                db,
                org_id,
                Platform.instagram,
                instagram_id,
                page_access_token,
                f"{page_name} (Instagram)",
            )
        )
    db.commit()
    for connection in connections:
        db.refresh(connection)
    logger.info(
        "platform_page_connected organization_id=%s page_id=%s instagram_id=%s",
        org_id,
        page_id,
        instagram_id,
    )
    return connections


def mark_connection_status(
    db: Session,
    connection: PlatformConnection,
    status: ConnectionStatus,
    error: str | None = None,
) -> PlatformConnection:
    connection.status = status
    connection.last_error = error[:500] if error else None
    db.commit()
    db.refresh(connection)
    logger.info(
        "platform_connection_status_changed connection_id=%s status=%s",
        connection.id,
        status.value,
    )
    return connection


def disconnect_platform_user(db: Session, platform_user_ids: list[str]) -> int:
    """Mark every connection for the given external accounts DISCONNECTED."""
    if not platform_user_ids:
        return 0
    connections = db.scalars(
        select(PlatformConnection)
        .where(PlatformConnection.platform_user_id.in_(platform_user_ids))
        .where(PlatformConnection.status != ConnectionStatus.disconnected)
    ).all()
    for connection in connections:
        connection.status = ConnectionStatus.disconnected
    db.commit()
    logger.info(
        "platform_connections_disconnected accounts=%s count=%d",
        platform_user_ids,
        len(connections),
    )
    return len(connections)
