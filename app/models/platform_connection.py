"""Platform connection model: one linked external account per organization."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class Platform(enum.Enum):
    facebook = "FACEBOOK"
    instagram = "INSTAGRAM"
    whatsapp = "WHATSAPP"
    tiktok = "TIKTOK"


class ConnectionStatus(enum.Enum):
    active = "ACTIVE"
    expired = "EXPIRED"
    error = "ERROR"
    disconnected = "DISCONNECTED"


class PlatformConnection(Base):
    """Links an external platform account (e.g. a Facebook Page) to an organization.

    Attributes:
        platform_user_id: The platform's id for the connected account (Page ID,
            Instagram business account ID). Inbound webhooks carry it as the
            recipient id, so it is the key used to attribute events to a tenant.
        access_token: Opaque credential used for Graph API calls. Only the
            connect flow writes it.
        status: ACTIVE until a send failure or deauthorization moves it.
    """

    __tablename__ = "platform_connections"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "platform",
            "platform_user_id",
            name="uq_platform_connections_org_platform_account",
        ),
        Index("ix_platform_connections_platform_account", "platform", "platform_user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id"), nullable=False
    )
    platform: Mapped[Platform] = mapped_column(Enum(Platform), nullable=False)
    platform_user_id: Mapped[str] = mapped_column(String(120), nullable=False)
    platform_username: Mapped[str | None] = mapped_column(String(255))
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[ConnectionStatus] = mapped_column(
        Enum(ConnectionStatus), default=ConnectionStatus.active
    )
    last_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    organization = relationship("Organization")

    def __repr__(self) -> str:
        return (
            f"<PlatformConnection(id={self.id}, platform={self.platform}, "
            f"platform_user_id={self.platform_user_id}, status={self.status})>"
        )
