"""Create organizations, platform connections, conversations and messages.

Revision ID: a1c3e5f7b9d2
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "a1c3e5f7b9d2"
down_revision = None
branch_labels = None
depends_on = None

# Labels are the Python member names, which is what sqlalchemy.Enum(<EnumClass>) stores
platform_enum = postgresql.ENUM(
    "facebook", "instagram", "whatsapp", "tiktok", name="platform", create_type=False
)
connection_status_enum = postgresql.ENUM(
    "active", "expired", "error", "disconnected", name="connectionstatus", create_type=False
)
conversation_status_enum = postgresql.ENUM(
    "open", "closed", "archived", name="conversationstatus", create_type=False
)
direction_enum = postgresql.ENUM(
    "inbound", "outbound", name="messagedirection", create_type=False
)
content_type_enum = postgresql.ENUM(
    "text", "image", "video", "audio", "file", name="contenttype", create_type=False
)
message_status_enum = postgresql.ENUM(
    "pending", "sent", "delivered", "read", "failed", name="messagestatus", create_type=False
)

_ENUMS = (
    platform_enum,
    connection_status_enum,
    conversation_status_enum,
    direction_enum,
    content_type_enum,
    message_status_enum,
)


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for enum in _ENUMS:
        postgresql.ENUM(*enum.enums, name=enum.name).create(bind, checkfirst=True)

    if "organizations" not in existing_tables:
        op.create_table(
            "organizations",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column("name", sa.String(160), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True)),
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column("email", sa.String(255), nullable=False, unique=True),
            sa.Column("display_name", sa.String(160)),
            sa.Column("is_active", sa.Boolean()),
            sa.Column("created_at", sa.DateTime(timezone=True)),
        )

    if "organization_memberships" not in existing_tables:
        op.create_table(
            "organization_memberships",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column(
                "organization_id", sa.Uuid(), sa.ForeignKey("organizations.id"), nullable=False
            ),
            sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("role", sa.String(40)),
            sa.Column("created_at", sa.DateTime(timezone=True)),
            sa.UniqueConstraint(
                "organization_id", "user_id", name="uq_organization_memberships_org_user"
            ),
        )

    if "platform_connections" not in existing_tables:
        op.create_table(
            "platform_connections",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column(
                "organization_id", sa.Uuid(), sa.ForeignKey("organizations.id"), nullable=False
            ),
            sa.Column("platform", platform_enum, nullable=False),
            sa.Column("platform_user_id", sa.String(120), nullable=False),
            sa.Column("platform_username", sa.String(255)),
            sa.Column("access_token", sa.Text(), nullable=False),
            sa.Column("status", connection_status_enum),
            sa.Column("last_error", sa.Text()),
            sa.Column("created_at", sa.DateTime(timezone=True)),
            sa.Column("updated_at", sa.DateTime(timezone=True)),
            sa.UniqueConstraint(
                "organization_id",
                "platform",
                "platform_user_id",
                name="uq_platform_connections_org_platform_account",
            ),
        )
        op.create_index(
            "ix_platform_connections_platform_account",
            "platform_connections",
            ["platform", "platform_user_id"],
        )

    if "conversations" not in existing_tables:
        op.create_table(
            "conversations",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column(
                "platform_connection_id",
                sa.Uuid(),
                sa.ForeignKey("platform_connections.id"),
                nullable=False,
            ),
            sa.Column(
                "organization_id", sa.Uuid(), sa.ForeignKey("organizations.id"), nullable=False
            ),
            sa.Column("platform", platform_enum, nullable=False),
            sa.Column("external_id", sa.String(255), nullable=False),
            sa.Column("contact_external_id", sa.String(255), nullable=False),
            sa.Column("contact_name", sa.String(255)),
            sa.Column("contact_avatar_url", sa.Text()),
            sa.Column("status", conversation_status_enum),
            sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_message_at", sa.DateTime(timezone=True)),
            sa.Column("last_message_preview", sa.Text()),
            sa.Column("created_at", sa.DateTime(timezone=True)),
            sa.Column("updated_at", sa.DateTime(timezone=True)),
            sa.UniqueConstraint(
                "platform_connection_id",
                "external_id",
                name="uq_conversations_connection_external",
            ),
        )
        op.create_index(
            "ix_conversations_org_last_message",
            "conversations",
            ["organization_id", "last_message_at"],
        )

    if "messages" not in existing_tables:
        op.create_table(
            "messages",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column(
                "conversation_id",
                sa.Uuid(),
                sa.ForeignKey("conversations.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("direction", direction_enum, nullable=False),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("external_id", sa.String(255)),
            sa.Column("content_type", content_type_enum),
            sa.Column("media_url", sa.Text()),
            sa.Column("status", message_status_enum),
            sa.Column("error_message", sa.Text()),
            sa.Column("sent_by_user_id", sa.Uuid(), sa.ForeignKey("users.id")),
            sa.Column("platform_timestamp", sa.DateTime(timezone=True)),
            sa.Column("created_at", sa.DateTime(timezone=True)),
            sa.UniqueConstraint(
                "conversation_id", "external_id", name="uq_messages_conversation_external"
            ),
        )
        op.create_index(
            "ix_messages_conversation_created",
            "messages",
            ["conversation_id", "created_at"],
        )


def downgrade() -> None:
    op.drop_index("ix_messages_conversation_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_org_last_message", table_name="conversations")
    op.drop_table("conversations")
    op.drop_index(
        "ix_platform_connections_platform_account", table_name="platform_connections"
    )
    op.drop_table("platform_connections")
    op.drop_table("organization_memberships")
    op.drop_table("users")
    op.drop_table("organizations")
    bind = op.get_bind()
    for enum in reversed(_ENUMS):
        postgresql.ENUM(*enum.enums, name=enum.name).drop(bind, checkfirst=True)
