from app.models.conversation import (  # noqa: F401
    ContentType,
    Conversation,
    ConversationStatus,
    Message,
    MessageDirection,
    MessageStatus,
)
from app.models.organization import Organization, OrganizationMembership, User  # noqa: F401
from app.models.platform_connection import (  # noqa: F401
    ConnectionStatus,
    Platform,
    PlatformConnection,
)
