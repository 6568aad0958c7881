from app.services.platform.base import (  # noqa: F401
    PlatformError,
    PlatformService,
    PlatformSyncError,
    SendMessageResult,
    run_platform_call,
)
from app.services.platform.facebook import FacebookService  # noqa: F401
