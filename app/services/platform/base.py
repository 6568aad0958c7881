"""Platform service contract shared by every messaging integration."""

from __future__ import annotations

import asyncio
import concurrent.futures
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

if TYPE_CHECKING:
    from app.models.platform_connection import PlatformConnection

# Graph API OAuthException codes meaning the stored token is no longer usable
_TOKEN_ERROR_CODES = {102, 190}

T = TypeVar("T")


class PlatformError(Exception):
    """Raised when a platform API call fails (HTTP error, bad payload, timeout)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: int | None = None,
        subcode: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.subcode = subcode

    @property
    def is_token_error(self) -> bool:
        return self.code in _TOKEN_ERROR_CODES or self.status_code == 401

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "status_code": self.status_code,
            "code": self.code,
            "subcode": self.subcode,
        }


class PlatformSyncError(PlatformError):
    """A paged fetch failed part-way; ``partial`` holds what was fetched before."""

    def __init__(self, message: str, *, partial: list[dict] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.partial = partial or []


@dataclass
class SendMessageResult:
    external_id: str | None
    recipient_id: str | None = None
    raw: dict = field(default_factory=dict)


class PlatformService(Protocol):
    async def send_message(
        self, connection: PlatformConnection, recipient_id: str, content: str
    ) -> SendMessageResult:
        """Send ``content`` to ``recipient_id`` from the connected account."""

    async def sync_conversations(self, connection: PlatformConnection) -> list[dict]:
        """Return raw conversation threads (latest message + participants)."""

    async def get_message_history(
        self, connection: PlatformConnection, thread_id: str
    ) -> list[dict]:
        """Return raw messages for one thread, newest first."""

    def fetch_profile(self, connection: PlatformConnection, user_id: str) -> dict | None:
        """Return ``{"name", "avatar_url"}`` for a contact, or None."""


def run_platform_call(coro: Coroutine[Any, Any, T]) -> T:
    """Run a platform coroutine to completion from synchronous service code.

    Database work stays on the calling (threadpool or worker) thread; only
    the HTTP coroutine gets an event loop. Called from a thread that already
    runs a loop, the coroutine executes on a dedicated thread instead.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(lambda: asyncio.run(coro))
        return future.result()
