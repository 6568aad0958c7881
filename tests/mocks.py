"""Mock utilities for testing external dependencies."""

import asyncio
from typing import Any

from starlette.websockets import WebSocketState

from app.services.platform.base import PlatformError, SendMessageResult

PAGE_ID = "103231445946962"


class FakeHTTPXResponse:
    """Mock httpx response for Graph API tests."""

    def __init__(
        self,
        json_data: Any = None,
        status_code: int = 200,
        headers: dict | None = None,
    ):
        self._json_data = json_data if json_data is not None else {}
        self.status_code = status_code
        self.headers = headers or {}

    @property
    def text(self) -> str:
        return str(self._json_data)

    def json(self) -> Any:
        if isinstance(self._json_data, Exception):
            raise self._json_data
        return self._json_data


class FakePlatformService:
    """In-memory stand-in for the Graph API platform client."""

    def __init__(
        self,
        threads: list[dict] | None = None,
        history: dict[str, list[dict]] | None = None,
        profiles: dict[str, dict] | None = None,
    ):
        self.threads = threads or []
        self.history = history or {}
        self.profiles = profiles or {}
        self.send_error: PlatformError | None = None
        self.sync_error: PlatformError | None = None
        self.send_delay: float = 0
        self.next_message_id = "m_sent_1"
        self.sent: list[tuple[str, str]] = []
        self.profile_calls: list[str] = []
        self.call_loops: list[asyncio.AbstractEventLoop] = []

    async def send_message(self, connection, recipient_id: str, content: str):
        self.call_loops.append(asyncio.get_running_loop())
        self.sent.append((recipient_id, content))
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error is not None:
            raise self.send_error
        return SendMessageResult(
            external_id=self.next_message_id,
            recipient_id=recipient_id,
            raw={"message_id": self.next_message_id, "recipient_id": recipient_id},
        )

    async def sync_conversations(self, connection) -> list[dict]:
        self.call_loops.append(asyncio.get_running_loop())
        if self.sync_error is not None:
            raise self.sync_error
        return list(self.threads)

    async def get_message_history(self, connection, thread_id: str) -> list[dict]:
        return list(self.history.get(thread_id, []))

    def fetch_profile(self, connection, user_id: str) -> dict | None:
        self.profile_calls.append(user_id)
        return self.profiles.get(user_id)


class RecordingNotifier:
    """Collects realtime emissions instead of delivering them."""

    def __init__(self, should_fail: bool = False):
        self.should_fail = should_fail
        self.events: list[tuple[str, str, dict]] = []

    def emit_to_organization(self, organization_id: str, event_name: str, payload: dict):
        if self.should_fail:
            raise RuntimeError("socket server unavailable")
        self.events.append((organization_id, event_name, payload))

    def named(self, event_name: str) -> list[tuple[str, str, dict]]:
        return [event for event in self.events if event[1] == event_name]


class FakeWebSocket:
    """Mock Starlette WebSocket for ConnectionManager tests."""

    def __init__(self, should_fail: bool = False):
        self.client_state = WebSocketState.CONNECTED
        self.should_fail = should_fail
        self.sent: list[dict] = []

    async def send_json(self, data: dict):
        if self.should_fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    def events(self, event_name: str) -> list[dict]:
        return [item for item in self.sent if item.get("event") == event_name]


class FakeRedis:
    """Mock async Redis client for the realtime relay."""

    def __init__(self, should_fail: bool = False):
        self.should_fail = should_fail
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        if self.should_fail:
            raise ConnectionError("redis down")
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        return None
