"""Meta Graph API client for Facebook Messenger and Instagram Direct.

Handles:
- Sending text messages from a connected Page / Instagram account
- Paging through a Page's conversation threads for reconciliation
- Fetching the message history of one thread
- Looking up contact profiles for display names
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from app.config import settings
from app.logging import get_logger
from app.metrics import PLATFORM_API_ERRORS
from app.models.platform_connection import Platform, PlatformConnection
from app.services.platform.base import PlatformError, PlatformSyncError, SendMessageResult

logger = get_logger(__name__)

_CONVERSATION_FIELDS = (
    "id,updated_time,"
    "messages.limit(1){id,message,from,created_time},"
    "participants{id,name,picture}"
)
_HISTORY_FIELDS = "id,message,from,created_time,attachments"
_MAX_SYNC_PAGES = 20
_PROFILE_TIMEOUT = 5


async def _request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    params: dict | None = None,
    json: dict | None = None,
    timeout: float | None = None,
    max_retries: int = 1,
) -> httpx.Response:
    retries = 0
    while True:
        response = await client.request(method, url, params=params, json=json, timeout=timeout)
        if response.status_code in {429} or response.status_code >= 500:
            if retries >= max_retries:
                return response
            retry_after = response.headers.get("Retry-After")
            delay = 1.0
            if retry_after:
                try:
                    delay = max(0.0, float(retry_after))
                except ValueError:
                    delay = 1.0
            await asyncio.sleep(delay)
            retries += 1
            continue
        return response


def _error_from_response(response: httpx.Response, context: str) -> PlatformError:
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return PlatformError(
            error.get("message") or f"{context} failed",
            status_code=response.status_code,
            code=error.get("code"),
            subcode=error.get("error_subcode"),
        )
    return PlatformError(
        f"{context} failed with HTTP {response.status_code}",
        status_code=response.status_code,
    )


def _parse_body(response: httpx.Response, context: str) -> dict[str, Any]:
    if response.status_code >= 400:
        raise _error_from_response(response, context)
    try:
        data = response.json()
    except ValueError as exc:
        raise PlatformError(
            f"{context} returned malformed JSON", status_code=response.status_code
        ) from exc
    if not isinstance(data, dict):
        raise PlatformError(f"{context} returned an unexpected payload")
    if isinstance(data.get("error"), dict):
        raise _error_from_response(response, context)
    return data


class FacebookService:
    """Graph API implementation of the platform service contract.

    Instagram Direct goes through the same Graph endpoints using the linked
    Page's access token, so one client serves both platforms.
    """

    platforms = frozenset({Platform.facebook, Platform.instagram})

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        max_pages: int = _MAX_SYNC_PAGES,
    ):
        self.base_url = (base_url or settings.graph_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.meta_api_timeout_seconds
        self.max_pages = max_pages

    def supports(self, platform: Platform) -> bool:
        return platform in self.platforms

    async def _call(
        self,
        method: str,
        url: str,
        *,
        context: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await _request_with_retry(
                    client, method, url, params=params, json=json, timeout=self.timeout
                )
        except httpx.TimeoutException as exc:
            PLATFORM_API_ERRORS.labels(operation=context, reason="timeout").inc()
            raise PlatformError(f"{context} timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            PLATFORM_API_ERRORS.labels(operation=context, reason="transport").inc()
            raise PlatformError(f"{context} request failed: {exc}") from exc
        try:
            return _parse_body(response, context)
        except PlatformError:
            PLATFORM_API_ERRORS.labels(operation=context, reason="api").inc()
            logger.error(
                "graph_api_call_failed context=%s status=%s body=%s",
                context,
                response.status_code,
                response.text[:500],
            )
            raise

    async def send_message(
        self,
        connection: PlatformConnection,
        recipient_id: str,
        content: str,
    ) -> SendMessageResult:
        """Send a text message via the Send API.

        Raises:
            PlatformError: If the Graph API rejects the message (for example
                outside the 24-hour messaging window) or the call times out.
        """
        payload = {
            "recipient": {"id": recipient_id},
            "messaging_type": "RESPONSE",
            "message": {"text": content},
        }
        data = await self._call(
            "POST",
            f"{self.base_url}/me/messages",
            context="send_message",
            params={"access_token": connection.access_token},
            json=payload,
        )
        logger.info(
            "graph_message_sent connection_id=%s recipient=%s... message_id=%s",
            connection.id,
            recipient_id[:8],
            data.get("message_id"),
        )
        return SendMessageResult(
            external_id=data.get("message_id"),
            recipient_id=data.get("recipient_id"),
            raw=data,
        )

    async def sync_conversations(self, connection: PlatformConnection) -> list[dict]:
        """Fetch every conversation thread of the connected account.

        Follows ``paging.next`` cursors. A failure after some pages were
        fetched, or a thread list longer than ``max_pages``, raises
        ``PlatformSyncError`` carrying the pages fetched so far.
        """
        threads: list[dict] = []
        url: str | None = f"{self.base_url}/me/conversations"
        params: dict | None = {
            "fields": _CONVERSATION_FIELDS,
            "access_token": connection.access_token,
        }
        if connection.platform == Platform.instagram:
            params["platform"] = "instagram"

        pages = 0
        while url and pages < self.max_pages:
            try:
                data = await self._call("GET", url, context="sync_conversations", params=params)
            except PlatformError as exc:
                raise PlatformSyncError(
                    exc.message,
                    partial=threads,
                    status_code=exc.status_code,
                    code=exc.code,
                    subcode=exc.subcode,
                ) from exc
            batch = data.get("data") or []
            threads.extend(item for item in batch if isinstance(item, dict))
            pages += 1
            # The next cursor URL already embeds fields and token
            url = (data.get("paging") or {}).get("next")
            params = None

        if url:
            logger.warning(
                "graph_conversations_page_limit connection_id=%s threads=%d pages=%d",
                connection.id,
                len(threads),
                pages,
            )
            raise PlatformSyncError(
                f"sync_conversations stopped after {pages} pages with more remaining",
                partial=threads,
            )

        logger.info(
            "graph_conversations_fetched connection_id=%s threads=%d pages=%d",
            connection.id,
            len(threads),
            pages,
        )
        return threads

    async def get_message_history(
        self,
        connection: PlatformConnection,
        thread_id: str,
    ) -> list[dict]:
        data = await self._call(
            "GET",
            f"{self.base_url}/{thread_id}/messages",
            context="message_history",
            params={"fields": _HISTORY_FIELDS, "access_token": connection.access_token},
        )
        return [item for item in data.get("data") or [] if isinstance(item, dict)]

    def fetch_profile(self, connection: PlatformConnection, user_id: str) -> dict | None:
        """Best-effort contact profile lookup; never raises."""
        if connection.platform == Platform.instagram:
            fields = "username,name,profile_pic"
        else:
            fields = "first_name,last_name,profile_pic"
        try:
            with httpx.Client(timeout=min(self.timeout, _PROFILE_TIMEOUT)) as client:
                response = client.get(
                    f"{self.base_url}/{user_id}",
                    params={"fields": fields, "access_token": connection.access_token},
                )
            if response.status_code >= 400:
                if response.status_code in (401, 403):
                    logger.warning(
                        "meta_profile_lookup_auth_failed user_id=%s status=%s body=%s",
                        user_id,
                        response.status_code,
                        response.text,
                    )
                else:
                    logger.debug(
                        "meta_profile_lookup_failed user_id=%s status=%s",
                        user_id,
                        response.status_code,
                    )
                return None
            data = response.json()
        except Exception as exc:
            logger.warning("meta_profile_lookup_exception user_id=%s error=%s", user_id, exc)
            return None

        if connection.platform == Platform.instagram:
            name = data.get("username") or data.get("name")
        else:
            name = " ".join(
                part for part in (data.get("first_name"), data.get("last_name")) if part
            )
        return {"name": name or None, "avatar_url": data.get("profile_pic")}
