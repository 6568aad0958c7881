from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from app.logging import get_logger

if TYPE_CHECKING:
    from app.websocket.manager import ConnectionManager

logger = get_logger(__name__)


def _log_failure(future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("inbox_broadcast_error error=%s", exc)


class InboxBroadcaster:
    """
    Lets synchronous service code emit through the ConnectionManager.

    Emissions are scheduled on the manager's event loop and never awaited,
    so callers are neither blocked nor exposed to delivery errors. Works from
    the loop thread itself and from threadpool workers (sync routes).
    """

    def __init__(self, manager: ConnectionManager):
        self.manager = manager
        self._pending: set = set()

    def emit_to_organization(self, organization_id: str, event_name: str, payload: dict):
        loop = self.manager.loop
        if loop is None or loop.is_closed():
            logger.debug(
                "inbox_broadcast_skipped organization_id=%s event=%s reason=no_loop",
                organization_id,
                event_name,
            )
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        try:
            if running is loop:
                task = loop.create_task(
                    self.manager.emit_to_organization(organization_id, event_name, payload)
                )
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
                task.add_done_callback(_log_failure)
            else:
                future = asyncio.run_coroutine_threadsafe(
                    self.manager.emit_to_organization(organization_id, event_name, payload),
                    loop,
                )
                future.add_done_callback(_log_failure)
        except Exception as exc:
            logger.warning(
                "inbox_broadcast_schedule_failed organization_id=%s event=%s error=%s",
                organization_id,
                event_name,
                exc,
            )
