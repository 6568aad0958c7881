"""Periodic conversation reconciliation.

Catches up on messages whose webhooks were never delivered (endpoint down,
subscription lapsed) by pulling every active connection's threads.
"""

import time

from app.celery_app import celery_app
from app.db import new_session
from app.logging import get_logger
from app.metrics import observe_job
from app.services import sync as sync_service
from app.services.platform import FacebookService

logger = get_logger(__name__)


@celery_app.task(name="app.tasks.sync.sync_all_connections")
def sync_all_connections():
    """Sync every ACTIVE Facebook/Instagram connection.

    Returns:
        Dict with connection, conversation and failure counts
    """
    start = time.monotonic()
    status = "success"
    session = new_session()
    try:
        summary = sync_service.sync_all_connections(session, FacebookService())
        if not summary.complete:
            status = "partial"
        logger.info(
            "inbox_sync_task_completed connections=%d conversations=%d messages=%d failures=%d",
            summary.connections,
            summary.conversations_synced,
            summary.messages_created,
            len(summary.failures),
        )
        return {
            "connections": summary.connections,
            "conversations_synced": summary.conversations_synced,
            "messages_created": summary.messages_created,
            "failures": len(summary.failures),
        }
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("inbox_sync_task_failed")
        raise
    finally:
        session.close()
        observe_job("inbox_sync", status, time.monotonic() - start)
