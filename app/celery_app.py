from datetime import timedelta

from celery import Celery

from app.config import settings


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "task_serializer": "json",
        "result_serializer": "json",
        "accept_content": ["json"],
        "timezone": "UTC",
        "task_ignore_result": True,
    }


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    interval = settings.inbox_sync_interval_seconds
    if interval > 0:
        schedule["inbox_sync"] = {
            "task": "app.tasks.sync.sync_all_connections",
            "schedule": timedelta(seconds=max(interval, 60)),
        }
    return schedule


celery_app = Celery("unified_inbox")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["app.tasks"])
