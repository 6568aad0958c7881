from app.tasks.sync import sync_all_connections

__all__ = ["sync_all_connections"]
