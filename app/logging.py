"""Centralized logging configuration.

Services log through ``get_logger(__name__)`` using the
``event_name key=value`` message convention; ``configure_logging`` is
called once at application start.
"""

import json
import logging
from datetime import UTC, datetime

_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "alembic", "websockets")


class JsonFormatter(logging.Formatter):
    """Render log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            entry["request_id"] = request_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    from app.config import settings

    level_name = (level or settings.log_level).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    fmt = (log_format or settings.log_format).lower()

    if fmt == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "[%(asctime)s] %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()
    handler = logging.StreamHandler()
    handler.setLevel(numeric_level)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
