import json
import logging
import logging.config
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from app.core import context
from app.core.settings import settings

AUDIT_LOGGER = "app.audit"


class RequestContextFilter(logging.Filter):
    """Stamp request and application ids onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = context.get_request_id()
        if not getattr(record, "application_id", None):
            record.application_id = context.get_application_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; domain events ride along under ``event``."""

    def __init__(self, stream_label: str = "transactional") -> None:
        super().__init__()
        self.stream_label = stream_label

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - concise
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "stream": self.stream_label,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
            "application_id": getattr(record, "application_id", "-"),
        }
        event = getattr(record, "event", None)
        if event is not None:
            payload["event"] = event
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _stdout_handler(level: str, formatter: str) -> dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "level": level,
        "formatter": formatter,
        "filters": ["request_context"],
        "stream": "ext://sys.stdout",
    }


def configure_logging(level: Optional[str] = None) -> None:
    log_level = (level or settings.log_level).upper()
    plain = {"handlers": ["default"], "level": log_level, "propagate": False}
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"request_context": {"()": RequestContextFilter}},
            "formatters": {
                "json": {"()": JsonFormatter, "stream_label": "transactional"},
                "audit_json": {"()": JsonFormatter, "stream_label": "audit"},
            },
            "handlers": {
                "default": _stdout_handler(log_level, "json"),
                "audit": _stdout_handler(log_level, "audit_json"),
            },
            "loggers": {
                "": plain,
                AUDIT_LOGGER: {"handlers": ["audit"], "level": log_level, "propagate": False},
                "uvicorn": plain,
                "uvicorn.error": plain,
                "uvicorn.access": plain,
                "httpx": {**plain, "level": "WARNING"},
            },
        }
    )
    logging.getLogger(__name__).info(
        "Logging configured for environment=%s lock_backend=%s publisher=%s",
        settings.environment,
        settings.application_lock_backend,
        settings.event_publisher,
    )


@contextmanager
def application_log_context(application_id: Any) -> Iterator[None]:
    token = context.set_application_id(str(application_id))
    try:
        yield
    finally:
        context.reset_application_id(token)


def get_audit_logger() -> logging.Logger:
    return logging.getLogger(AUDIT_LOGGER)
