import logging
import sys
import json
from datetime import datetime, timezone
from ..platform.config import settings
from ..platform.request_context import get_request_id, get_user_id

# LogRecord attributes that are not caller-supplied context.
_RESERVED_RECORD_KEYS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "request_id"}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        request_id = getattr(record, "request_id", None) or get_request_id()
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if request_id:
            payload["request_id"] = request_id
        caller_id = get_user_id()
        if caller_id:
            payload["caller_user_id"] = caller_id
        # Correlation fields passed via extra= (user_id, transaction_id, idempotency_key, ...)
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def setup_logging(level: str | None = None):
    """Install the JSON stdout handler on the root logger (API and Celery workers)."""
    log_level = logging.getLevelName((level or settings.LOG_LEVEL or "INFO").upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    # Silence noisy loggers
    for name in ("uvicorn.access", "sqlalchemy.engine", "httpx", "celery.redirected"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
