"""Root logger configuration."""

import json
import logging
from datetime import datetime, timezone

from config import settings


class JsonFormatter(logging.Formatter):
    """JSON log formatter with support for extra fields."""

    EXTRA_FIELDS = (
        "user_id", "server_id", "item_id", "coupon_id", "amount",
        "panel_path", "status_code", "reason", "action", "error",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    if settings.LOG_JSON:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.setLevel((settings.LOG_LEVEL or "INFO").upper())
    root.handlers = [handler]
