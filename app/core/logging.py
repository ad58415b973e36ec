import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

_EXTRA_KEYS = (
    "request_id",
    "user_id",
    "chat_id",
    "event",
    "operation",
    "kind",
    "reason",
    "wallet",
    "latency_ms",
    "removed",
    "remaining",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _EXTRA_KEYS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())
    # aiogram logs every update at INFO; keep the stream readable.
    logging.getLogger("aiogram.event").setLevel(logging.WARNING)
