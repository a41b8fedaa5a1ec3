"""Logging setup.

``readable`` format for local work, ``json`` for log aggregation. Level and
format come from ``LOG_LEVEL`` / ``LOG_FORMAT``.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from deptflow.config import settings

_EXTRA_FIELDS = (
    "document_id",
    "user_id",
    "event_type",
    "action",
    "step_order",
    "method",
    "path",
    "status",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        for key in _EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = str(value)
        return json.dumps(entry, ensure_ascii=False)


class ReadableFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now().strftime("%H:%M:%S")
        base = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    level_name = (level or settings.log_level).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    use_json = (fmt or settings.log_format).lower() == "json"

    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if use_json else ReadableFormatter())
    handler.setLevel(numeric_level)
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for noisy in ("sqlalchemy.engine", "urllib3", "botocore", "celery"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
