from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id


_RESERVED = frozenset(logging.makeLogRecord({}).__dict__)

# extras allowed into the "fields" object of a log line
CRM_LOG_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "tenant_id",
        "user_id",
        "entity",
        "entity_id",
        "reason",
        "lead_id",
        "contact_id",
        "contact_reused",
        "exhibition_id",
        "error",
        "environment",
    }
)
_MAX_ERROR_LENGTH = 500

_base_factory = logging.getLogRecordFactory()


def _correlated_record(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {
            key: value for key, value in vars(record).items() if key in CRM_LOG_FIELDS and key not in _RESERVED
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging() -> None:
    """Route every record through one stdout JSON handler; safe to call twice."""

    root = logging.getLogger()
    if getattr(root, "_fairlead_configured", False):
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())

    logging.setLogRecordFactory(_correlated_record)
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)
    root._fairlead_configured = True  # type: ignore[attr-defined]
