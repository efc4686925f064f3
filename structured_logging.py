"""JSON log lines for shipping orchestrator logs to an aggregator."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

# Attributes callers may attach via ``extra=`` that are promoted to top-level keys.
CONTEXT_FIELDS = ("project_id", "task_id", "phase", "attempt")


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Every line carries timestamp, level, logger, thread and message. Slot
    drivers log with ``extra={"task_id": ..., "phase": ...}`` so all lines
    about one task can be filtered on ``task_id``; the context keys only
    appear when the record has them.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        entry.update(
            (name, getattr(record, name))
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack_info"] = record.stack_info
        return json.dumps(entry, default=str)


def apply_json_logging() -> None:
    """Switch the formatter of every root handler installed by main.setup_logging()."""
    formatter = JSONFormatter()
    for handler in logging.getLogger().handlers:
        handler.setFormatter(formatter)
