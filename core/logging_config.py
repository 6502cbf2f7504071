"""Structured JSON logging with job labels propagated via contextvars."""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

# Propagates the current job label ("bulk:<id>", "post:<id>", ...) across
# the async call tree of one operation, dispatch or execution.
_job_var: contextvars.ContextVar[str] = contextvars.ContextVar("job", default="-")

# LogRecord attributes; anything else on a record came in through "extra"
_STDLIB_FIELDS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "taskName",
})

_PLAIN_FORMAT = "%(levelname)s  %(name)s  %(message)s"


class JsonFormatter(logging.Formatter):
    """Emit one compact JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        data: dict = {
            "ts":     datetime.fromtimestamp(record.created, tz=timezone.utc)
                      .strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    record.message,
            "job":    _job_var.get(),
        }
        for key, val in record.__dict__.items():
            if key not in _STDLIB_FIELDS and not key.startswith("_"):
                data[key] = val

        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Replace the root logger's handlers with one stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(_PLAIN_FORMAT))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # APScheduler logs every job run at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


@contextmanager
def bind_job(kind: str, job_id: str) -> Iterator[str]:
    """Label every log line emitted inside the block with ``kind:job_id``."""
    label = f"{kind}:{job_id}"
    token = _job_var.set(label)
    try:
        yield label
    finally:
        _job_var.reset(token)


def current_job() -> str:
    return _job_var.get()
