from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any

from rich.logging import RichHandler

ROOT_LOGGER = "pysuna"


class JsonFormatter(logging.Formatter):
    """One JSON object per line; merges `extra={"extra": {...}}` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class _ExtraConsoleFilter(logging.Filter):
    # RichHandler ignores custom record attributes; fold them into the message.
    def filter(self, record: logging.LogRecord) -> bool:
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict) and extra and not getattr(record, "_extra_folded", False):
            fields = " ".join(f"{k}={v}" for k, v in extra.items())
            if record.args:
                fields = fields.replace("%", "%%")
            record.msg = f"{record.msg} [{fields}]"
            record._extra_folded = True
        return True


def setup_logging(level: str = "INFO", json_output: bool = False) -> logging.Logger:
    """Configure the package logger once per process.

    Development runs get a rich console handler; production runs emit JSON
    lines suitable for log shippers.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper())
    for h in list(logger.handlers):
        logger.removeHandler(h)

    if json_output:
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
    else:
        handler = RichHandler(rich_tracebacks=True, show_path=False)
        handler.addFilter(_ExtraConsoleFilter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def log_fields(**fields: Any) -> dict[str, Any]:
    return {"extra": fields}


class Timer:
    """Log `Completed <operation>` with its duration.

    Usable as a context manager, or call `end()` explicitly with result fields.
    """

    def __init__(self, operation: str, logger: logging.Logger | None = None):
        self.operation = operation
        self.logger = logger or logging.getLogger(ROOT_LOGGER)
        self.start = time.perf_counter()
        self.logger.debug("Started %s", operation)

    @property
    def elapsed_ms(self) -> int:
        return int(round((time.perf_counter() - self.start) * 1000))

    def end(self, **fields: Any) -> int:
        duration = self.elapsed_ms
        self.logger.info("Completed %s", self.operation, extra=log_fields(duration_ms=duration, **fields))
        return duration

    def __enter__(self) -> "Timer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.end(success=exc is None)
