"""
Logging setup for the order pipeline.

Every log line emitted while an order is in flight carries the order's
correlation id, requester, ticker and side. They live in a context variable,
so concurrent orders on one event loop never see each other's fields.
"""

import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_order_fields: contextvars.ContextVar[Dict[str, str]] = contextvars.ContextVar("order_fields", default={})


class OrderContext:
    """Tags log lines inside one order invocation."""

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        requester: Optional[str] = None,
        ticker: Optional[str] = None,
        side: Optional[str] = None,
    ):
        self.correlation_id = correlation_id or uuid4().hex
        self.fields = {
            "correlation_id": self.correlation_id,
            "requester": requester,
            "ticker": ticker,
            "side": side,
        }
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "OrderContext":
        merged = dict(_order_fields.get())
        merged.update({k: v for k, v in self.fields.items() if v})
        self._token = _order_fields.set(merged)
        return self

    def __exit__(self, *exc) -> None:
        _order_fields.reset(self._token)


def current_context() -> Dict[str, str]:
    return dict(_order_fields.get())


class JSONFormatter(logging.Formatter):
    """One JSON object per line, order fields included."""

    def __init__(self, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **current_context(),
            **self.extra_fields,
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class StructuredFormatter(logging.Formatter):
    """Readable console lines; long ids are shortened to 8 characters."""

    def __init__(self):
        super().__init__("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s", "%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = current_context()
        if not context:
            return line
        for key in ("correlation_id", "requester"):
            if key in context:
                context[key] = context[key][:8]
        return f"{line} [{', '.join(f'{k}={v}' for k, v in context.items())}]"


def setup_logging(
    level: Union[str, int] = logging.INFO,
    json_format: bool = False,
    log_file: Optional[Union[str, Path]] = None,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Configure the root logger for the CLI or an embedding application.

    Args:
        level: Logging level name or number
        json_format: JSON lines on stderr instead of the readable format
        log_file: Optional path for a rotating JSON log file
        extra_fields: Additional fields added to every JSON record

    Returns:
        The configured root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter(extra_fields) if json_format else StructuredFormatter())
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8"
        )
        handler.setFormatter(JSONFormatter(extra_fields))
        root.addHandler(handler)

    # solana-py and httpx are chatty at INFO
    for noisy in ("httpx", "httpcore", "solana"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    return root
