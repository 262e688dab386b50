"""JSON logging bound to the job being processed.

Every copy-trade or auto-sell job runs inside :func:`correlation_scope`, which
tags each record with a correlation id and the job's user and token so a
single trade can be followed across the dispatcher, runner and relay.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, Optional, TextIO

from ..config.settings import MonitoringConfig, get_app_config

_CORRELATION_ID: ContextVar[str] = ContextVar("correlation_id", default="-")
_JOB_FIELDS: ContextVar[Mapping[str, Any]] = ContextVar("job_fields", default={})
_configured = False

_RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "correlation_id",
    "job",
}


class _JobContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _CORRELATION_ID.get()
        record.job = dict(_JOB_FIELDS.get())
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    ``job`` carries the fields bound by :func:`correlation_scope`; anything
    passed through ``extra=`` lands under ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or _CORRELATION_ID.get(),
        }
        job = getattr(record, "job", None)
        if job is None:
            job = dict(_JOB_FIELDS.get())
        if job:
            payload["job"] = job
        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(
    config: Optional[MonitoringConfig] = None,
    *,
    stream: Optional[TextIO] = None,
    force: bool = False,
) -> None:
    """Install the JSON handler on the root logger once per process."""

    global _configured
    if _configured and not force:
        return
    cfg = config or get_app_config().monitoring
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredFormatter())
    handler.addFilter(_JobContextFilter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, cfg.log_level.upper(), logging.INFO))
    logging.captureWarnings(True)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    if not _configured:
        configure_logging()
    return logging.getLogger(name)


def current_correlation_id() -> str:
    return _CORRELATION_ID.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str], **fields: Any) -> Iterator[None]:
    """Bind ``correlation_id`` and job ``fields`` to records logged inside."""

    id_token = _CORRELATION_ID.set(correlation_id or "-")
    fields_token = _JOB_FIELDS.set({**_JOB_FIELDS.get(), **fields})
    try:
        yield
    finally:
        _JOB_FIELDS.reset(fields_token)
        _CORRELATION_ID.reset(id_token)


__all__ = [
    "StructuredFormatter",
    "configure_logging",
    "correlation_scope",
    "current_correlation_id",
    "get_logger",
]
