"""Monitoring package exports and helpers."""

from __future__ import annotations

from typing import Optional

from ..config.settings import AppConfig, get_app_config
from .logger import configure_logging
from .metrics import METRICS


def bootstrap_observability(config: Optional[AppConfig] = None) -> None:
    """Configure structured logging and reset per-process metrics."""

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring)
    METRICS.reset()


__all__ = ["bootstrap_observability", "METRICS"]
