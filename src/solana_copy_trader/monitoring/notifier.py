"""Outbound user notifications over the Telegram Bot API."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Protocol

import requests

from ..config.settings import MonitoringConfig, get_app_config
from .logger import get_logger


class Notifier(Protocol):
    """Delivers a message to one user. Implementations may raise; the relay
    treats delivery as best-effort."""

    def notify(self, user_id: int, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        ...


class NotificationError(RuntimeError):
    """A message could not be delivered."""


class TelegramNotifier:
    """Send HTML messages with ``sendMessage``, throttled per key.

    The chat id comes from ``metadata["chat_id"]`` when present, otherwise
    from ``chat_lookup(user_id)``.
    """

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        chat_lookup: Optional[Callable[[int], Optional[str]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or get_app_config().monitoring
        self._session = session or requests.Session()
        self._chat_lookup = chat_lookup
        self._clock = clock
        self._logger = get_logger(__name__)
        self._last_sent: Dict[str, float] = {}

    @property
    def enabled(self) -> bool:
        return bool(self._config.telegram_bot_token)

    def notify(self, user_id: int, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        metadata = metadata or {}
        if not self.enabled:
            self._logger.debug("Telegram disabled, dropping message for user %s", user_id)
            return
        chat_id = metadata.get("chat_id")
        if chat_id is None and self._chat_lookup is not None:
            chat_id = self._chat_lookup(user_id)
        if not chat_id:
            raise NotificationError(f"no chat id known for user {user_id}")

        key = f"{user_id}:{metadata.get('key') or message}"
        now = self._clock()
        throttle = max(self._config.notification_throttle_seconds, 0)
        last = self._last_sent.get(key)
        if last is not None and now - last < throttle:
            return
        self._last_sent[key] = now

        url = f"{str(self._config.telegram_api_url).rstrip('/')}/bot{self._config.telegram_bot_token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": message,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        try:
            response = self._session.post(url, json=payload, timeout=self._config.http_timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            # The token is part of the URL; keep it out of the error text.
            raise NotificationError(f"telegram delivery to user {user_id} failed: {type(exc).__name__}") from exc


__all__ = ["NotificationError", "Notifier", "TelegramNotifier"]
