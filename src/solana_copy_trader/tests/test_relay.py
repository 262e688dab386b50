from __future__ import annotations

import asyncio
from typing import List

import pytest
import requests

from solana_copy_trader.config.settings import MonitoringConfig
from solana_copy_trader.datalake.schemas import Trade, TradeSide, TradeStatus, User
from solana_copy_trader.monitoring.metrics import METRICS
from solana_copy_trader.monitoring.notifier import NotificationError, TelegramNotifier
from solana_copy_trader.monitoring.relay import NotificationRelay, format_trade_success

TOKEN = "123456:secret-bot-token"


class FakeResponse:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error for url with {TOKEN}")


class FakeSession:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.posts: List[dict] = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        return FakeResponse(self.status_code)


class ExplodingNotifier:
    def notify(self, user_id, message, metadata=None) -> None:
        raise NotificationError("telegram is down")


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def notify(self, user_id, message, metadata=None) -> None:
        self.calls.append((user_id, message, metadata))


def _user() -> User:
    return User(id=7, telegram_id="555")


def _trade(**overrides) -> Trade:
    values = dict(
        user_id=7,
        alpha_wallet="AlphaWalletAddress1234567890",
        token_address="MintA",
        side=TradeSide.BUY,
        amount=200.0,
        price=0.001,
        status=TradeStatus.COMPLETED,
        sol_amount=0.2,
        signature="5igSig",
        token_symbol="BONK",
    )
    values.update(overrides)
    return Trade(**values)


def test_relay_swallows_notifier_failures() -> None:
    METRICS.reset()
    relay = NotificationRelay(ExplodingNotifier())

    asyncio.run(relay.trade_succeeded(_user(), _trade()))

    assert METRICS.get("notifications_failed") == 1
    assert METRICS.get("notifications_sent") == 0
    METRICS.reset()


def test_relay_routes_to_user_chat() -> None:
    notifier = RecordingNotifier()

    asyncio.run(NotificationRelay(notifier).trade_succeeded(_user(), _trade()))

    user_id, message, metadata = notifier.calls[0]
    assert user_id == 7
    assert metadata["chat_id"] == "555"
    assert metadata["explorer_url"].endswith("/5igSig")
    assert "BONK" in message


def test_success_message_escapes_symbol_and_shows_pnl() -> None:
    message = format_trade_success(_trade(side=TradeSide.SELL, token_symbol="<b>X", profit_loss=0.06))

    assert "&lt;b&gt;X" in message
    assert "+0.060000 SOL" in message


def test_telegram_notifier_posts_html_message() -> None:
    session = FakeSession()
    notifier = TelegramNotifier(MonitoringConfig(telegram_bot_token=TOKEN), session=session)

    notifier.notify(7, "hello", {"chat_id": "555"})

    post = session.posts[0]
    assert post["url"] == f"https://api.telegram.org/bot{TOKEN}/sendMessage"
    assert post["json"]["chat_id"] == "555"
    assert post["json"]["parse_mode"] == "HTML"
    assert post["timeout"] == 5.0


def test_telegram_notifier_disabled_without_token() -> None:
    session = FakeSession()
    notifier = TelegramNotifier(MonitoringConfig(), session=session)

    assert notifier.enabled is False
    notifier.notify(7, "hello", {"chat_id": "555"})
    assert session.posts == []


def test_telegram_notifier_throttles_repeated_messages() -> None:
    session = FakeSession()
    now = [0.0]
    notifier = TelegramNotifier(
        MonitoringConfig(telegram_bot_token=TOKEN, notification_throttle_seconds=60.0),
        session=session,
        clock=lambda: now[0],
    )

    notifier.notify(7, "same", {"chat_id": "555"})
    notifier.notify(7, "same", {"chat_id": "555"})
    notifier.notify(7, "different", {"chat_id": "555"})
    now[0] = 61.0
    notifier.notify(7, "same", {"chat_id": "555"})

    assert [post["json"]["text"] for post in session.posts] == ["same", "different", "same"]


def test_telegram_notifier_falls_back_to_chat_lookup() -> None:
    session = FakeSession()
    notifier = TelegramNotifier(
        MonitoringConfig(telegram_bot_token=TOKEN), session=session, chat_lookup=lambda user_id: f"chat-{user_id}"
    )

    notifier.notify(9, "hi")

    assert session.posts[0]["json"]["chat_id"] == "chat-9"


def test_telegram_notifier_errors_hide_the_token() -> None:
    notifier = TelegramNotifier(MonitoringConfig(telegram_bot_token=TOKEN), session=FakeSession(status_code=403))

    with pytest.raises(NotificationError) as excinfo:
        notifier.notify(7, "hello", {"chat_id": "555"})
    assert TOKEN not in str(excinfo.value)

    with pytest.raises(NotificationError):
        TelegramNotifier(MonitoringConfig(telegram_bot_token=TOKEN), session=FakeSession()).notify(7, "hello")
