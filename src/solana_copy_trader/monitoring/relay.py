"""Formats trade outcomes and forwards them to the user's notifier."""

from __future__ import annotations

import asyncio
import html
from typing import Any, Dict, Optional

from ..datalake.schemas import ExitReason, Position, Trade, TradeSide, User
from .logger import get_logger
from .metrics import METRICS
from .notifier import Notifier

_EXPLORER_TX_URL = "https://solscan.io/tx/{signature}"


def _short_address(address: Optional[str]) -> str:
    if not address:
        return "-"
    return f"{address[:8]}...{address[-8:]}" if len(address) > 16 else address


def _amount_label(trade: Trade) -> str:
    if trade.side == TradeSide.BUY:
        return f"{trade.sol_amount:.6f} SOL"
    return f"{trade.amount:.6f} {html.escape(trade.token_symbol or 'tokens')}"


def format_trade_success(trade: Trade) -> str:
    symbol = html.escape(trade.token_symbol or _short_address(trade.token_address))
    lines = [
        "🟢 <b>Trade Executed Successfully!</b>",
        "",
        f"💼 <b>Alpha Wallet:</b> <code>{_short_address(trade.alpha_wallet)}</code>",
        f"📊 <b>Action:</b> {trade.side.value.upper()} {symbol}",
        f"💰 <b>Amount:</b> {_amount_label(trade)}",
        f"💲 <b>Price:</b> {trade.price:.8f} SOL",
    ]
    if trade.profit_loss is not None:
        lines.append(f"📈 <b>Realized P&amp;L:</b> {trade.profit_loss:+.6f} SOL")
    if trade.signature:
        lines.append(f"🔗 <b>Signature:</b> <code>{trade.signature}</code>")
    return "\n".join(lines)


def format_trade_failure(trade: Trade) -> str:
    symbol = html.escape(trade.token_symbol or _short_address(trade.token_address))
    requested = f"{trade.sol_amount:.6f} SOL" if trade.side == TradeSide.BUY else f"{trade.amount:.6f} {symbol}"
    return "\n".join(
        [
            "🔴 <b>Trade Failed</b>",
            "",
            f"💼 <b>Alpha Wallet:</b> <code>{_short_address(trade.alpha_wallet)}</code>",
            f"📊 <b>Attempted Action:</b> {trade.side.value.upper()} {symbol}",
            f"💰 <b>Amount:</b> {requested}",
            f"🔁 <b>Attempts:</b> {trade.attempts}",
            f"❌ <b>Error:</b> {html.escape(trade.error or 'unknown error')}",
        ]
    )


def format_auto_sell(trade: Trade, position: Position, current_price: float) -> str:
    symbol = html.escape(position.token_symbol or _short_address(position.token_address))
    trigger = "🟢 Take Profit" if trade.exit_reason == ExitReason.TAKE_PROFIT else "🔴 Stop Loss"
    change = 0.0
    if position.average_price > 0:
        change = (current_price - position.average_price) / position.average_price * 100.0
    return "\n".join(
        [
            "🔔 <b>Auto-Sell Executed!</b>",
            f"🏷️ <b>Token:</b> {symbol}",
            f"🎯 <b>Trigger:</b> {trigger}",
            f"💰 <b>Amount:</b> {trade.amount:.6f}",
            f"💵 <b>Entry Price:</b> {position.average_price:.8f} SOL",
            f"💵 <b>Sell Price:</b> {current_price:.8f} SOL",
            f"📈 <b>P&amp;L:</b> {'🟢' if change >= 0 else '🔴'} {change:.2f}%",
            f"🔗 <b>Signature:</b> <code>{trade.signature or '-'}</code>",
        ]
    )


class NotificationRelay:
    """Best-effort delivery: a failed notification is logged and counted but
    never raised, so it cannot fail the trade that produced it."""

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier
        self._logger = get_logger(__name__)

    async def trade_succeeded(self, user: User, trade: Trade) -> None:
        metadata: Dict[str, Any] = {"trade_id": trade.id}
        if trade.signature:
            metadata["explorer_url"] = _EXPLORER_TX_URL.format(signature=trade.signature)
        await self.send(user, format_trade_success(trade), metadata)

    async def trade_failed(self, user: User, trade: Trade) -> None:
        await self.send(user, format_trade_failure(trade), {"trade_id": trade.id})

    async def auto_sell_executed(self, user: User, trade: Trade, position: Position, current_price: float) -> None:
        await self.send(user, format_auto_sell(trade, position, current_price), {"trade_id": trade.id})

    async def auto_sell_failed(self, user: User, position: Position, error: str) -> None:
        symbol = html.escape(position.token_symbol or _short_address(position.token_address))
        await self.send(user, f"⚠️ Auto-sell failed for {symbol}: {html.escape(error)}")

    async def signing_failed(self, user: User, error: str) -> None:
        await self.send(
            user,
            f"❌ Trade execution failed: could not sign with your wallet ({html.escape(error)})",
            {"key": "signing_failed"},
        )

    async def emergency_stop(self, user: User, reason: str) -> None:
        await self.send(user, f"🚨 <b>Emergency Stop Activated!</b>\nReason: {html.escape(reason)}")

    async def send(self, user: User, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        payload = {"chat_id": user.telegram_id, **(metadata or {})}
        try:
            await asyncio.to_thread(self._notifier.notify, user.id, message, payload)
        except Exception as exc:  # noqa: BLE001 - delivery is best-effort
            METRICS.increment("notifications_failed")
            self._logger.warning(
                "Notification to user %s failed: %s", user.id, exc, extra={"user_id": user.id}
            )
            return
        METRICS.increment("notifications_sent")


__all__ = [
    "NotificationRelay",
    "format_auto_sell",
    "format_trade_failure",
    "format_trade_success",
]
