"""Take-profit / stop-loss exit rule."""

from __future__ import annotations

from typing import Optional

from ..datalake.positions import pnl_percent
from ..datalake.schemas import ExitReason, Position, UserSettings


def evaluate_exit(
    entry_price: float,
    current_price: float,
    take_profit_pct: float,
    stop_loss_pct: float,
) -> Optional[ExitReason]:
    """Return the exit the price move triggers, if any.

    Take-profit wins when both thresholds would somehow match. Prices are
    SOL per token; thresholds are positive percentages.
    """

    if entry_price <= 0 or current_price <= 0:
        return None
    change = pnl_percent(entry_price, current_price)
    if change >= take_profit_pct:
        return ExitReason.TAKE_PROFIT
    if change <= -stop_loss_pct:
        return ExitReason.STOP_LOSS
    return None


def exit_for_position(
    position: Position, settings: UserSettings, current_price: Optional[float]
) -> Optional[ExitReason]:
    if not position.is_open or position.total_amount <= 0 or current_price is None:
        return None
    return evaluate_exit(
        position.average_price,
        current_price,
        settings.take_profit_pct,
        settings.stop_loss_pct,
    )


__all__ = ["evaluate_exit", "exit_for_position"]
