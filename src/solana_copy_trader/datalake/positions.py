"""Pure position arithmetic applied to ledger snapshots."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Optional

from ..utils.constants import utc_now
from .schemas import Position

DEFAULT_DUST_EPSILON = 1e-9


def apply_buy(
    position: Optional[Position],
    *,
    user_id: int,
    token_address: str,
    quantity: float,
    price: float,
    token_symbol: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Position:
    """Fold a filled buy into ``position`` using a volume-weighted entry price.

    A missing or closed position is replaced by a fresh one.
    """

    if quantity <= 0:
        raise ValueError("buy quantity must be positive")
    if price < 0:
        raise ValueError("price must be non-negative")
    timestamp = now or utc_now()
    if position is None or not position.is_open:
        return Position(
            user_id=user_id,
            token_address=token_address,
            total_amount=quantity,
            average_price=price,
            is_open=True,
            token_symbol=token_symbol,
            created_at=timestamp,
            updated_at=timestamp,
            closed_at=None,
        )
    new_total = position.total_amount + quantity
    new_average = (position.total_amount * position.average_price + quantity * price) / new_total
    return replace(
        position,
        total_amount=new_total,
        average_price=new_average,
        token_symbol=position.token_symbol or token_symbol,
        updated_at=timestamp,
    )


def apply_sell(
    position: Position,
    *,
    quantity: float,
    dust_epsilon: float = DEFAULT_DUST_EPSILON,
    now: Optional[datetime] = None,
) -> Position:
    """Reduce ``position`` by a filled sell; close it once only dust remains.

    The entry price is left untouched so realised PnL of later sells stays
    comparable.
    """

    if quantity <= 0:
        raise ValueError("sell quantity must be positive")
    timestamp = now or utc_now()
    remaining = max(0.0, position.total_amount - quantity)
    if remaining <= dust_epsilon:
        return replace(
            position,
            total_amount=0.0,
            is_open=False,
            updated_at=timestamp,
            closed_at=timestamp,
        )
    return replace(position, total_amount=remaining, is_open=True, updated_at=timestamp)


def realized_pnl(position: Position, *, quantity: float, price: float) -> float:
    """SOL gained or lost selling ``quantity`` at ``price`` against the entry."""

    sold = min(quantity, position.total_amount)
    return (price - position.average_price) * sold


def pnl_percent(entry_price: float, current_price: float) -> float:
    if entry_price <= 0:
        raise ValueError("entry price must be positive")
    return (current_price - entry_price) / entry_price * 100.0


__all__ = ["DEFAULT_DUST_EPSILON", "apply_buy", "apply_sell", "pnl_percent", "realized_pnl"]
