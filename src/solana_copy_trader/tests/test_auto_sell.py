from __future__ import annotations

import pytest

from solana_copy_trader.datalake.positions import apply_buy, apply_sell
from solana_copy_trader.datalake.schemas import ExitReason, UserSettings
from solana_copy_trader.strategy.auto_sell import evaluate_exit, exit_for_position


def test_take_profit_scenario() -> None:
    position = apply_buy(None, user_id=1, token_address="MintA", quantity=10.0, price=1.0)
    settings = UserSettings(take_profit_pct=50.0, stop_loss_pct=20.0, auto_sell_enabled=True)

    assert exit_for_position(position, settings, 1.6) == ExitReason.TAKE_PROFIT


@pytest.mark.parametrize(
    "price,expected",
    [
        (1.5, ExitReason.TAKE_PROFIT),
        (1.4999, None),
        (1.0, None),
        (0.7501, None),
        (0.75, ExitReason.STOP_LOSS),
        (0.1, ExitReason.STOP_LOSS),
        (3.0, ExitReason.TAKE_PROFIT),
    ],
)
def test_thresholds_are_inclusive_and_nothing_between(price: float, expected) -> None:
    assert evaluate_exit(1.0, price, 50.0, 25.0) == expected


def test_take_profit_checked_first_on_degenerate_thresholds() -> None:
    # A zero-width band makes both rules match an unchanged price.
    assert evaluate_exit(1.0, 1.0, 0.0, 0.0) == ExitReason.TAKE_PROFIT


def test_no_exit_without_price_or_for_closed_position() -> None:
    position = apply_buy(None, user_id=1, token_address="MintA", quantity=1.0, price=1.0)
    settings = UserSettings(take_profit_pct=10.0)

    assert exit_for_position(position, settings, None) is None
    assert exit_for_position(apply_sell(position, quantity=1.0), settings, 5.0) is None
    assert evaluate_exit(0.0, 1.0, 10.0, 10.0) is None
