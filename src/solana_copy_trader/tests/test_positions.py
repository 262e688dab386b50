from __future__ import annotations

import pytest

from solana_copy_trader.datalake.positions import apply_buy, apply_sell, pnl_percent, realized_pnl


def _open(quantity: float, price: float):
    return apply_buy(None, user_id=1, token_address="MintA", quantity=quantity, price=price)


def test_buy_uses_volume_weighted_average() -> None:
    position = _open(10.0, 1.0)
    position = apply_buy(position, user_id=1, token_address="MintA", quantity=5.0, price=4.0)

    assert position.total_amount == pytest.approx(15.0)
    assert position.average_price == pytest.approx((10.0 * 1.0 + 5.0 * 4.0) / 15.0, abs=1e-9)
    assert position.is_open


def test_amounts_track_sequence_of_fills() -> None:
    position = _open(3.0, 0.5)
    fills = [("buy", 2.0, 0.7), ("sell", 1.5, 0.9), ("buy", 4.0, 0.2), ("sell", 2.5, 0.1)]
    expected = 3.0
    for side, quantity, price in fills:
        if side == "buy":
            position = apply_buy(position, user_id=1, token_address="MintA", quantity=quantity, price=price)
            expected += quantity
        else:
            position = apply_sell(position, quantity=quantity)
            expected -= quantity
        assert position.total_amount == pytest.approx(expected, abs=1e-9)
    assert position.total_amount >= 0


def test_buy_then_equal_sell_closes_position() -> None:
    position = _open(7.25, 0.3)
    closed = apply_sell(position, quantity=7.25)

    assert closed.total_amount == 0
    assert closed.is_open is False
    assert closed.closed_at is not None


def test_sell_leaving_dust_closes_position() -> None:
    position = _open(1.0, 1.0)
    closed = apply_sell(position, quantity=1.0 - 1e-12)

    assert closed.total_amount == 0
    assert not closed.is_open


def test_sell_keeps_entry_price() -> None:
    position = _open(10.0, 2.0)
    reduced = apply_sell(position, quantity=4.0)

    assert reduced.total_amount == pytest.approx(6.0)
    assert reduced.average_price == 2.0
    assert reduced.is_open


def test_buy_into_closed_position_starts_fresh() -> None:
    closed = apply_sell(_open(2.0, 5.0), quantity=2.0)
    reopened = apply_buy(closed, user_id=1, token_address="MintA", quantity=1.0, price=1.0)

    assert reopened.is_open
    assert reopened.average_price == 1.0
    assert reopened.closed_at is None


def test_realized_pnl_and_percent() -> None:
    position = _open(10.0, 1.0)

    assert realized_pnl(position, quantity=4.0, price=1.5) == pytest.approx(2.0)
    assert realized_pnl(position, quantity=20.0, price=0.5) == pytest.approx(-5.0)
    assert pnl_percent(1.0, 1.6) == pytest.approx(60.0)


def test_rejects_non_positive_quantities() -> None:
    with pytest.raises(ValueError):
        _open(0.0, 1.0)
    with pytest.raises(ValueError):
        apply_sell(_open(1.0, 1.0), quantity=0.0)
