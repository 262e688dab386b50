from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import pytest

from solana_copy_trader.datalake.positions import apply_buy
from solana_copy_trader.datalake.schemas import (
    Trade,
    TradeSide,
    TradeStatus,
    UserSettings,
)
from solana_copy_trader.datalake.storage import SQLiteLedger
from solana_copy_trader.errors import AlphaWalletLimitError, LedgerError
from solana_copy_trader.utils.constants import utc_now


def _ledger(tmp_path: Path) -> SQLiteLedger:
    return SQLiteLedger(tmp_path / "ledger.sqlite3", max_alpha_wallets=3)


def _trade(user_id: int, side: TradeSide, *, alpha: str = "Alpha1", status=TradeStatus.COMPLETED, **kwargs) -> Trade:
    fields = {
        "user_id": user_id,
        "alpha_wallet": alpha,
        "token_address": "MintA",
        "side": side,
        "amount": 10.0,
        "price": 0.01,
        "status": status,
        "sol_amount": 0.1,
    }
    fields.update(kwargs)
    return Trade(**fields)


def test_create_user_is_idempotent(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    first = ledger.create_user("1001")
    second = ledger.create_user("1001")

    assert first.id == second.id
    assert first.settings == UserSettings()
    assert not first.has_wallet


def test_active_trackers_need_wallet_and_active_subscription(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    with_wallet = ledger.create_user("1")
    without_wallet = ledger.create_user("2")
    disabled = ledger.create_user("3")
    ledger.connect_wallet(with_wallet.id, "Wallet1", "secret-1")
    ledger.connect_wallet(disabled.id, "Wallet3", "secret-3")
    ledger.set_user_active(disabled.id, False)
    for user in (with_wallet, without_wallet, disabled):
        ledger.add_alpha_wallet(user.id, "AlphaX")

    trackers = ledger.get_active_trackers("AlphaX")

    assert [user.id for user in trackers] == [with_wallet.id]
    assert trackers[0].wallet_address == "Wallet1"

    ledger.deactivate_alpha_wallet(with_wallet.id, "AlphaX")
    assert ledger.get_active_trackers("AlphaX") == ()
    assert len(ledger.list_alpha_wallets(with_wallet.id, include_inactive=True)) == 1


def test_alpha_wallet_cap_and_duplicates(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    user = ledger.create_user("1")
    for index in range(3):
        ledger.add_alpha_wallet(user.id, f"Alpha{index}")

    with pytest.raises(AlphaWalletLimitError):
        ledger.add_alpha_wallet(user.id, "Alpha9")
    ledger.deactivate_alpha_wallet(user.id, "Alpha0")
    with pytest.raises(AlphaWalletLimitError):
        ledger.add_alpha_wallet(user.id, "Alpha1")
    ledger.add_alpha_wallet(user.id, "Alpha9")
    assert sorted(ledger.list_active_alpha_addresses()) == ["Alpha1", "Alpha2", "Alpha9"]


def test_position_round_trip_and_open_filter(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    user = ledger.create_user("1")
    position = apply_buy(None, user_id=user.id, token_address="MintA", quantity=10.0, price=0.5, token_symbol="AAA")
    ledger.upsert_position(position)

    loaded = ledger.get_position(user.id, "MintA")
    assert loaded == position
    assert ledger.get_open_positions(user.id) == (position,)

    ledger.upsert_position(replace(position, total_amount=0.0, is_open=False, closed_at=utc_now()))
    assert ledger.get_open_positions(user.id) == ()
    assert ledger.get_position(user.id, "MintB") is None


def test_negative_position_is_refused(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    position = apply_buy(None, user_id=1, token_address="MintA", quantity=1.0, price=1.0)
    with pytest.raises(LedgerError):
        ledger.upsert_position(replace(position, total_amount=-1.0))


def test_append_trade_assigns_ids_and_attribution(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    user = ledger.create_user("1")
    opened_at = utc_now()

    failed = ledger.append_trade(_trade(user.id, TradeSide.BUY, status=TradeStatus.FAILED, created_at=opened_at))
    assert failed.id is not None
    assert not ledger.has_buy_from_alpha(user.id, "MintA", "Alpha1")

    ledger.append_trade(_trade(user.id, TradeSide.BUY, created_at=opened_at))
    assert ledger.has_buy_from_alpha(user.id, "MintA", "Alpha1")
    assert ledger.has_buy_from_alpha(user.id, "MintA", "Alpha1", since=opened_at)
    assert not ledger.has_buy_from_alpha(user.id, "MintA", "Alpha1", since=opened_at + timedelta(seconds=1))
    assert not ledger.has_buy_from_alpha(user.id, "MintA", "Alpha2")


def test_record_fill_writes_trade_and_position_together(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    user = ledger.create_user("1")
    position = apply_buy(None, user_id=user.id, token_address="MintA", quantity=10.0, price=0.01)

    trade = ledger.record_fill(_trade(user.id, TradeSide.BUY), position)

    assert trade.id is not None
    assert [stored.id for stored in ledger.list_trades(user.id)] == [trade.id]
    assert ledger.get_position(user.id, "MintA") == position


def test_record_fill_rolls_back_trade_when_position_is_refused(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    user = ledger.create_user("1")
    position = apply_buy(None, user_id=user.id, token_address="MintA", quantity=1.0, price=1.0)

    with pytest.raises(LedgerError):
        ledger.record_fill(_trade(user.id, TradeSide.BUY), replace(position, total_amount=-1.0))

    assert ledger.list_trades(user.id) == []
    assert ledger.get_position(user.id, "MintA") is None

def test_user_stats(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    user = ledger.create_user("1")
    ledger.append_trade(_trade(user.id, TradeSide.BUY, sol_amount=1.0))
    ledger.append_trade(_trade(user.id, TradeSide.SELL, sol_amount=1.5, profit_loss=0.5))
    ledger.append_trade(_trade(user.id, TradeSide.SELL, sol_amount=0.2, profit_loss=-0.3))
    ledger.append_trade(_trade(user.id, TradeSide.BUY, status=TradeStatus.FAILED))

    stats = ledger.user_stats(user.id)

    assert stats.total_trades == 3
    assert stats.buy_count == 1
    assert stats.sell_count == 2
    assert stats.failed_trades == 1
    assert stats.winning_trades == 1
    assert stats.losing_trades == 1
    assert stats.win_rate == pytest.approx(50.0)
    assert stats.total_pnl == pytest.approx(0.2)
    assert stats.best_trade == pytest.approx(0.5)
    assert stats.worst_trade == pytest.approx(-0.3)
    assert stats.volume_bought == pytest.approx(1.0)
    assert stats.volume_sold == pytest.approx(1.7)


def test_blacklist_and_auto_sell_users(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    ledger.add_blacklisted_token("Scam", "rug")
    ledger.add_blacklisted_token("Scam2")
    assert ledger.get_blacklisted_tokens() == frozenset({"Scam", "Scam2"})
    assert ledger.remove_blacklisted_token("Scam2") is True
    assert ledger.remove_blacklisted_token("Scam2") is False
    assert [entry[0] for entry in ledger.list_blacklist()] == ["Scam"]

    user = ledger.create_user("1")
    ledger.connect_wallet(user.id, "Wallet1", "secret")
    assert ledger.get_users_with_auto_sell() == ()
    ledger.update_user_settings(user.id, UserSettings(auto_sell_enabled=True, take_profit_pct=50.0))
    users = ledger.get_users_with_auto_sell()
    assert [u.id for u in users] == [user.id]
    assert users[0].settings.take_profit_pct == 50.0
