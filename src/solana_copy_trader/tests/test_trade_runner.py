from __future__ import annotations

import asyncio
import sqlite3
import threading
import time
from pathlib import Path
from typing import List, Optional

import pytest
from solders.keypair import Keypair

from solana_copy_trader.config.settings import CacheConfig, ExecutionConfig, SizingConfig
from solana_copy_trader.datalake.positions import apply_buy
from solana_copy_trader.datalake.schemas import (
    ExitReason,
    SwapEvent,
    SwapRequest,
    SwapResult,
    TradeSide,
    TradeStatus,
    User,
    UserSettings,
)
from solana_copy_trader.datalake.storage import SQLiteLedger
from solana_copy_trader.errors import LedgerError, SigningError, TransientSwapError
from solana_copy_trader.execution.trade_runner import TradeRunner
from solana_copy_trader.execution.wallet import Wallet
from solana_copy_trader.monitoring.relay import NotificationRelay
from solana_copy_trader.strategy.sizing import TradeSizer
from solana_copy_trader.utils.cache import TTLCacheRegistry
from solana_copy_trader.utils.constants import AUTO_SELL_SENTINEL, SOL_MINT

ALPHA = "Alpha1111"
TOKEN = "MintA"


class FakeExecutor:
    """Fills at 1000 tokens per SOL after an optional delay."""

    def __init__(self, *errors: Exception, delay: float = 0.0) -> None:
        self._errors = list(errors)
        self._delay = delay
        self._lock = threading.Lock()
        self.requests: List[SwapRequest] = []

    def execute(self, wallet: Wallet, request: SwapRequest) -> SwapResult:
        with self._lock:
            self.requests.append(request)
            error = self._errors.pop(0) if self._errors else None
        if self._delay:
            time.sleep(self._delay)
        if error is not None:
            raise error
        if request.token_in == SOL_MINT:
            amount_out = request.amount_in * 1_000
        else:
            amount_out = request.amount_in * 0.0016
        return SwapResult(signature=f"sig-{len(self.requests)}", amount_in=request.amount_in, amount_out=amount_out)


class StubSigner:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self._error = error

    def signer_for(self, user: User) -> Wallet:
        if self._error is not None:
            raise self._error
        return Wallet(Keypair())


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: List[str] = []

    def notify(self, user_id, message, metadata=None) -> None:
        self.messages.append(message)


class BrokenTradeLedger(SQLiteLedger):
    def _insert_trade(self, con, trade):
        raise sqlite3.OperationalError("disk I/O error")


class BrokenPositionLedger(SQLiteLedger):
    def _write_position(self, con, position):
        raise sqlite3.OperationalError("disk I/O error")


async def _no_sleep(_delay: float) -> None:
    return None


def _setup(tmp_path: Path, executor: FakeExecutor, *, signer=None, ledger_cls=SQLiteLedger, settings=None):
    ledger = ledger_cls(tmp_path / "ledger.sqlite3")
    user = ledger.create_user("100")
    ledger.connect_wallet(user.id, "Wallet1", "secret")
    ledger.update_user_settings(user.id, settings or UserSettings(max_trade_amount=1.0, take_profit_pct=50.0))
    user = ledger.get_user(user.id)
    cache = TTLCacheRegistry(CacheConfig())
    sizing = SizingConfig()
    sizer = TradeSizer(ledger, cache, sizing, balance_lookup=lambda _: 10.0)
    notifier = RecordingNotifier()
    runner = TradeRunner(
        ledger,
        cache,
        sizer,
        executor,
        signer or StubSigner(),
        NotificationRelay(notifier),
        execution_config=ExecutionConfig(retry_base_delay_seconds=0.0),
        sizing_config=sizing,
        sleep=_no_sleep,
    )
    return runner, ledger, notifier, user


def _buy(signature: str, amount_in: float = 2.0) -> SwapEvent:
    return SwapEvent(
        signature=signature,
        side=TradeSide.BUY,
        token_in=SOL_MINT,
        token_out=TOKEN,
        amount_in=amount_in,
        amount_out=amount_in * 900,
        alpha_wallet=ALPHA,
    )


def _sell(signature: str, amount_in: float, balance_after: float) -> SwapEvent:
    return SwapEvent(
        signature=signature,
        side=TradeSide.SELL,
        token_in=TOKEN,
        token_out=SOL_MINT,
        amount_in=amount_in,
        amount_out=amount_in / 1_000,
        alpha_wallet=ALPHA,
        alpha_token_balance_after=balance_after,
    )


def test_copy_buy_records_trade_and_opens_position(tmp_path: Path) -> None:
    runner, ledger, notifier, user = _setup(tmp_path, FakeExecutor())

    trade = asyncio.run(runner.run_copy(user, _buy("sig-a")))

    assert trade is not None and trade.status == TradeStatus.COMPLETED
    assert trade.sol_amount == pytest.approx(0.2)
    assert trade.amount == pytest.approx(200.0)
    assert trade.price == pytest.approx(0.001)
    assert trade.alpha_wallet == ALPHA
    assert trade.source_signature == "sig-a"
    position = ledger.get_position(user.id, TOKEN)
    assert position.total_amount == pytest.approx(200.0)
    assert position.average_price == pytest.approx(0.001)
    assert "Trade Executed Successfully" in notifier.messages[0]


def test_jobs_for_same_user_and_token_are_serialised(tmp_path: Path) -> None:
    executor = FakeExecutor(delay=0.05)
    runner, ledger, _, user = _setup(tmp_path, executor)

    async def scenario() -> None:
        await asyncio.gather(runner.run_copy(user, _buy("sig-1")), runner.run_copy(user, _buy("sig-2")))

    asyncio.run(scenario())

    # The second job saw the first job's position and scaled down.
    assert [request.amount_in for request in executor.requests] == pytest.approx([0.2, 0.1])
    trades = ledger.list_trades(user.id)
    assert len(trades) == 2
    assert ledger.get_position(user.id, TOKEN).total_amount == pytest.approx(300.0)


def test_transient_failures_then_success_record_one_trade(tmp_path: Path) -> None:
    executor = FakeExecutor(TransientSwapError("timeout"), TransientSwapError("429"))
    runner, ledger, _, user = _setup(tmp_path, executor)

    trade = asyncio.run(runner.run_copy(user, _buy("sig-a")))

    assert trade.attempts == 3
    trades = ledger.list_trades(user.id)
    assert len(trades) == 1
    assert trades[0].status == TradeStatus.COMPLETED


def test_exhausted_retries_record_failed_trade_and_notify(tmp_path: Path) -> None:
    executor = FakeExecutor(*(TransientSwapError("no route yet") for _ in range(3)))
    runner, ledger, notifier, user = _setup(tmp_path, executor)

    trade = asyncio.run(runner.run_copy(user, _buy("sig-a")))

    assert trade.status == TradeStatus.FAILED
    assert trade.attempts == 3
    assert trade.sol_amount == pytest.approx(0.2)
    assert ledger.get_position(user.id, TOKEN) is None
    assert "Trade Failed" in notifier.messages[0]
    assert "no route yet" in notifier.messages[0]


def test_signing_failure_aborts_without_trade(tmp_path: Path) -> None:
    executor = FakeExecutor()
    runner, ledger, notifier, user = _setup(tmp_path, executor, signer=StubSigner(SigningError("cannot decrypt")))

    assert asyncio.run(runner.run_copy(user, _buy("sig-a"))) is None
    assert executor.requests == []
    assert ledger.list_trades(user.id) == []
    assert "could not sign" in notifier.messages[0]


def test_rejected_decision_is_silent(tmp_path: Path) -> None:
    executor = FakeExecutor()
    runner, ledger, notifier, user = _setup(tmp_path, executor)

    assert asyncio.run(runner.run_copy(user, _sell("sig-s", 10.0, 0.0))) is None
    assert executor.requests == []
    assert notifier.messages == []


def test_copy_sell_reduces_position_and_realises_pnl(tmp_path: Path) -> None:
    runner, ledger, _, user = _setup(tmp_path, FakeExecutor())

    async def scenario():
        await runner.run_copy(user, _buy("sig-b"))
        return await runner.run_copy(user, _sell("sig-s", 500.0, 500.0))

    trade = asyncio.run(scenario())

    assert trade.side == TradeSide.SELL
    assert trade.amount == pytest.approx(100.0)
    assert trade.price == pytest.approx(0.0016)
    assert trade.profit_loss == pytest.approx((0.0016 - 0.001) * 100.0)
    assert ledger.get_position(user.id, TOKEN).total_amount == pytest.approx(100.0)


def test_ledger_write_failure_fails_the_job(tmp_path: Path) -> None:
    runner, _, _, user = _setup(tmp_path, FakeExecutor(), ledger_cls=BrokenTradeLedger)

    with pytest.raises(LedgerError):
        asyncio.run(runner.run_copy(user, _buy("sig-a")))


def test_position_write_failure_leaves_no_trade_behind(tmp_path: Path) -> None:
    runner, ledger, _, user = _setup(tmp_path, FakeExecutor(), ledger_cls=BrokenPositionLedger)

    with pytest.raises(LedgerError):
        asyncio.run(runner.run_copy(user, _buy("sig-a")))

    assert ledger.list_trades(user.id) == []
    assert ledger.get_position(user.id, TOKEN) is None


def test_exit_sells_full_position_with_auto_sell_tag(tmp_path: Path) -> None:
    executor = FakeExecutor()
    runner, ledger, notifier, user = _setup(tmp_path, executor)
    position = apply_buy(None, user_id=user.id, token_address=TOKEN, quantity=10.0, price=1.0)
    ledger.upsert_position(position)

    trade = asyncio.run(runner.run_exit(user, position, ExitReason.TAKE_PROFIT, 1.6))

    assert executor.requests[0].amount_in == pytest.approx(10.0)
    assert executor.requests[0].token_out == SOL_MINT
    assert trade.alpha_wallet == AUTO_SELL_SENTINEL
    assert trade.exit_reason == ExitReason.TAKE_PROFIT
    closed = ledger.get_position(user.id, TOKEN)
    assert closed.is_open is False
    assert closed.total_amount == 0
    assert "Auto-Sell Executed" in notifier.messages[0]


def test_exit_skipped_when_threshold_no_longer_met(tmp_path: Path) -> None:
    executor = FakeExecutor()
    runner, ledger, _, user = _setup(tmp_path, executor)
    position = apply_buy(None, user_id=user.id, token_address=TOKEN, quantity=10.0, price=1.0)
    ledger.upsert_position(position)

    assert asyncio.run(runner.run_exit(user, position, ExitReason.TAKE_PROFIT, 1.1)) is None
    assert executor.requests == []
