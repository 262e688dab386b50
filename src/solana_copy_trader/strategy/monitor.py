"""Periodic take-profit / stop-loss sweep over open positions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..config.settings import MonitorConfig, get_app_config
from ..datalake.schemas import ExitReason, Position, TradeStatus, User
from ..datalake.storage import Ledger
from ..errors import LedgerError, LimiterClosedError
from ..execution.rate_limiter import RateLimiter
from ..execution.trade_runner import TradeRunner
from ..ingestion.pricing import PriceOracle
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.cache import CacheNamespace, TTLCacheRegistry
from .auto_sell import exit_for_position

AUTO_SELL_USERS_KEY = "all"


@dataclass(frozen=True, slots=True)
class SweepReport:
    users: int = 0
    positions: int = 0
    triggered: int = 0
    executed: int = 0
    failed: int = 0


class PositionMonitor:
    """Scans every auto-sell user's open positions on a fixed period.

    A triggered exit goes through the same rate limiter, lock and retry
    policy as a copy trade. One position's failure is logged and counted and
    does not stop the rest of the sweep; expired cache entries are swept at
    the end of every cycle.
    """

    def __init__(
        self,
        ledger: Ledger,
        cache: TTLCacheRegistry,
        oracle: PriceOracle,
        limiter: RateLimiter,
        runner: TradeRunner,
        config: Optional[MonitorConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._cache = cache
        self._oracle = oracle
        self._limiter = limiter
        self._runner = runner
        self._config = config or get_app_config().monitor
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Future] = None
        self._logger = get_logger(__name__)

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        """Cancel the periodic loop and let an in-progress sweep finish."""

        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            finally:
                self._task = None
        current, self._current = self._current, None
        if current is not None and not current.done():
            try:
                await current
            except Exception as exc:  # noqa: BLE001 - already shutting down
                self._logger.error("Final sweep failed during shutdown: %s", exc)

    async def _run(self) -> None:
        while True:
            self._current = asyncio.ensure_future(self.sweep())
            try:
                # Shielded so cancelling the loop never cancels submitted exits.
                await asyncio.shield(self._current)
            except Exception as exc:  # noqa: BLE001 - the loop outlives any single sweep
                METRICS.increment("monitor.sweep_failed")
                self._logger.exception("Position sweep failed: %s", exc)
            await self._sleep(self._config.interval_seconds)

    async def sweep(self) -> SweepReport:
        users = await asyncio.to_thread(self.auto_sell_users)
        candidates: List[Tuple[User, Position]] = []
        for user in users:
            try:
                positions = await asyncio.to_thread(self._ledger.get_open_positions, user.id)
            except LedgerError as exc:
                self._logger.warning("Open positions unavailable for user %s: %s", user.id, exc)
                continue
            candidates.extend((user, position) for position in positions)

        prices: Dict[str, float] = {}
        if candidates:
            mints = sorted({position.token_address for _, position in candidates})
            try:
                prices = await asyncio.to_thread(self._oracle.get_prices, mints)
            except Exception as exc:  # noqa: BLE001 - price sources are best-effort
                METRICS.increment("price.unavailable")
                self._logger.warning("Price lookup failed for %d token(s): %s", len(mints), exc)

        exits: List[Tuple[User, Position, ExitReason, float]] = []
        for user, position in candidates:
            price = prices.get(position.token_address)
            reason = exit_for_position(position, user.settings, price)
            if reason is None or price is None:
                continue
            self._logger.info(
                "%s triggered for user %s on %s at %.8f (entry %.8f)",
                reason.value,
                user.id,
                position.token_address,
                price,
                position.average_price,
            )
            exits.append((user, position, reason, price))

        results = await asyncio.gather(
            *(self._submit_exit(*item) for item in exits), return_exceptions=True
        )
        executed = failed = 0
        for (user, position, reason, _), result in zip(exits, results):
            if isinstance(result, BaseException):
                failed += 1
                METRICS.increment("jobs_failed")
                self._logger.error(
                    "Auto-sell job for user %s on %s failed: %s",
                    user.id,
                    position.token_address,
                    result,
                    exc_info=(type(result), result, result.__traceback__),
                )
            elif result:
                executed += 1

        removed = self._cache.sweep()
        report = SweepReport(
            users=len(users),
            positions=len(candidates),
            triggered=len(exits),
            executed=executed,
            failed=failed,
        )
        METRICS.increment("monitor.sweeps")
        METRICS.gauge("monitor.open_positions", report.positions)
        self._logger.debug(
            "Sweep checked %d position(s) for %d user(s), %d exit(s), %d cache entries expired",
            report.positions,
            report.users,
            report.triggered,
            removed,
        )
        return report

    def auto_sell_users(self) -> Tuple[User, ...]:
        try:
            return self._cache.get_or_load(
                CacheNamespace.AUTO_SELL_USERS, AUTO_SELL_USERS_KEY, self._ledger.get_users_with_auto_sell
            )
        except LedgerError as exc:
            self._logger.warning("Auto-sell users unavailable: %s", exc)
            return ()

    async def _submit_exit(self, user: User, position: Position, reason: ExitReason, price: float) -> bool:
        try:
            trade = await self._limiter.submit(lambda: self._runner.run_exit(user, position, reason, price))
        except LimiterClosedError:
            self._logger.info("Limiter closed, skipping %s for user %s", reason.value, user.id)
            return False
        return trade is not None and trade.status == TradeStatus.COMPLETED


__all__ = ["AUTO_SELL_USERS_KEY", "PositionMonitor", "SweepReport"]
