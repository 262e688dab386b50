"""One copy-trade or auto-sell job: size, sign, execute, record, notify."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Tuple

from ..config.settings import ExecutionConfig, SizingConfig, get_app_config
from ..datalake.positions import apply_buy, apply_sell, realized_pnl
from ..datalake.schemas import (
    ExitReason,
    Position,
    SwapEvent,
    SwapRequest,
    SwapResult,
    Trade,
    TradeSide,
    TradeStatus,
    User,
)
from ..datalake.storage import Ledger
from ..errors import ErrorKind, SigningError
from ..ingestion.token_metadata import TokenMetadataService
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import METRICS
from ..monitoring.relay import NotificationRelay
from ..strategy.auto_sell import exit_for_position
from ..strategy.sizing import TradeSizer
from ..utils.cache import CacheNamespace, TTLCacheRegistry
from ..utils.constants import AUTO_SELL_SENTINEL, SOL_MINT, utc_now
from .locks import KeyedLocks
from .retry import ExecutionOutcome, execute_with_retry
from .swap_executor import SwapExecutor
from .wallet import SigningProvider, Wallet


class TradeRunner:
    """Runs jobs for one (user, token) pair at a time.

    Every job holds the pair's lock for its whole lifetime and re-reads the
    position from the ledger before acting, so a job never sizes against a
    position another job is about to change. Only the final outcome of a
    swap is persisted; ledger write failures propagate to the caller.
    """

    def __init__(
        self,
        ledger: Ledger,
        cache: TTLCacheRegistry,
        sizer: TradeSizer,
        executor: SwapExecutor,
        signer: SigningProvider,
        relay: NotificationRelay,
        *,
        locks: Optional[KeyedLocks] = None,
        metadata: Optional[TokenMetadataService] = None,
        execution_config: Optional[ExecutionConfig] = None,
        sizing_config: Optional[SizingConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        app_config = None
        if execution_config is None or sizing_config is None:
            app_config = get_app_config()
        self._ledger = ledger
        self._cache = cache
        self._sizer = sizer
        self._executor = executor
        self._signer = signer
        self._relay = relay
        self._locks = locks or KeyedLocks()
        self._metadata = metadata
        self._execution = execution_config or app_config.execution
        self._sizing = sizing_config or app_config.sizing
        self._sleep = sleep
        self._logger = get_logger(__name__)

    @property
    def locks(self) -> KeyedLocks:
        return self._locks

    async def run_copy(self, user: User, event: SwapEvent) -> Optional[Trade]:
        """Mirror ``event`` for ``user``; return the recorded trade, if any."""

        token = event.traded_token
        async with self._locks.hold((user.id, token)):
            with correlation_scope(f"{event.signature[:16]}:{user.id}", user_id=user.id, token=token):
                self._cache.invalidate(CacheNamespace.POSITIONS, (user.id, token))
                decision = await asyncio.to_thread(self._sizer.decide, user, event)
                if not decision.proceed or token is None or decision.side is None:
                    return None
                wallet = await self._resolve_signer(user)
                if wallet is None:
                    return None
                if decision.side == TradeSide.BUY:
                    request = SwapRequest(SOL_MINT, token, decision.amount, user.settings.slippage_bps)
                else:
                    request = SwapRequest(token, SOL_MINT, decision.amount, user.settings.slippage_bps)
                self._logger.info(
                    "Copying %s of %s for user %s (%s)",
                    decision.side.value,
                    token,
                    user.id,
                    decision.reason,
                    extra={"amount": decision.amount, "alpha_wallet": event.alpha_wallet},
                )
                outcome = await self._execute(wallet, request)
                symbol = await self._symbol(token)
                alpha = event.alpha_wallet or ""
                if not outcome.ok:
                    if outcome.error_kind == ErrorKind.SIGNING:
                        await self._relay.signing_failed(user, outcome.error or "signing failed")
                        return None
                    trade = await self._record_failure(
                        user, decision.side, token, symbol, request, outcome, alpha, event.signature
                    )
                    await self._relay.trade_failed(user, trade)
                    return trade
                trade, _ = await self._record_fill(
                    user,
                    decision.side,
                    token,
                    symbol,
                    outcome,
                    alpha,
                    source_signature=event.signature,
                )
                await self._relay.trade_succeeded(user, trade)
                return trade

    async def run_exit(
        self, user: User, position: Position, reason: ExitReason, price: float
    ) -> Optional[Trade]:
        """Sell the whole of ``position`` for ``reason`` at roughly ``price``.

        The threshold is re-checked against the ledger's current position, so
        a position closed or re-averaged since the sweep read it is left alone.
        """

        token = position.token_address
        async with self._locks.hold((user.id, token)):
            with correlation_scope(f"auto-sell:{user.id}:{token[:8]}", user_id=user.id, token=token):
                self._cache.invalidate(CacheNamespace.POSITIONS, (user.id, token))
                current = await asyncio.to_thread(self._ledger.get_position, user.id, token)
                if current is None or not current.is_open or current.total_amount <= self._sizing.dust_epsilon:
                    return None
                if exit_for_position(current, user.settings, price) != reason:
                    self._logger.info("Exit %s for %s no longer applies", reason.value, token)
                    return None
                wallet = await self._resolve_signer(user)
                if wallet is None:
                    return None
                self._logger.info(
                    "Auto-sell %s: selling %.6f %s for user %s",
                    reason.value,
                    current.total_amount,
                    token,
                    user.id,
                    extra={"entry_price": current.average_price, "price": price},
                )
                request = SwapRequest(token, SOL_MINT, current.total_amount, user.settings.slippage_bps)
                outcome = await self._execute(wallet, request)
                symbol = current.token_symbol or await self._symbol(token)
                if not outcome.ok:
                    METRICS.increment("auto_sell_failed")
                    if outcome.error_kind == ErrorKind.SIGNING:
                        await self._relay.signing_failed(user, outcome.error or "signing failed")
                        return None
                    trade = await self._record_failure(
                        user,
                        TradeSide.SELL,
                        token,
                        symbol,
                        request,
                        outcome,
                        AUTO_SELL_SENTINEL,
                        None,
                        exit_reason=reason,
                    )
                    await self._relay.auto_sell_failed(user, current, trade.error or "unknown error")
                    return trade
                trade, _ = await self._record_fill(
                    user,
                    TradeSide.SELL,
                    token,
                    symbol,
                    outcome,
                    AUTO_SELL_SENTINEL,
                    exit_reason=reason,
                )
                METRICS.increment(f"auto_sell_executed.{reason.value}")
                await self._relay.auto_sell_executed(user, trade, current, trade.price or price)
                return trade

    async def _resolve_signer(self, user: User) -> Optional[Wallet]:
        try:
            return self._signer.signer_for(user)
        except SigningError as exc:
            METRICS.increment("signing_failed")
            self._logger.error("Signing unavailable for user %s: %s", user.id, exc)
            await self._relay.signing_failed(user, str(exc))
            return None

    async def _execute(self, wallet: Wallet, request: SwapRequest) -> ExecutionOutcome:
        cfg = self._execution
        return await execute_with_retry(
            self._executor,
            wallet,
            request,
            max_attempts=cfg.retry_max_attempts,
            base_delay=cfg.retry_base_delay_seconds,
            max_delay=cfg.retry_max_delay_seconds,
            sleep=self._sleep,
        )

    async def _symbol(self, token: str) -> Optional[str]:
        if self._metadata is None:
            return None
        try:
            return await asyncio.to_thread(self._metadata.symbol, token)
        except Exception as exc:  # noqa: BLE001 - a missing symbol never blocks a trade
            self._logger.debug("No symbol for %s: %s", token, exc)
            return None

    async def _record_failure(
        self,
        user: User,
        side: TradeSide,
        token: str,
        symbol: Optional[str],
        request: SwapRequest,
        outcome: ExecutionOutcome,
        alpha: str,
        source_signature: Optional[str],
        *,
        exit_reason: Optional[ExitReason] = None,
    ) -> Trade:
        trade = Trade(
            user_id=user.id,
            alpha_wallet=alpha,
            token_address=token,
            side=side,
            amount=request.amount_in if side == TradeSide.SELL else 0.0,
            price=0.0,
            status=TradeStatus.FAILED,
            sol_amount=request.amount_in if side == TradeSide.BUY else 0.0,
            token_symbol=symbol,
            source_signature=source_signature,
            attempts=outcome.attempts,
            error=outcome.error,
            exit_reason=exit_reason,
        )
        METRICS.increment("trades_failed")
        return await asyncio.to_thread(self._ledger.append_trade, trade)

    async def _record_fill(
        self,
        user: User,
        side: TradeSide,
        token: str,
        symbol: Optional[str],
        outcome: ExecutionOutcome,
        alpha: str,
        *,
        source_signature: Optional[str] = None,
        exit_reason: Optional[ExitReason] = None,
    ) -> Tuple[Trade, Optional[Position]]:
        result = outcome.result
        if result is None:
            raise ValueError("cannot record a fill without a swap result")
        try:
            return await asyncio.to_thread(
                self._persist_fill,
                user,
                side,
                token,
                symbol,
                result,
                outcome.attempts,
                alpha,
                source_signature,
                exit_reason,
            )
        finally:
            self._cache.invalidate(CacheNamespace.POSITIONS, (user.id, token))

    def _persist_fill(
        self,
        user: User,
        side: TradeSide,
        token: str,
        symbol: Optional[str],
        result: SwapResult,
        attempts: int,
        alpha: str,
        source_signature: Optional[str],
        exit_reason: Optional[ExitReason],
    ) -> Tuple[Trade, Optional[Position]]:
        # The trade and the position share one timestamp so a buy is always
        # attributable to the position it opened.
        now = utc_now()
        position = self._ledger.get_position(user.id, token)
        updated: Optional[Position] = None
        profit_loss: Optional[float] = None
        if side == TradeSide.BUY:
            quantity, sol_amount = result.amount_out, result.amount_in
            price = sol_amount / quantity if quantity > 0 else 0.0
            if quantity > 0:
                updated = apply_buy(
                    position,
                    user_id=user.id,
                    token_address=token,
                    quantity=quantity,
                    price=price,
                    token_symbol=symbol,
                    now=now,
                )
        else:
            quantity, sol_amount = result.amount_in, result.amount_out
            price = sol_amount / quantity if quantity > 0 else 0.0
            if position is not None and position.is_open and quantity > 0:
                sold = min(quantity, position.total_amount)
                profit_loss = realized_pnl(position, quantity=sold, price=price)
                updated = apply_sell(position, quantity=sold, dust_epsilon=self._sizing.dust_epsilon, now=now)
            else:
                self._logger.warning("Sell of %s for user %s filled without an open position", token, user.id)

        trade = self._ledger.record_fill(
            Trade(
                user_id=user.id,
                alpha_wallet=alpha,
                token_address=token,
                side=side,
                amount=quantity,
                price=price,
                status=TradeStatus.COMPLETED,
                sol_amount=sol_amount,
                signature=result.signature,
                token_symbol=symbol,
                source_signature=source_signature,
                attempts=attempts,
                profit_loss=profit_loss,
                exit_reason=exit_reason,
                created_at=now,
            ),
            updated,
        )
        METRICS.increment("trades_completed")
        self._logger.info(
            "Recorded %s trade %s for user %s",
            side.value,
            trade.id,
            user.id,
            extra={"signature": result.signature, "price": price, "profit_loss": profit_loss},
        )
        return trade, updated


__all__ = ["TradeRunner"]
