"""Copy-trade sizing and validation."""

from __future__ import annotations

from typing import Callable, Optional

from ..config.settings import SizingConfig, get_app_config
from ..datalake.schemas import Position, SwapEvent, TradeDecision, TradeSide, User
from ..datalake.storage import Ledger
from ..errors import LedgerError, MalformedEventError
from ..ingestion.token_controls import BLACKLIST_KEY
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.cache import CacheNamespace, TTLCacheRegistry


class TradeSizer:
    """Turns an alpha swap into a per-user :class:`TradeDecision`.

    Reads only: the blacklist and positions come through the shared cache
    (loaded from the ledger on a miss), and the buy path asks
    ``balance_lookup`` for the user's SOL balance. Nothing is written and
    no swap is executed.

    Buys are sized as ``min(max_trade_amount, alpha_amount * factor,
    hard_cap)`` and scaled down when the user already holds a position the
    same alpha opened. Sells follow only positions the same alpha opened
    and take a fraction of the holding that mirrors the share the alpha
    sold, capped at ``max_sell_fraction``.
    """

    def __init__(
        self,
        ledger: Ledger,
        cache: TTLCacheRegistry,
        config: Optional[SizingConfig] = None,
        *,
        balance_lookup: Callable[[str], float],
    ) -> None:
        self._ledger = ledger
        self._cache = cache
        self._config = config or get_app_config().sizing
        self._balance_lookup = balance_lookup
        self._logger = get_logger(__name__)

    def decide(self, user: User, event: SwapEvent) -> TradeDecision:
        decision = self._decide(user, event)
        if decision.proceed:
            METRICS.increment(f"decisions_accepted.{decision.side.value}")
        else:
            METRICS.increment(f"decisions_rejected.{decision.reason}")
            self._logger.info(
                "Skipping %s for user %s: %s",
                event.signature,
                user.id,
                decision.reason,
                extra={"user_id": user.id, "token": decision.token_address},
            )
        return decision

    def _decide(self, user: User, event: SwapEvent) -> TradeDecision:
        try:
            event.validate()
        except MalformedEventError:
            return TradeDecision.reject("malformed_event")
        side = event.side
        token = event.traded_token
        if event.token_in == event.token_out:
            return TradeDecision.reject("identical_tokens", side=side, token=token)
        if not event.alpha_wallet:
            return TradeDecision.reject("unknown_alpha_wallet", side=side, token=token)
        if user.settings.max_trade_amount <= 0:
            return TradeDecision.reject("trading_disabled", side=side, token=token)
        try:
            blacklist = self._blacklist()
        except LedgerError as exc:
            self._logger.warning("Blacklist unavailable, refusing to size: %s", exc)
            return TradeDecision.reject("ledger_unavailable", side=side, token=token)
        if event.token_in in blacklist or event.token_out in blacklist:
            return TradeDecision.reject("blacklisted_token", side=side, token=token)
        try:
            position = self.current_position(user.id, token)
        except LedgerError as exc:
            self._logger.warning("Position unavailable for user %s: %s", user.id, exc)
            return TradeDecision.reject("ledger_unavailable", side=side, token=token)
        if side == TradeSide.BUY:
            return self._size_buy(user, event, token, position)
        return self._size_sell(user, event, token, position)

    def _size_buy(
        self, user: User, event: SwapEvent, token: str, position: Optional[Position]
    ) -> TradeDecision:
        cfg = self._config
        amount = min(
            user.settings.max_trade_amount,
            event.amount_in * cfg.proportional_factor,
            cfg.hard_cap_sol,
        )
        reason = "copy_buy"
        if position is not None and position.is_open and self._opened_by(user, token, event.alpha_wallet, position):
            amount *= cfg.position_scale_factor
            reason = "copy_buy_scaled"
        if amount < cfg.min_trade_sol:
            return TradeDecision.reject("below_minimum", side=TradeSide.BUY, token=token)
        if amount > cfg.max_trade_sol:
            return TradeDecision.reject("above_maximum", side=TradeSide.BUY, token=token)
        try:
            balance = self._balance_lookup(user.wallet_address or "")
        except Exception as exc:  # noqa: BLE001 - RPC clients raise assorted transport errors
            self._logger.warning("Balance lookup failed for user %s: %s", user.id, exc)
            return TradeDecision.reject("balance_unavailable", side=TradeSide.BUY, token=token)
        if balance < amount + cfg.fee_buffer_sol:
            return TradeDecision.reject("insufficient_balance", side=TradeSide.BUY, token=token)
        return TradeDecision(proceed=True, amount=amount, reason=reason, side=TradeSide.BUY, token_address=token)

    def _size_sell(
        self, user: User, event: SwapEvent, token: str, position: Optional[Position]
    ) -> TradeDecision:
        cfg = self._config
        if position is None or not position.is_open or position.total_amount <= cfg.dust_epsilon:
            return TradeDecision.reject("no_open_position", side=TradeSide.SELL, token=token)
        if not self._opened_by(user, token, event.alpha_wallet, position):
            return TradeDecision.reject("not_following_alpha", side=TradeSide.SELL, token=token)
        fraction = min(self.sell_fraction(event), cfg.max_sell_fraction)
        amount = min(position.total_amount * fraction, position.total_amount)
        estimated_sol = amount * position.average_price
        if amount <= cfg.dust_epsilon or estimated_sol < cfg.min_trade_sol:
            return TradeDecision.reject("below_minimum", side=TradeSide.SELL, token=token)
        if estimated_sol > cfg.max_trade_sol:
            return TradeDecision.reject("above_maximum", side=TradeSide.SELL, token=token)
        return TradeDecision(proceed=True, amount=amount, reason="copy_sell", side=TradeSide.SELL, token_address=token)

    def sell_fraction(self, event: SwapEvent) -> float:
        """Share of its holding the alpha sold, or the default when unknown."""

        remaining = event.alpha_token_balance_after
        if remaining is None or remaining < 0:
            return self._config.default_sell_fraction
        held_before = event.amount_in + remaining
        if held_before <= 0:
            return self._config.default_sell_fraction
        return event.amount_in / held_before

    def current_position(self, user_id: int, token: str) -> Optional[Position]:
        return self._cache.get_or_load(
            CacheNamespace.POSITIONS,
            (user_id, token),
            lambda: self._ledger.get_position(user_id, token),
        )

    def _blacklist(self) -> frozenset[str]:
        return self._cache.get_or_load(
            CacheNamespace.BLACKLIST, BLACKLIST_KEY, self._ledger.get_blacklisted_tokens
        )

    def _opened_by(self, user: User, token: str, alpha: Optional[str], position: Position) -> bool:
        if not alpha:
            return False
        try:
            return self._ledger.has_buy_from_alpha(user.id, token, alpha, since=position.created_at)
        except LedgerError as exc:
            self._logger.warning("Trade history unavailable for user %s: %s", user.id, exc)
            return False


__all__ = ["TradeSizer"]
