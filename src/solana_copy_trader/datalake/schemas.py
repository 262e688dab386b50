"""Data models shared by the ledger, sizer, executor and monitor."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import MalformedEventError, SettingsValidationError
from ..utils.constants import utc_now


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class ExitReason(str, Enum):
    """Why the position monitor closed a position."""

    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"


@dataclass(frozen=True, slots=True)
class UserSettings:
    """Per-user trading configuration."""

    max_trade_amount: float = 0.1
    slippage_pct: float = 5.0
    take_profit_pct: float = 100.0
    stop_loss_pct: float = 20.0
    auto_sell_enabled: bool = False

    @property
    def slippage_bps(self) -> int:
        return int(round(self.slippage_pct * 100))

    def validate(self, limits: Any) -> "UserSettings":
        """Check every field against ``limits`` (a ``LimitsConfig``).

        A zero ``max_trade_amount`` is allowed; it is how an emergency stop
        halts copy trading for a user.
        """

        problems = []
        if not limits.min_slippage_pct <= self.slippage_pct <= limits.max_slippage_pct:
            problems.append(
                f"slippage must be between {limits.min_slippage_pct}% and {limits.max_slippage_pct}%"
            )
        if self.max_trade_amount != 0 and not (
            limits.min_trade_amount <= self.max_trade_amount <= limits.max_trade_amount
        ):
            problems.append(
                f"max trade amount must be between {limits.min_trade_amount} and {limits.max_trade_amount} SOL"
            )
        if not limits.min_take_profit_pct <= self.take_profit_pct <= limits.max_take_profit_pct:
            problems.append(
                f"take profit must be between {limits.min_take_profit_pct}% and {limits.max_take_profit_pct}%"
            )
        if not limits.min_stop_loss_pct <= self.stop_loss_pct <= limits.max_stop_loss_pct:
            problems.append(
                f"stop loss must be between {limits.min_stop_loss_pct}% and {limits.max_stop_loss_pct}%"
            )
        if problems:
            raise SettingsValidationError("; ".join(problems))
        return self


@dataclass(frozen=True, slots=True)
class User:
    """A subscriber whose wallet mirrors alpha trades."""

    id: int
    telegram_id: str
    wallet_address: Optional[str] = None
    encrypted_private_key: Optional[str] = None
    settings: UserSettings = field(default_factory=UserSettings)
    active: bool = True
    created_at: datetime = field(default_factory=utc_now)

    @property
    def has_wallet(self) -> bool:
        return bool(self.wallet_address)


@dataclass(frozen=True, slots=True)
class AlphaWallet:
    id: int
    user_id: int
    address: str
    nickname: Optional[str] = None
    active: bool = True
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class SwapEvent:
    """A normalised swap observed on an alpha wallet.

    On a buy ``amount_in`` is the SOL the alpha spent; on a sell it is the
    number of tokens the alpha sold. ``alpha_token_balance_after`` is the
    alpha's remaining balance of the sold token when ingestion knows it.
    """

    signature: str
    side: Optional[TradeSide]
    token_in: Optional[str]
    token_out: Optional[str]
    amount_in: float
    amount_out: float
    timestamp: datetime = field(default_factory=utc_now)
    alpha_wallet: Optional[str] = None
    pool_address: Optional[str] = None
    alpha_token_balance_after: Optional[float] = None

    def validate(self) -> "SwapEvent":
        if not self.signature:
            raise MalformedEventError("swap event has no signature")
        if self.side is None:
            raise MalformedEventError(f"swap event {self.signature} has no side")
        if not self.token_in or not self.token_out:
            raise MalformedEventError(f"swap event {self.signature} is missing a token")
        if self.amount_in <= 0:
            raise MalformedEventError(f"swap event {self.signature} has non-positive input amount")
        return self

    @property
    def traded_token(self) -> Optional[str]:
        """The non-SOL leg: bought token on a buy, sold token on a sell."""

        return self.token_out if self.side == TradeSide.BUY else self.token_in

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SwapEvent":
        """Build an event from the normalised ingestion payload."""

        raw_side = payload.get("side") or payload.get("type")
        try:
            side = TradeSide(str(raw_side).lower()) if raw_side else None
        except ValueError:
            side = None
        raw_ts = payload.get("timestamp")
        if isinstance(raw_ts, (int, float)):
            timestamp = datetime.fromtimestamp(float(raw_ts), timezone.utc)
        elif isinstance(raw_ts, str):
            timestamp = datetime.fromisoformat(raw_ts)
        else:
            timestamp = utc_now()
        balance_after = payload.get("alphaTokenBalanceAfter", payload.get("alpha_token_balance_after"))
        return cls(
            signature=str(payload.get("signature") or ""),
            side=side,
            token_in=payload.get("tokenIn") or payload.get("token_in"),
            token_out=payload.get("tokenOut") or payload.get("token_out"),
            amount_in=float(payload.get("amountIn", payload.get("amount_in", 0)) or 0),
            amount_out=float(payload.get("amountOut", payload.get("amount_out", 0)) or 0),
            timestamp=timestamp,
            alpha_wallet=payload.get("alphaWalletAddress") or payload.get("alpha_wallet"),
            pool_address=payload.get("poolAddress") or payload.get("pool_address"),
            alpha_token_balance_after=float(balance_after) if balance_after is not None else None,
        )


@dataclass(frozen=True, slots=True)
class Position:
    """A user's holding in one token.

    ``total_amount`` is in token units and ``average_price`` in SOL per token.
    """

    user_id: int
    token_address: str
    total_amount: float
    average_price: float
    is_open: bool = True
    token_symbol: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    closed_at: Optional[datetime] = None

    @property
    def cost_basis(self) -> float:
        return self.total_amount * self.average_price


@dataclass(frozen=True, slots=True)
class Trade:
    """Append-only record of an executed or failed order."""

    user_id: int
    alpha_wallet: str
    token_address: str
    side: TradeSide
    amount: float
    price: float
    status: TradeStatus
    sol_amount: float = 0.0
    signature: Optional[str] = None
    token_symbol: Optional[str] = None
    source_signature: Optional[str] = None
    attempts: int = 1
    error: Optional[str] = None
    profit_loss: Optional[float] = None
    exit_reason: Optional[ExitReason] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class SwapRequest:
    """Amounts are in UI units of ``token_in``."""

    token_in: str
    token_out: str
    amount_in: float
    slippage_bps: int


@dataclass(frozen=True, slots=True)
class SwapResult:
    signature: str
    amount_in: float
    amount_out: float
    price_impact_pct: float = 0.0


@dataclass(frozen=True, slots=True)
class TradeDecision:
    """Outcome of sizing one swap event for one user.

    ``amount`` is SOL to spend on a buy and tokens to sell on a sell.
    """

    proceed: bool
    amount: float = 0.0
    reason: str = ""
    side: Optional[TradeSide] = None
    token_address: Optional[str] = None

    @classmethod
    def reject(cls, reason: str, *, side: Optional[TradeSide] = None, token: Optional[str] = None) -> "TradeDecision":
        return cls(proceed=False, amount=0.0, reason=reason, side=side, token_address=token)


@dataclass(frozen=True, slots=True)
class TokenInfo:
    mint_address: str
    symbol: str
    name: str
    decimals: int = 9


@dataclass(frozen=True, slots=True)
class UserStats:
    total_trades: int = 0
    buy_count: int = 0
    sell_count: int = 0
    failed_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    average_pnl: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    volume_bought: float = 0.0
    volume_sold: float = 0.0
    open_positions: int = 0


__all__ = [
    "AlphaWallet",
    "ExitReason",
    "Position",
    "SwapEvent",
    "SwapRequest",
    "SwapResult",
    "TokenInfo",
    "Trade",
    "TradeDecision",
    "TradeSide",
    "TradeStatus",
    "User",
    "UserSettings",
    "UserStats",
]
