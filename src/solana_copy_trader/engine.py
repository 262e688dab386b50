"""Wires the copy-trading core together from :class:`AppConfig`."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

import requests
from solders.pubkey import Pubkey

from .config.settings import AppConfig, AppMode, get_app_config
from .datalake.schemas import AlphaWallet, Position, SwapEvent, Trade, User, UserSettings, UserStats
from .datalake.storage import SQLiteLedger
from .errors import SettingsValidationError
from .execution.dispatcher import CopyTradeDispatcher
from .execution.locks import KeyedLocks
from .execution.rate_limiter import RateLimiter
from .execution.solana_client import SolanaRpcClient
from .execution.swap_executor import DryRunSwapExecutor, JupiterSwapExecutor, SwapExecutor
from .execution.trade_runner import TradeRunner
from .execution.wallet import SigningProvider, StoredKeySigningProvider
from .ingestion.pricing import PriceOracle
from .ingestion.token_controls import TokenBlacklistService
from .ingestion.token_metadata import TokenMetadataService
from .monitoring.logger import get_logger
from .monitoring.notifier import Notifier, TelegramNotifier
from .monitoring.relay import NotificationRelay
from .strategy.monitor import AUTO_SELL_USERS_KEY, PositionMonitor, SweepReport
from .strategy.sizing import TradeSizer
from .utils.cache import CacheNamespace, TTLCacheRegistry


class CopyTradeEngine:
    """Public operations of the copy-trading core.

    Collaborators that talk to the outside world (ledger, swap executor,
    signer, notifier, price oracle) can be injected; anything omitted is
    built from ``config``. In dry-run mode swaps are quoted but never
    signed or broadcast.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        ledger: Optional[SQLiteLedger] = None,
        cache: Optional[TTLCacheRegistry] = None,
        executor: Optional[SwapExecutor] = None,
        signer: Optional[SigningProvider] = None,
        notifier: Optional[Notifier] = None,
        oracle: Optional[PriceOracle] = None,
        rpc: Optional[SolanaRpcClient] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config or get_app_config()
        cfg = self.config
        self._logger = get_logger(__name__)
        self.ledger = ledger or SQLiteLedger(
            cfg.storage.database_path, max_alpha_wallets=cfg.limits.max_alpha_wallets
        )
        self.cache = cache or TTLCacheRegistry(cfg.cache)
        self._session = session or requests.Session()
        self._rpc = rpc or SolanaRpcClient(cfg.rpc)
        self.metadata = TokenMetadataService(
            self.cache, cfg.swap, session=self._session, rpc_decimals=self._rpc.get_token_decimals
        )
        self.oracle = oracle or PriceOracle(
            self.cache, cfg.swap, session=self._session, decimals_lookup=self.metadata.decimals
        )
        if executor is None:
            jupiter = JupiterSwapExecutor(
                self._rpc, cfg.swap, session=self._session, decimals_lookup=self.metadata.decimals
            )
            executor = DryRunSwapExecutor(jupiter) if cfg.mode.active == AppMode.DRY_RUN else jupiter
        self.executor = executor
        self.relay = NotificationRelay(
            notifier or TelegramNotifier(cfg.monitoring, session=self._session, chat_lookup=self._chat_id)
        )
        self.blacklist = TokenBlacklistService(self.ledger, self.cache)
        self.sizer = TradeSizer(self.ledger, self.cache, cfg.sizing, balance_lookup=self._rpc.get_balance)
        self.limiter = RateLimiter.from_config(cfg.execution)
        self.runner = TradeRunner(
            self.ledger,
            self.cache,
            self.sizer,
            self.executor,
            signer or StoredKeySigningProvider(),
            self.relay,
            locks=KeyedLocks(),
            metadata=self.metadata,
            execution_config=cfg.execution,
            sizing_config=cfg.sizing,
        )
        self.dispatcher = CopyTradeDispatcher(self.ledger, self.cache, self.limiter, self.runner)
        self.monitor = PositionMonitor(
            self.ledger, self.cache, self.oracle, self.limiter, self.runner, cfg.monitor
        )

    # Lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self.config.monitor.enabled:
            await self.monitor.start()
        self._logger.info(
            "Copy trader started in %s mode", self.config.mode.active.value, extra={"monitor": self.config.monitor.enabled}
        )

    async def stop(self) -> None:
        """Stop the monitor, refuse new jobs and wait for admitted ones."""

        await self.monitor.stop()
        await self.limiter.close()
        self._logger.info("Copy trader stopped")

    # Trading -----------------------------------------------------------

    async def on_swap_event(self, event: SwapEvent, alpha_address: str) -> List[Optional[Trade]]:
        return await self.dispatcher.on_swap_event(event, alpha_address)

    async def on_swap_payload(self, payload: Dict[str, Any]) -> List[Optional[Trade]]:
        """Accept a normalised ingestion payload carrying ``alphaWalletAddress``."""

        event = SwapEvent.from_payload(payload)
        return await self.dispatcher.on_swap_event(event, event.alpha_wallet or "")

    async def sweep_positions(self) -> SweepReport:
        return await self.monitor.sweep()

    # Users -------------------------------------------------------------

    def register_user(self, telegram_id: str) -> User:
        return self.ledger.create_user(telegram_id)

    def connect_wallet(self, user_id: int, wallet_address: str, encrypted_private_key: str) -> None:
        _validate_address(wallet_address)
        self.ledger.connect_wallet(user_id, wallet_address, encrypted_private_key)
        self._invalidate_user_views()

    def update_user_settings(self, user_id: int, settings: UserSettings) -> UserSettings:
        settings.validate(self.config.limits)
        self.ledger.update_user_settings(user_id, settings)
        self._invalidate_user_views()
        return settings

    async def emergency_stop_user(self, user_id: int, reason: str = "Manual emergency stop") -> User:
        """Halt all trading for a user: no auto-sell and a zero trade size."""

        user = self._require_user(user_id)
        halted = replace(user.settings, auto_sell_enabled=False, max_trade_amount=0.0)
        self.ledger.update_user_settings(user_id, halted)
        self._invalidate_user_views()
        self._logger.warning("Emergency stop for user %s: %s", user_id, reason)
        updated = replace(user, settings=halted)
        await self.relay.emergency_stop(updated, reason)
        return updated

    def user_stats(self, user_id: int) -> UserStats:
        return self.ledger.user_stats(user_id)

    def open_positions(self, user_id: int) -> Tuple[Position, ...]:
        return self.ledger.get_open_positions(user_id)

    def recent_trades(self, user_id: int, limit: int = 10) -> List[Trade]:
        return self.ledger.list_trades(user_id, limit=limit)

    # Alpha wallets -----------------------------------------------------

    def add_alpha_wallet(self, user_id: int, address: str, nickname: Optional[str] = None) -> AlphaWallet:
        _validate_address(address)
        wallet = self.ledger.add_alpha_wallet(user_id, address, nickname)
        self.cache.invalidate(CacheNamespace.TRACKERS, address)
        return wallet

    def remove_alpha_wallet(self, user_id: int, address: str) -> bool:
        removed = self.ledger.deactivate_alpha_wallet(user_id, address)
        self.cache.invalidate(CacheNamespace.TRACKERS, address)
        return removed

    def list_alpha_wallets(self, user_id: int) -> List[AlphaWallet]:
        return self.ledger.list_alpha_wallets(user_id)

    def watched_alpha_addresses(self) -> List[str]:
        """Alpha wallets with at least one active subscription, for ingestion to watch."""

        return self.ledger.list_active_alpha_addresses()

    # Internals ---------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self.ledger.get_user(user_id)
        if user is None:
            raise LookupError(f"unknown user {user_id}")
        return user

    def _chat_id(self, user_id: int) -> Optional[str]:
        user = self.ledger.get_user(user_id)
        return user.telegram_id if user else None

    def _invalidate_user_views(self) -> None:
        # Tracker lists embed user settings, so every alpha's entry is stale.
        self.cache.clear(CacheNamespace.TRACKERS)
        self.cache.invalidate(CacheNamespace.AUTO_SELL_USERS, AUTO_SELL_USERS_KEY)


def _validate_address(address: str) -> None:
    try:
        Pubkey.from_string(address)
    except ValueError as exc:
        raise SettingsValidationError(f"invalid Solana address: {address}") from exc


__all__ = ["CopyTradeEngine"]
