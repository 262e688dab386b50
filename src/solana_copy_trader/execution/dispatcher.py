"""Fan inbound alpha swaps out to every subscribed user."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import List, Optional, Tuple

from ..datalake.schemas import SwapEvent, Trade, User
from ..datalake.storage import Ledger
from ..errors import LedgerError, LimiterClosedError, MalformedEventError
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.cache import CacheNamespace, TTLCacheRegistry
from .rate_limiter import RateLimiter
from .trade_runner import TradeRunner


class CopyTradeDispatcher:
    """Entry point for swap events observed on alpha wallets.

    Each subscribed user gets one job on the shared :class:`RateLimiter`.
    Jobs are isolated: an exception in one user's job is logged and counted
    and never reaches the other users or the caller. A signature already
    seen for the same alpha wallet within the dedupe window is dropped.
    """

    def __init__(
        self,
        ledger: Ledger,
        cache: TTLCacheRegistry,
        limiter: RateLimiter,
        runner: TradeRunner,
    ) -> None:
        self._ledger = ledger
        self._cache = cache
        self._limiter = limiter
        self._runner = runner
        self._logger = get_logger(__name__)

    async def on_swap_event(self, event: SwapEvent, alpha_address: str) -> List[Optional[Trade]]:
        """Process ``event`` for every user tracking ``alpha_address``.

        Returns the per-user results in tracker order (``None`` for skipped
        or failed jobs); callers normally ignore it.
        """

        event = replace(event, alpha_wallet=alpha_address)
        try:
            event.validate()
        except MalformedEventError as exc:
            METRICS.increment("swap_events_malformed")
            self._logger.warning("Dropping malformed swap event: %s", exc)
            return []
        METRICS.increment("swap_events_received")

        seen_key = (event.signature, alpha_address)
        if not self._cache.add_if_absent(CacheNamespace.SEEN_SIGNATURES, seen_key):
            METRICS.increment("swap_events_duplicate")
            self._logger.info("Ignoring redelivered swap %s from %s", event.signature, alpha_address)
            return []

        try:
            trackers = await asyncio.to_thread(self._load_trackers, alpha_address)
        except LedgerError as exc:
            # Nobody was processed, so a redelivery must not count as a duplicate.
            self._cache.invalidate(CacheNamespace.SEEN_SIGNATURES, seen_key)
            self._logger.warning("Tracker lookup for %s failed: %s", alpha_address, exc)
            return []
        if not trackers:
            self._logger.debug("No active trackers for %s", alpha_address)
            return []
        self._logger.info(
            "Dispatching %s %s from %s to %d user(s)",
            event.side.value if event.side else "?",
            event.signature,
            alpha_address,
            len(trackers),
        )

        results = await asyncio.gather(
            *(self._submit(user, event) for user in trackers), return_exceptions=True
        )
        outcomes: List[Optional[Trade]] = []
        for user, result in zip(trackers, results):
            if isinstance(result, BaseException):
                METRICS.increment("jobs_failed")
                self._logger.error(
                    "Copy trade job for user %s failed: %s",
                    user.id,
                    result,
                    exc_info=(type(result), result, result.__traceback__),
                    extra={"user_id": user.id, "signature": event.signature},
                )
                outcomes.append(None)
            else:
                outcomes.append(result)
        return outcomes

    def trackers_for(self, alpha_address: str) -> Tuple[User, ...]:
        """Active users following ``alpha_address``; empty when the ledger is down."""

        try:
            return self._load_trackers(alpha_address)
        except LedgerError as exc:
            self._logger.warning("Tracker lookup for %s failed: %s", alpha_address, exc)
            return ()

    def _load_trackers(self, alpha_address: str) -> Tuple[User, ...]:
        return self._cache.get_or_load(
            CacheNamespace.TRACKERS,
            alpha_address,
            lambda: self._ledger.get_active_trackers(alpha_address),
        )

    async def _submit(self, user: User, event: SwapEvent) -> Optional[Trade]:
        try:
            return await self._limiter.submit(lambda: self._runner.run_copy(user, event))
        except LimiterClosedError:
            METRICS.increment("jobs_rejected_shutdown")
            self._logger.warning("Limiter closed, not copying %s for user %s", event.signature, user.id)
            return None


__all__ = ["CopyTradeDispatcher"]
