"""SOL-denominated token prices from Jupiter."""

from __future__ import annotations

from typing import Callable, Dict, Iterable, Optional

import requests

from ..config.settings import SwapConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.cache import CacheNamespace, TTLCacheRegistry
from ..utils.constants import LAMPORTS_PER_SOL, SOL_MINT


class PriceOracle:
    """Indicative prices in SOL per token.

    Uses Jupiter's price API (token USD / SOL USD) and falls back to a
    one-token quote into SOL. Prices live in the shared cache under
    :attr:`CacheNamespace.PRICE`; failures return ``None`` and are never
    cached.
    """

    def __init__(
        self,
        cache: TTLCacheRegistry,
        config: Optional[SwapConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        decimals_lookup: Optional[Callable[[str], int]] = None,
    ) -> None:
        self._cache = cache
        self._config = config or get_app_config().swap
        self._session = session or requests.Session()
        self._decimals = decimals_lookup or (lambda _mint: 9)
        self._logger = get_logger(__name__)

    def get_price(self, mint: str) -> Optional[float]:
        return self.get_prices([mint]).get(mint)

    def get_prices(self, mints: Iterable[str]) -> Dict[str, float]:
        requested = [mint for mint in dict.fromkeys(mints) if mint]
        prices: Dict[str, float] = {}
        missing = []
        for mint in requested:
            if mint == SOL_MINT:
                prices[mint] = 1.0
                continue
            cached = self._cache.get(CacheNamespace.PRICE, mint)
            if cached is not None:
                prices[mint] = cached
            else:
                missing.append(mint)
        if not missing:
            return prices

        usd = self._request([*missing, SOL_MINT])
        sol_usd = usd.get(SOL_MINT)
        for mint in missing:
            price: Optional[float] = None
            token_usd = usd.get(mint)
            if token_usd is not None and sol_usd:
                price = token_usd / sol_usd
            else:
                price = self._quote_price(mint)
            if price is None or price <= 0:
                METRICS.increment("price.unavailable")
                self._logger.warning("No price available for %s", mint)
                continue
            self._cache.set(CacheNamespace.PRICE, mint, price)
            prices[mint] = price
        return prices

    def _request(self, mints: Iterable[str]) -> Dict[str, float]:
        ids = ",".join(mints)
        try:
            response = self._session.get(
                str(self._config.price_url),
                params={"ids": ids},
                headers={"Accept": "application/json"},
                timeout=self._config.http_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            self._logger.warning("Jupiter price request failed: %s", exc)
            return {}
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        prices: Dict[str, float] = {}
        if not isinstance(data, dict):
            return prices
        for mint, value in data.items():
            if not isinstance(value, dict):
                continue
            raw = value.get("usdPrice") or value.get("price")
            try:
                prices[mint] = float(raw)
            except (TypeError, ValueError):
                continue
        return prices

    def _quote_price(self, mint: str) -> Optional[float]:
        decimals = self._decimals(mint)
        params = {
            "inputMint": mint,
            "outputMint": SOL_MINT,
            "amount": str(10 ** decimals),
            "slippageBps": "50",
        }
        try:
            response = self._session.get(
                str(self._config.quote_url), params=params, timeout=self._config.http_timeout
            )
            response.raise_for_status()
            quote = response.json()
            return int(quote["outAmount"]) / LAMPORTS_PER_SOL
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            self._logger.warning("Quote-based price fallback failed for %s: %s", mint, exc)
            return None


__all__ = ["PriceOracle"]
