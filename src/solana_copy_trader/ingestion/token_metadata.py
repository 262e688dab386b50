"""Token symbol/name/decimals lookup with RPC fallback."""

from __future__ import annotations

from typing import Callable, Optional

import requests

from ..config.settings import SwapConfig, get_app_config
from ..datalake.schemas import TokenInfo
from ..monitoring.logger import get_logger
from ..utils.cache import CacheNamespace, TTLCacheRegistry
from ..utils.constants import SOL_MINT

_SOL_INFO = TokenInfo(mint_address=SOL_MINT, symbol="SOL", name="Wrapped SOL", decimals=9)


def _short(mint: str) -> str:
    return f"{mint[:4]}...{mint[-4:]}" if len(mint) > 8 else mint


class TokenMetadataService:
    def __init__(
        self,
        cache: TTLCacheRegistry,
        config: Optional[SwapConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        rpc_decimals: Optional[Callable[[str], int]] = None,
    ) -> None:
        self._cache = cache
        self._config = config or get_app_config().swap
        self._session = session or requests.Session()
        self._rpc_decimals = rpc_decimals
        self._logger = get_logger(__name__)

    def get(self, mint: str) -> TokenInfo:
        if mint == SOL_MINT:
            return _SOL_INFO
        return self._cache.get_or_load(CacheNamespace.TOKEN_METADATA, mint, lambda: self._load(mint))

    def decimals(self, mint: str) -> int:
        return self.get(mint).decimals

    def symbol(self, mint: str) -> str:
        return self.get(mint).symbol

    def _load(self, mint: str) -> TokenInfo:
        info = self._fetch(mint)
        if info is not None:
            return info
        if self._rpc_decimals is None:
            raise LookupError(f"no metadata source could resolve {mint}")
        # RPC errors propagate so an unresolved mint is never cached with guessed decimals.
        decimals = self._rpc_decimals(mint)
        return TokenInfo(mint_address=mint, symbol=_short(mint), name="Unknown Token", decimals=decimals)

    def _fetch(self, mint: str) -> Optional[TokenInfo]:
        try:
            response = self._session.get(
                str(self._config.token_url),
                params={"query": mint},
                timeout=self._config.http_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            self._logger.warning("Token metadata lookup failed for %s: %s", mint, exc)
            return None
        entries = payload if isinstance(payload, list) else [payload]
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            if (entry.get("id") or entry.get("address")) != mint:
                continue
            try:
                decimals = int(entry["decimals"])
            except (KeyError, TypeError, ValueError):
                return None
            return TokenInfo(
                mint_address=mint,
                symbol=str(entry.get("symbol") or _short(mint)),
                name=str(entry.get("name") or "Unknown Token"),
                decimals=decimals,
            )
        return None


__all__ = ["TokenMetadataService"]
