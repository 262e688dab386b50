"""Manual token blacklist management."""

from __future__ import annotations

import argparse
from datetime import datetime
from typing import List, Optional, Tuple

from ..config.settings import get_app_config
from ..datalake.storage import SQLiteLedger
from ..monitoring.logger import get_logger
from ..utils.cache import CacheNamespace, TTLCacheRegistry

BLACKLIST_KEY = "all"


class TokenBlacklistService:
    """Add, remove and list blacklisted mints.

    Every write drops the cached blacklist so the sizer sees the change on
    its next decision.
    """

    def __init__(self, ledger: SQLiteLedger, cache: TTLCacheRegistry) -> None:
        self._ledger = ledger
        self._cache = cache
        self._logger = get_logger(__name__)

    def blacklisted(self) -> frozenset[str]:
        return self._cache.get_or_load(
            CacheNamespace.BLACKLIST, BLACKLIST_KEY, self._ledger.get_blacklisted_tokens
        )

    def is_blacklisted(self, mint_address: str) -> bool:
        return mint_address in self.blacklisted()

    def add(self, mint_address: str, reason: Optional[str] = None) -> None:
        self._ledger.add_blacklisted_token(mint_address, reason)
        self._cache.invalidate(CacheNamespace.BLACKLIST, BLACKLIST_KEY)
        self._logger.info("Token %s blacklisted (%s)", mint_address, reason or "no reason given")

    def remove(self, mint_address: str) -> bool:
        removed = self._ledger.remove_blacklisted_token(mint_address)
        self._cache.invalidate(CacheNamespace.BLACKLIST, BLACKLIST_KEY)
        if removed:
            self._logger.info("Token %s removed from blacklist", mint_address)
        return removed

    def list(self) -> List[Tuple[str, Optional[str], datetime]]:
        return self._ledger.list_blacklist()


def _cli() -> None:  # pragma: no cover - CLI utility
    parser = argparse.ArgumentParser(description="Manage the copy-trading token blacklist")
    sub = parser.add_subparsers(dest="command", required=True)

    add_cmd = sub.add_parser("add", help="Blacklist a token")
    add_cmd.add_argument("mint", help="Token mint address")
    add_cmd.add_argument("--reason", default=None, help="Human readable reason")

    remove_cmd = sub.add_parser("remove", help="Remove a token from the blacklist")
    remove_cmd.add_argument("mint", help="Token mint address")

    sub.add_parser("list", help="List blacklisted tokens")

    args = parser.parse_args()
    config = get_app_config()
    ledger = SQLiteLedger(config.storage.database_path, max_alpha_wallets=config.limits.max_alpha_wallets)
    service = TokenBlacklistService(ledger, TTLCacheRegistry(config.cache))

    if args.command == "add":
        service.add(args.mint, args.reason)
    elif args.command == "remove":
        if not service.remove(args.mint):
            print(f"{args.mint} was not blacklisted")
    elif args.command == "list":
        for mint, reason, created_at in service.list():
            print(f"{mint}: {reason or '-'} (added {created_at.isoformat()})")


if __name__ == "__main__":  # pragma: no cover - CLI utility
    _cli()


__all__ = ["BLACKLIST_KEY", "TokenBlacklistService"]
