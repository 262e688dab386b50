"""Shared constants for Solana copy trading."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


LAMPORTS_PER_SOL = 1_000_000_000

# Wrapped SOL; every copy trade is quoted against it.
SOL_MINT = "So11111111111111111111111111111111111111112"

# Alpha wallet recorded on trades opened by the position monitor.
AUTO_SELL_SENTINEL = "AUTO_SELL"

__all__ = ["utc_now", "LAMPORTS_PER_SOL", "SOL_MINT", "AUTO_SELL_SENTINEL"]
