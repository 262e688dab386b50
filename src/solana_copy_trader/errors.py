"""Error taxonomy for copy-trade execution.

Every failure the core can hit maps onto one :class:`ErrorKind`, and the job
runner decides retry, notify or silent skip from the kind alone.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    VALIDATION = "validation"
    SIGNING = "signing"
    LEDGER = "ledger"
    REJECTED = "rejected"


class CopyTradeError(Exception):
    """Base class for errors raised by the copy-trading core."""

    kind: ErrorKind = ErrorKind.REJECTED


class TransientSwapError(CopyTradeError):
    """Timeout, provider rate limit or missing route. Safe to retry."""

    kind = ErrorKind.TRANSIENT


class SwapRejectedError(CopyTradeError):
    """The swap provider refused the request for a non-transient reason."""

    kind = ErrorKind.REJECTED


class SigningError(CopyTradeError):
    """Signing material is missing, undecryptable or malformed."""

    kind = ErrorKind.SIGNING


class LedgerError(CopyTradeError):
    """The durable store failed to read or write."""

    kind = ErrorKind.LEDGER


class MalformedEventError(CopyTradeError):
    """An inbound swap event is missing required fields."""

    kind = ErrorKind.VALIDATION


class SettingsValidationError(CopyTradeError):
    """A user setting is outside its permitted bounds."""

    kind = ErrorKind.VALIDATION


class AlphaWalletLimitError(CopyTradeError):
    """A user tried to track more alpha wallets than allowed."""

    kind = ErrorKind.VALIDATION


class LimiterClosedError(RuntimeError):
    """Raised when work is submitted to a limiter that is shutting down."""


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, CopyTradeError):
        return exc.kind
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.REJECTED


__all__ = [
    "AlphaWalletLimitError",
    "CopyTradeError",
    "ErrorKind",
    "LedgerError",
    "LimiterClosedError",
    "MalformedEventError",
    "SettingsValidationError",
    "SigningError",
    "SwapRejectedError",
    "TransientSwapError",
    "classify",
]
