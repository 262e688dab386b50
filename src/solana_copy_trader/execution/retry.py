"""Retrying wrapper around a single swap execution."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..datalake.schemas import SwapRequest, SwapResult
from ..errors import ErrorKind, TransientSwapError, classify
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .swap_executor import SwapExecutor
from .wallet import Wallet

_logger = get_logger(__name__)

RETRYABLE = (TransientSwapError, TimeoutError, ConnectionError)


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Final result of a retried swap; exactly one of result/error is set."""

    attempts: int
    result: Optional[SwapResult] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    METRICS.increment("swap_retries")
    _logger.warning(
        "Swap attempt %d failed, retrying in %.2fs: %s",
        state.attempt_number,
        state.next_action.sleep if state.next_action else 0.0,
        exc,
        extra={"attempt": state.attempt_number},
    )


async def execute_with_retry(
    executor: SwapExecutor,
    wallet: Wallet,
    request: SwapRequest,
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ExecutionOutcome:
    """Run ``executor.execute`` with exponential backoff on transient errors.

    Delays start at ``base_delay`` and double per attempt. Non-transient
    errors stop immediately. Every attempt is logged and counted; the
    outcome carries the number of attempts made.
    """

    attempts = 0
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, min=base_delay, max=max_delay),
        retry=retry_if_exception_type(RETRYABLE),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                METRICS.increment("swap_attempts")
                _logger.info(
                    "Swap attempt %d/%d %s -> %s",
                    attempts,
                    max_attempts,
                    request.token_in,
                    request.token_out,
                    extra={"attempt": attempts, "amount_in": request.amount_in},
                )
                with METRICS.time("swap_latency_seconds"):
                    result = await asyncio.to_thread(executor.execute, wallet, request)
    except Exception as exc:  # noqa: BLE001 - converted into an explicit outcome
        kind = classify(exc)
        METRICS.observe("swap_attempts_per_trade", attempts)
        METRICS.increment(f"swap_failed.{kind.value}")
        _logger.error(
            "Swap failed after %d attempt(s) [%s]: %s",
            attempts,
            kind.value,
            exc,
            extra={"attempt": attempts, "error_kind": kind.value},
        )
        return ExecutionOutcome(attempts=attempts, error_kind=kind, error=str(exc))
    METRICS.observe("swap_attempts_per_trade", attempts)
    _logger.info(
        "Swap confirmed after %d attempt(s): %s",
        attempts,
        result.signature,
        extra={"attempt": attempts, "signature": result.signature},
    )
    return ExecutionOutcome(attempts=attempts, result=result)


__all__ = ["ExecutionOutcome", "RETRYABLE", "execute_with_retry"]
