"""Entrypoint for the Solana copy-trading core."""

from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Optional

from .config.settings import get_app_config
from .engine import CopyTradeEngine
from .monitoring import bootstrap_observability
from .monitoring.logger import get_logger
from .monitoring.metrics import METRICS

logger = get_logger(__name__)


async def run_once() -> None:
    """Run a single position sweep and exit."""

    config = get_app_config()
    bootstrap_observability(config)
    engine = CopyTradeEngine(config)
    try:
        report = await engine.sweep_positions()
        logger.info(
            "Sweep complete: %d user(s), %d position(s), %d exit(s) triggered, %d executed",
            report.users,
            report.positions,
            report.triggered,
            report.executed,
        )
    finally:
        await engine.stop()


async def run_loop(interval_seconds: Optional[float] = None, max_cycles: Optional[int] = None) -> None:
    """Sweep on a fixed period until interrupted or ``max_cycles`` is reached."""

    config = get_app_config()
    bootstrap_observability(config)
    engine = CopyTradeEngine(config)
    interval = interval_seconds if interval_seconds is not None else config.monitor.interval_seconds
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - platforms without signal support
            pass

    logger.info("Copy trader running in %s mode, sweeping every %.1fs", config.mode.active.value, interval)
    cycle = 0
    try:
        while not stop_event.is_set():
            cycle += 1
            try:
                await engine.sweep_positions()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Loop iteration %d failed: %s", cycle, exc, extra={"cycle": cycle})
            if max_cycles is not None and cycle >= max_cycles:
                break
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(interval, 0.0))
            except asyncio.TimeoutError:
                pass
    finally:
        await engine.stop()
        logger.info("Shut down after %d cycle(s)", cycle, extra={"metrics": METRICS.snapshot()})


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Solana copy-trading position monitor")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single take-profit/stop-loss sweep and exit.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between sweeps (default: monitor.interval_seconds from config)",
    )
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Optional limit to the number of sweeps to execute.",
    )
    args = parser.parse_args()
    if args.once:
        asyncio.run(run_once())
    else:
        asyncio.run(run_loop(args.interval, args.max_cycles))


if __name__ == "__main__":
    main()
