"""
Pending transaction sweeper.

Periodically fails ledger entries that stayed pending past the configured
timeout, and refreshes the pending-depth gauge.
"""
import asyncio
import signal
from datetime import timedelta
from typing import Any, Optional

import structlog

from mpesa_checkout.config import get_settings
from mpesa_checkout.core.reconciliation import ReconciliationEngine
from mpesa_checkout.database.connection import close_db, get_session_factory
from mpesa_checkout.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(engine: ReconciliationEngine, older_than: Optional[timedelta] = None) -> int:
    """
    Run one sweep.

    Returns:
        int: Number of entries expired
    """
    expired = await engine.expire_stale_transactions(older_than=older_than)
    summary = await engine.pending_summary()

    if expired:
        logger.warning("pending_sweep_expired_transactions", expired=expired)

    logger.info(
        "pending_sweep_completed",
        expired=expired,
        still_pending=summary["count"],
        oldest_pending_seconds=summary["oldest_pending_seconds"],
    )
    return expired


async def start_pending_sweeper(
    interval_seconds: Optional[int] = None,
    timeout_minutes: Optional[int] = None,
) -> None:
    """
    Start the sweeper loop.

    Args:
        interval_seconds: Seconds between sweeps (defaults to settings)
        timeout_minutes: Age after which a pending entry expires (defaults to settings)
    """
    setup_logging()
    settings = get_settings()

    interval = interval_seconds or settings.sweeper_interval_seconds
    older_than = timedelta(minutes=timeout_minutes or settings.mpesa_pending_timeout_minutes)
    engine = ReconciliationEngine(session_factory=get_session_factory(), settings=settings)

    logger.info(
        "pending_sweeper_starting",
        interval_seconds=interval,
        timeout_minutes=older_than.total_seconds() / 60,
    )

    stop = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("pending_sweeper_shutdown_signal_received", signal=sig)
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while not stop.is_set():
            try:
                await run_sweep(engine, older_than)
            except Exception as e:
                # Keep sweeping; the next run retries the same entries
                logger.error("pending_sweep_failed", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        await close_db()
        logger.info("pending_sweeper_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="M-Pesa pending transaction sweeper")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between sweeps")
    parser.add_argument(
        "--timeout-minutes",
        type=int,
        default=None,
        help="Expire entries pending longer than this",
    )
    args = parser.parse_args()

    asyncio.run(
        start_pending_sweeper(interval_seconds=args.interval, timeout_minutes=args.timeout_minutes)
    )


if __name__ == "__main__":
    main()
