#!/usr/bin/env python3
"""
Lifecycle Scheduler Process

Runs the periodic scans (expiry, renewal, trial conversion, reminders,
orphan cleanup, stale invoices, payment retries) until interrupted.

Usage:
    python -m scripts.run_scheduler              # Run forever
    python -m scripts.run_scheduler --once       # One tick of every scan, then exit
    python -m scripts.run_scheduler --once --only renewal
"""

import asyncio
import argparse
import logging
import signal

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from billing_engine.config.settings import settings
from billing_engine.infrastructure.db.database import close_db, init_db
from billing_engine.infrastructure.queue import get_work_queue
from billing_engine.infrastructure.services import (
    get_dunning_service,
    get_invoice_service,
    get_pricing_service,
    get_reconciliation_service,
)
from billing_engine.jobs import LifecycleScans, LifecycleScheduler, default_schedule

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run(once: bool, only: list[str]) -> None:
    await init_db()

    scans = LifecycleScans(
        get_work_queue(),
        get_pricing_service(),
        get_invoice_service(),
        get_dunning_service(),
        get_reconciliation_service(),
    )
    schedule = default_schedule(scans)
    if only:
        schedule = [scan for scan in schedule if scan.name in only]
    scheduler = LifecycleScheduler(schedule)

    try:
        if once:
            for scan in schedule:
                stats = await scheduler.tick(scan)
                print(f"{scan.name}: {stats}")
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        scheduler.start()
        await stop.wait()
        await scheduler.stop()
    finally:
        await get_work_queue().close()
        await close_db()


async def main():
    parser = argparse.ArgumentParser(description="Run the subscription lifecycle scans")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run every scan once and exit"
    )
    parser.add_argument(
        "--only",
        nargs="*",
        default=[],
        help="Restrict to these scans (expiry, renewal, trial_conversion, expiry_reminder, "
             "orphaned, stale_invoices, payment_retry)"
    )
    args = parser.parse_args()

    await run(once=args.once, only=args.only)


if __name__ == "__main__":
    asyncio.run(main())
