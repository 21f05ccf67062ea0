#!/usr/bin/env python3
"""
Queue Worker Process

Consumes expiry, renewal and payment-retry jobs until interrupted.

Usage:
    python -m scripts.run_worker
"""

import asyncio
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
from billing_engine.jobs import LifecycleWorkers, WorkerRunner

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main():
    await init_db()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    workers = LifecycleWorkers(
        get_pricing_service(),
        get_invoice_service(),
        get_dunning_service(),
        get_reconciliation_service(),
    )
    runner = WorkerRunner(workers.handlers(), drop_handlers=workers.drop_handlers())
    try:
        await runner.run(stop)
    finally:
        await get_work_queue().close()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
