"""
Lifecycle Scheduler

Runs each scan on its own interval as an asyncio task. A failing tick is
logged and the loop carries on; the next tick picks up where it left off.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from billing_engine.config.settings import get_settings
from billing_engine.jobs.scans import LifecycleScans


logger = logging.getLogger(__name__)


@dataclass
class ScheduledScan:
    name: str
    interval_seconds: float
    run: Callable[[], Awaitable[dict]]


def default_schedule(scans: LifecycleScans) -> List[ScheduledScan]:
    settings = get_settings()
    return [
        ScheduledScan("expiry", settings.expiry_scan_interval_seconds, scans.scan_expired_subscriptions),
        ScheduledScan("renewal", settings.renewal_scan_interval_seconds, scans.scan_renewals),
        ScheduledScan("trial_conversion", settings.trial_scan_interval_seconds, scans.scan_trial_conversions),
        ScheduledScan("expiry_reminder", settings.reminder_scan_interval_seconds, scans.scan_expiry_reminders),
        ScheduledScan("orphaned", settings.orphan_scan_interval_seconds, scans.scan_orphaned_subscriptions),
        ScheduledScan("stale_invoices", settings.invoice_cleanup_interval_seconds, scans.cancel_stale_invoices),
        ScheduledScan("payment_retry", settings.dunning_scan_interval_seconds, scans.scan_payment_retries),
    ]


class LifecycleScheduler:
    """Owns one background task per scheduled scan."""

    def __init__(self, schedule: List[ScheduledScan]):
        self._schedule = schedule
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def tick(self, scan: ScheduledScan) -> Optional[dict]:
        """Run one scan, swallowing and logging any failure."""
        try:
            return await scan.run()
        except Exception:
            logger.exception(f"[SCHEDULER] Scan '{scan.name}' failed")
            return None

    async def _loop(self, scan: ScheduledScan) -> None:
        assert self._stop is not None
        while not self._stop.is_set():
            await self.tick(scan)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=scan.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._tasks:
            return
        self._stop = asyncio.Event()
        for scan in self._schedule:
            self._tasks[scan.name] = asyncio.create_task(self._loop(scan), name=f"scan:{scan.name}")
        logger.info(f"[SCHEDULER] Started {len(self._tasks)} scans: {', '.join(self._tasks)}")

    async def stop(self) -> None:
        if not self._tasks:
            return
        assert self._stop is not None
        self._stop.set()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        logger.info("[SCHEDULER] Stopped")
