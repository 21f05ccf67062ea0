# Lifecycle jobs: periodic scans, queue workers and their scheduler
from billing_engine.jobs.scans import LifecycleScans
from billing_engine.jobs.scheduler import LifecycleScheduler, ScheduledScan, default_schedule
from billing_engine.jobs.workers import LifecycleWorkers, WorkerRunner

__all__ = [
    "LifecycleScans",
    "LifecycleScheduler",
    "ScheduledScan",
    "default_schedule",
    "LifecycleWorkers",
    "WorkerRunner",
]
