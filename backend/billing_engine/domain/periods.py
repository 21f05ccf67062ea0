"""
Period Calculator

Billing period and trial window arithmetic in UTC.

End-of-month policy: adding months or years clamps to the last day of the
target month (Jan 31 + 1 month = Feb 28/29, Feb 29 + 1 year = Feb 28), via
dateutil's relativedelta. Nothing here reads the wall clock except
SystemClock; callers inject a Clock.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from dateutil.relativedelta import relativedelta

from billing_engine.domain.subscription import BillingCycle


SECONDS_PER_DAY = 24 * 60 * 60

CYCLE_DURATIONS = {
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.SIX_MONTHLY: relativedelta(months=6),
    BillingCycle.YEARLY: relativedelta(years=1),
    BillingCycle.LIFETIME: relativedelta(years=100),
}


class Clock(Protocol):
    """Time source. Every "now" in the engine comes from one of these."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BillingPeriod:
    """Start/end of a billing period and whether it renews automatically."""
    start: datetime
    end: datetime
    auto_renew: bool


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def calculate_end_date(start: datetime, billing_cycle: BillingCycle) -> datetime:
    """
    Compute the end of a billing period starting at ``start``.

    Pure and deterministic: the result depends only on the arguments.

    Args:
        start: Period start (naive values are taken as UTC)
        billing_cycle: Cycle to add

    Returns:
        Period end in UTC, always strictly after ``start``

    Raises:
        ValueError: Unknown billing cycle
    """
    try:
        duration = CYCLE_DURATIONS[BillingCycle(billing_cycle)]
    except (KeyError, ValueError):
        raise ValueError(f"Invalid billing cycle: {billing_cycle}")

    return ensure_utc(start) + duration


def calculate_dates(billing_cycle: BillingCycle, clock: Clock) -> BillingPeriod:
    """Period starting now; LIFETIME is the only cycle that never auto-renews."""
    start = ensure_utc(clock.now())
    return BillingPeriod(
        start=start,
        end=calculate_end_date(start, billing_cycle),
        auto_renew=BillingCycle(billing_cycle) != BillingCycle.LIFETIME,
    )


def days_between(start: datetime, end: datetime) -> int:
    """
    Ceiling day count from ``start`` to ``end``.

    Negative when ``end`` is before ``start``; a partial day counts as a
    whole day.
    """
    delta = ensure_utc(end) - ensure_utc(start)
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


def add_days(value: datetime, days: int) -> datetime:
    return ensure_utc(value) + timedelta(days=days)


def add_hours(value: datetime, hours: int) -> datetime:
    return ensure_utc(value) + timedelta(hours=hours)


def trial_end_for(start: datetime, trial_days: int) -> datetime:
    """End of a free trial of ``trial_days`` days starting at ``start``."""
    if trial_days <= 0:
        raise ValueError("trial_days must be positive")
    return add_days(start, trial_days)
