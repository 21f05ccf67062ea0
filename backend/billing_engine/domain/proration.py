"""
Proration Engine

Computes the credit/charge for a mid-cycle plan change.

Downgrades are refused by the subscription service before this module runs;
only upgrades (tier or cycle moving up) are ever prorated.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from billing_engine.domain.money import (
    MINIMUM_CHARGE,
    MINOR_UNIT,
    ZERO,
    Number,
    quantize_money,
    to_decimal,
)
from billing_engine.domain.periods import days_between


@dataclass(frozen=True)
class ProrationResult:
    """
    Breakdown of a plan change.

    ``net_amount`` is what gets charged now (never negative).
    ``refund_amount`` is a credit carried to the next invoice when the new
    plan is worth less for the remaining days than the current one.
    """
    credit: Decimal
    charge: Decimal
    days_remaining: int
    total_days: int
    days_used: int
    net_amount: Decimal
    refund_amount: Decimal
    is_new_billing_cycle: bool

    def to_dict(self) -> dict:
        return {
            "credit": self.credit,
            "charge": self.charge,
            "days_remaining": self.days_remaining,
            "total_days": self.total_days,
            "days_used": self.days_used,
            "net_amount": self.net_amount,
            "refund_amount": self.refund_amount,
            "is_new_billing_cycle": self.is_new_billing_cycle,
        }


def _collapse_dust(value: Decimal) -> Decimal:
    """Amounts smaller than one cent in absolute value become exactly zero."""
    if abs(value) < MINOR_UNIT:
        return ZERO
    return value


def calculate_proration(
    start: datetime,
    end: datetime,
    current_price: Number,
    new_price: Number,
    now: datetime,
) -> ProrationResult:
    """
    Prorate a plan change at ``now`` for the period [start, end).

    Args:
        start: Current period start
        end: Current period end
        current_price: Price of the current plan for a full period
        new_price: Price of the target plan for a full period
        now: Moment of the change

    Returns:
        ProrationResult with all money fields quantized to two places
    """
    current_price = quantize_money(current_price)
    new_price = quantize_money(new_price)

    total_days = max(1, days_between(start, end))
    days_remaining = days_between(now, end)
    days_used = min(max(0, days_between(start, now)), total_days)

    # Period over (or ends today): bill the new plan as a fresh cycle
    if days_remaining < 1:
        return ProrationResult(
            credit=ZERO,
            charge=new_price,
            days_remaining=max(0, days_remaining),
            total_days=total_days,
            days_used=total_days,
            net_amount=new_price,
            refund_amount=ZERO,
            is_new_billing_cycle=True,
        )

    days_remaining = min(days_remaining, total_days)
    ratio = Decimal(days_remaining) / Decimal(total_days)

    credit = _collapse_dust(quantize_money(ratio * current_price))
    charge = _collapse_dust(quantize_money(ratio * new_price))

    raw_net = charge - credit
    net_amount = _collapse_dust(quantize_money(raw_net))
    refund_amount = ZERO

    if net_amount < ZERO:
        refund_amount = quantize_money(credit - charge)
        net_amount = ZERO
    elif ZERO < net_amount < MINIMUM_CHARGE:
        net_amount = MINIMUM_CHARGE

    return ProrationResult(
        credit=credit,
        charge=charge,
        days_remaining=days_remaining,
        total_days=total_days,
        days_used=days_used,
        net_amount=net_amount,
        refund_amount=refund_amount,
        is_new_billing_cycle=False,
    )


def calculate_prorated_refund(
    start: datetime,
    end: datetime,
    price: Number,
    now: datetime,
) -> Decimal:
    """
    Unused share of ``price`` when a subscription is cancelled at ``now``.

    Returns zero once the period is over.
    """
    total_days = max(1, days_between(start, end))
    days_remaining = days_between(now, end)

    if days_remaining <= 0:
        return ZERO

    days_remaining = min(days_remaining, total_days)
    refund = to_decimal(price) * Decimal(days_remaining) / Decimal(total_days)
    return _collapse_dust(quantize_money(refund))
