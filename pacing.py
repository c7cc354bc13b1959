"""Pocket health and spending pace.

Everything here is computed from its arguments without I/O. The one
exception: the day-count helpers read today in the configured timezone when
no reference date is passed, so callers wanting a pure result must pass one.
"""

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from money import CENT
from periods import days_in_month, local_today


class PocketStatus(str, Enum):
    empty = "empty"
    critical = "critical"
    warning = "warning"
    healthy = "healthy"


STATUS_COLORS = {
    PocketStatus.healthy: "rgb(16, 185, 129)",
    PocketStatus.warning: "rgb(245, 158, 11)",
    PocketStatus.critical: "rgb(239, 68, 68)",
    PocketStatus.empty: "rgb(156, 163, 175)",
}

CRITICAL_PERCENT = Decimal("80")
WARNING_PERCENT = Decimal("50")


def classify(allocated: Decimal, spent: Decimal) -> PocketStatus:
    # A fully consumed or overspent pocket is empty, never critical.
    if allocated == 0:
        return PocketStatus.empty
    remaining = allocated - spent
    if remaining <= 0:
        return PocketStatus.empty
    percentage = spent / allocated * 100
    if percentage >= CRITICAL_PERCENT:
        return PocketStatus.critical
    if percentage >= WARNING_PERCENT:
        return PocketStatus.warning
    return PocketStatus.healthy


def recommended_daily_spend(
    allocated: Decimal, spent: Decimal, days_remaining: int
) -> Decimal:
    """Amount per remaining day that lands the pocket exactly at zero.

    Negative when the pocket is already overspent; callers show that as
    "over budget" instead of clamping it.
    """
    if days_remaining <= 0:
        return Decimal("0.00")
    return ((allocated - spent) / days_remaining).quantize(
        CENT, rounding=ROUND_HALF_UP
    )


def average_daily_spend(spent: Decimal, days_elapsed: int) -> Decimal:
    if days_elapsed <= 0:
        return Decimal("0.00")
    return (spent / days_elapsed).quantize(CENT, rounding=ROUND_HALF_UP)


def current_savings(income: Decimal, expenses: Decimal) -> Decimal:
    """What is left of the month's income; negative when spending exceeds it."""
    return (income - expenses).quantize(CENT)


def days_remaining_in_month(reference: Optional[date] = None) -> int:
    reference = reference or local_today()
    return days_in_month(reference.year, reference.month) - reference.day


def days_elapsed_in_month(reference: Optional[date] = None) -> int:
    reference = reference or local_today()
    return reference.day


@dataclass(frozen=True)
class PocketStatusInfo:
    status: PocketStatus
    percentage: int
    remaining: Decimal
    color: str


def pocket_status_info(allocated: Decimal, spent: Decimal) -> PocketStatusInfo:
    status = classify(allocated, spent)
    if allocated > 0:
        percentage = int(
            (spent / allocated * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )
    else:
        percentage = 0
    return PocketStatusInfo(
        status=status,
        percentage=percentage,
        remaining=allocated - spent,
        color=STATUS_COLORS[status],
    )


@dataclass(frozen=True)
class PocketPace:
    info: PocketStatusInfo
    days_remaining: int
    days_elapsed: int
    recommended_daily: Decimal
    average_daily: Decimal

    @property
    def over_budget(self) -> bool:
        return self.recommended_daily < 0


def pace_for(allocated: Decimal, spent: Decimal, reference: date) -> PocketPace:
    remaining_days = days_remaining_in_month(reference)
    elapsed_days = days_elapsed_in_month(reference)
    return PocketPace(
        info=pocket_status_info(allocated, spent),
        days_remaining=remaining_days,
        days_elapsed=elapsed_days,
        recommended_daily=recommended_daily_spend(allocated, spent, remaining_days),
        average_daily=average_daily_spend(spent, elapsed_days),
    )
