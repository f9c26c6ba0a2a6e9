"""
Billing date calculation.

Calendar-correct date arithmetic for recurring charges. Month and year
steps clamp to the last valid day of the target month, so Jan 31 + 1 month
is Feb 29 in a leap year and Feb 28 otherwise.
"""

import calendar
from collections.abc import Iterator
from datetime import date, datetime, timedelta
from typing import TypeVar

from subs.billing.exceptions import BillingValidationError
from subs.billing.subscriptions.models import BillingPeriod, parse_period

DateT = TypeVar("DateT", date, datetime)


def _add_months(base: DateT, months: int) -> DateT:
    month_index = base.month - 1 + months
    year = base.year + (month_index // 12)
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=day)


def next_payment_date(
    from_date: DateT, period: BillingPeriod | str, interval: int = 1
) -> DateT:
    """
    Compute the next charge date.

    Args:
        from_date: Anchor date; a datetime keeps its time of day and tzinfo
        period: day, week, month or year
        interval: Number of periods to add (>= 1)

    Returns:
        A value of the same type as ``from_date``

    Raises:
        BillingValidationError: If interval < 1 or the period is unknown
    """
    if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
        raise BillingValidationError(
            "Billing interval must be a positive integer", field="billing_interval", value=interval
        )

    period = parse_period(period)

    if period == BillingPeriod.DAY:
        return from_date + timedelta(days=interval)
    if period == BillingPeriod.WEEK:
        return from_date + timedelta(weeks=interval)
    if period == BillingPeriod.MONTH:
        return _add_months(from_date, interval)
    return _add_months(from_date, 12 * interval)


def iter_payment_dates(
    from_date: DateT,
    period: BillingPeriod | str,
    interval: int = 1,
    count: int | None = 1,
    until: DateT | None = None,
) -> Iterator[DateT]:
    """
    Yield future charge dates, each anchored on the previous one.

    Stops after ``count`` dates, or at the first date past ``until``. With
    ``count=None`` the ``until`` bound is required.
    """
    if count is None and until is None:
        raise BillingValidationError("An unbounded schedule needs an end date", field="until")
    current = from_date
    produced = 0
    while count is None or produced < count:
        current = next_payment_date(current, period, interval)
        if until is not None and current > until:
            return
        yield current
        produced += 1


def trial_end_date(start: DateT, trial_days: int) -> DateT:
    """Trial end is the start plus N whole days."""
    if trial_days < 0:
        raise BillingValidationError("Trial days cannot be negative", field="trial_days", value=trial_days)
    return start + timedelta(days=trial_days)


def format_billing_period(period: BillingPeriod | str, interval: int = 1) -> str:
    """Human readable cadence, e.g. "Every month" or "Every 3 weeks"."""
    period = parse_period(period)
    if interval == 1:
        return f"Every {period.value}"
    return f"Every {interval} {period.value}s"
