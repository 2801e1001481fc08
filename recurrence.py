import logging
import math
from datetime import date, datetime, timedelta
from fractions import Fraction
from typing import Optional

from models import BillingPeriod, Occurrence, RecurringTemplate, utcnow
from periods import MonthPeriod, days_in_month, months_between, resolve_month


logger = logging.getLogger(__name__)

TYPICAL_OCCURRENCES = {
    BillingPeriod.monthly: 1,
    BillingPeriod.bi_weekly: 2,
    BillingPeriod.weekly: 4,
    BillingPeriod.semi_annually: 0,
}

AVERAGE_OCCURRENCES_PER_MONTH = {
    BillingPeriod.monthly: Fraction(1),
    BillingPeriod.bi_weekly: Fraction(26, 12),
    BillingPeriod.weekly: Fraction(52, 12),
    BillingPeriod.semi_annually: Fraction(2, 12),
}

INTERVAL_DAYS = {
    BillingPeriod.bi_weekly: 14,
    BillingPeriod.weekly: 7,
}

LAST_WEEK = 5
SEMI_ANNUAL_MONTHS = 6


def nth_weekday_of_month(year: int, month: int, week: int, weekday: int) -> date:
    """Return the ``week``-th ``weekday`` of the month.

    ``weekday`` counts from Sunday (0) to Saturday (6). Week 5 means the last
    such weekday, even in months that only hold four of them.
    """
    python_weekday = (weekday + 6) % 7
    first = date(year, month, 1)
    day = 1 + (python_weekday - first.weekday()) % 7 + (min(week, LAST_WEEK) - 1) * 7
    dim = days_in_month(year, month)
    while day > dim:
        day -= 7
    return date(year, month, day)


def _monthly_date(template: RecurringTemplate, period: MonthPeriod) -> date:
    if template.recurrence_week is not None and template.recurrence_day is not None:
        return nth_weekday_of_month(
            period.year, period.month, template.recurrence_week, template.recurrence_day
        )
    desired_day = template.day_of_month or 1
    return period.start.replace(day=min(desired_day, period.end.day))


def _interval_dates(start: date, step_days: int, period: MonthPeriod) -> list[date]:
    if start > period.end:
        return []
    current = start
    if current < period.start:
        steps = -(-(period.start - start).days // step_days)
        current = start + timedelta(days=steps * step_days)
    dates = []
    while current <= period.end:
        dates.append(current)
        current += timedelta(days=step_days)
    return dates


def _semi_annual_dates(start: date, period: MonthPeriod) -> list[date]:
    offset = months_between(start, period.start)
    if offset < 0 or offset % SEMI_ANNUAL_MONTHS:
        return []
    return [period.start.replace(day=min(start.day, period.end.day))]


def occurrence_dates(template: RecurringTemplate, month: str) -> list[date]:
    period = resolve_month(month)
    if template.billing_period == BillingPeriod.monthly:
        return [_monthly_date(template, period)]
    if template.start_date is None:
        logger.warning(
            f"occurrence_generation_skipped: template={template.id} reason=missing_start_date"
        )
        return []
    if template.billing_period == BillingPeriod.semi_annually:
        return _semi_annual_dates(template.start_date, period)
    return _interval_dates(
        template.start_date, INTERVAL_DAYS[template.billing_period], period
    )


def generate_occurrences(
    template: RecurringTemplate, month: str, *, now: Optional[datetime] = None
) -> list[Occurrence]:
    now = now or utcnow()
    return [
        Occurrence(
            sequence=index,
            expected_date=expected_date,
            expected_amount=template.amount,
            payment_source_id=template.payment_source_id,
            created_at=now,
            updated_at=now,
        )
        for index, expected_date in enumerate(occurrence_dates(template, month), start=1)
    ]


def typical_occurrence_count(billing_period: BillingPeriod) -> int:
    return TYPICAL_OCCURRENCES[billing_period]


def is_extra_occurrence_month(billing_period: BillingPeriod, count: int) -> bool:
    if billing_period not in INTERVAL_DAYS:
        return False
    return count > TYPICAL_OCCURRENCES[billing_period]


def average_occurrences_per_month(billing_period: BillingPeriod) -> Fraction:
    return AVERAGE_OCCURRENCES_PER_MONTH[billing_period]


def monthly_contribution(amount: int, billing_period: BillingPeriod) -> int:
    value = amount * average_occurrences_per_month(billing_period)
    # half away from zero
    rounded = math.floor(abs(value) + Fraction(1, 2))
    return rounded if value >= 0 else -rounded
