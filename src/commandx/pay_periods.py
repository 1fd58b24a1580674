"""Weekly pay period arithmetic.

Pay periods run Monday through Sunday and are paid on the Friday after the
period ends. Overtime is assigned chronologically: the first ``threshold``
hours of the week are regular, everything after is overtime, regardless of
the regular/overtime split recorded on individual entries.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal

from commandx.config.holidays import is_company_holiday
from commandx.models import ZERO, TimeEntry, money

FRIDAY = 4
SUNDAY = 6


@dataclass(frozen=True)
class PayPeriod:
    """A Monday-Sunday work week and the Friday it is paid on."""

    week_start: date
    week_end: date
    payment_date: date
    label: str


@dataclass
class DailyBreakdown:
    day: date
    day_name: str
    regular_hours: Decimal = ZERO
    overtime_hours: Decimal = ZERO
    holiday_hours: Decimal = ZERO

    @property
    def total_hours(self) -> Decimal:
        return self.regular_hours + self.overtime_hours


@dataclass
class PayPeriodTotals:
    regular_hours: Decimal
    overtime_hours: Decimal
    holiday_hours: Decimal
    total_hours: Decimal
    days_worked: int
    regular_pay: Decimal
    overtime_pay: Decimal
    holiday_pay: Decimal
    total_pay: Decimal
    daily_breakdown: list[DailyBreakdown] = field(default_factory=list)


def _week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def _next_friday(day: date) -> date:
    """First Friday strictly after ``day``."""
    return day + timedelta(days=(FRIDAY - day.weekday()) % 7 or 7)


def format_period_label(week_start: date, week_end: date) -> str:
    return (
        f"{week_start:%b} {week_start.day} - "
        f"{week_end:%b} {week_end.day}, {week_end.year}"
    )


def get_payment_date_for_week(week_start: date) -> date:
    """Friday after the Sunday that ends the week starting ``week_start``."""
    week_end = _week_start(week_start) + timedelta(days=6)
    return _next_friday(week_end)


def get_pay_period_for_date(day: date) -> PayPeriod:
    start = _week_start(day)
    end = start + timedelta(days=6)
    return PayPeriod(
        week_start=start,
        week_end=end,
        payment_date=get_payment_date_for_week(start),
        label=format_period_label(start, end),
    )


def get_last_completed_pay_period(reference: date | None = None) -> PayPeriod:
    """The Monday-Sunday week before the week containing ``reference``."""
    reference = reference or date.today()
    return get_pay_period_for_date(_week_start(reference) - timedelta(days=7))


def get_upcoming_pay_date(reference: date | None = None) -> date:
    reference = reference or date.today()
    if reference.weekday() == FRIDAY:
        return reference
    return _next_friday(reference)


def default_pay_period_end(today: date | None = None) -> date:
    """Most recent Sunday strictly before ``today``."""
    today = today or date.today()
    days_back = (today.weekday() - SUNDAY) % 7 or 7
    return today - timedelta(days=days_back)


def next_payment_date(today: date | None = None) -> date:
    """Next Friday strictly after ``today``."""
    return _next_friday(today or date.today())


def get_all_pay_periods_from_entries(entries: Iterable[TimeEntry]) -> list[PayPeriod]:
    """Unique pay periods touched by ``entries``, newest first."""
    periods: dict[date, PayPeriod] = {}
    for entry in entries:
        start = _week_start(entry.entry_date)
        if start not in periods:
            periods[start] = get_pay_period_for_date(entry.entry_date)
    return [periods[key] for key in sorted(periods, reverse=True)]


def split_weekly_overtime(
    hours_in_order: Sequence[Decimal], threshold: Decimal
) -> list[tuple[Decimal, Decimal]]:
    """Split chronologically ordered hours into (regular, overtime) pairs.

    Hours count toward ``threshold`` cumulatively; once it is reached every
    further hour is overtime. An item that crosses the threshold is split.
    """
    result: list[tuple[Decimal, Decimal]] = []
    accumulated = ZERO
    for hours in hours_in_order:
        if accumulated >= threshold:
            regular = ZERO
        elif accumulated + hours > threshold:
            regular = threshold - accumulated
        else:
            regular = hours
        result.append((regular, hours - regular))
        accumulated += hours
    return result


def _is_holiday(entry: TimeEntry) -> bool:
    return entry.is_holiday or is_company_holiday(entry.entry_date)


def _entries_in_period(entries: Iterable[TimeEntry], period: PayPeriod) -> list[TimeEntry]:
    return [e for e in entries if _week_start(e.entry_date) == period.week_start]


def get_daily_breakdown(
    entries: Iterable[TimeEntry], period: PayPeriod
) -> list[DailyBreakdown]:
    """Seven rows (Mon-Sun) of recorded hours for the period."""
    days = [
        DailyBreakdown(day=d, day_name=f"{d:%a}")
        for d in (period.week_start + timedelta(days=i) for i in range(7))
    ]
    by_day = {row.day: row for row in days}
    for entry in _entries_in_period(entries, period):
        row = by_day[entry.entry_date]
        row.regular_hours += entry.regular_hours
        row.overtime_hours += entry.overtime_hours
        if _is_holiday(entry):
            row.holiday_hours += entry.total_hours
    return days


def calculate_pay_period_totals(
    entries: Iterable[TimeEntry],
    period: PayPeriod,
    fallback_rate: Decimal = ZERO,
    overtime_multiplier: Decimal = Decimal("1.5"),
    weekly_threshold: Decimal = Decimal("40"),
    holiday_multiplier: Decimal = Decimal("2.0"),
) -> PayPeriodTotals:
    """Hours and pay for one employee's week.

    Each entry is paid at its snapshotted rate, or ``fallback_rate`` when the
    entry has none. Holiday hours are paid at ``holiday_multiplier``; holiday
    hours that are also overtime get the larger of the two multipliers.
    """
    entries = list(entries)
    breakdown = get_daily_breakdown(entries, period)

    total_hours = sum((d.total_hours for d in breakdown), ZERO)
    holiday_hours = sum((d.holiday_hours for d in breakdown), ZERO)
    days_worked = sum(1 for d in breakdown if d.total_hours > 0)

    ordered = sorted(_entries_in_period(entries, period), key=lambda e: e.entry_date)
    splits = split_weekly_overtime([e.total_hours for e in ordered], weekly_threshold)

    regular_pay = overtime_pay = holiday_pay = ZERO
    holiday_ot_multiplier = max(overtime_multiplier, holiday_multiplier)
    for entry, (regular, overtime) in zip(ordered, splits):
        rate = entry.hourly_rate if entry.hourly_rate is not None else fallback_rate
        if _is_holiday(entry):
            holiday_pay += regular * rate * holiday_multiplier
            holiday_pay += overtime * rate * holiday_ot_multiplier
        else:
            regular_pay += regular * rate
            overtime_pay += overtime * rate * overtime_multiplier

    # Redistribute the daily view so overtime only appears past the threshold
    day_splits = split_weekly_overtime([d.total_hours for d in breakdown], weekly_threshold)
    for day, (regular, overtime) in zip(breakdown, day_splits):
        day.regular_hours = regular
        day.overtime_hours = overtime

    return PayPeriodTotals(
        regular_hours=min(total_hours, weekly_threshold),
        overtime_hours=max(ZERO, total_hours - weekly_threshold),
        holiday_hours=holiday_hours,
        total_hours=total_hours,
        days_worked=days_worked,
        regular_pay=money(regular_pay),
        overtime_pay=money(overtime_pay),
        holiday_pay=money(holiday_pay),
        total_pay=money(regular_pay + overtime_pay + holiday_pay),
        daily_breakdown=breakdown,
    )
