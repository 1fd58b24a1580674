"""Company holiday calendar loader.

Holidays drive the holiday pay multiplier for time entries that were not
flagged as holiday work when they were recorded.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml  # type: ignore[import-untyped]

_MONTHS = {name.lower(): i for i, name in enumerate(calendar.month_name) if name}
_WEEKDAYS = {name.lower(): i for i, name in enumerate(calendar.day_name)}
_ORDINALS = {"first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5}

_FIXED_RE = re.compile(r"^(\d{1,2})-(\d{1,2})$")
_WEEKDAY_RE = re.compile(r"^([a-z]+)_([a-z]+)_([a-z]+|\d{1,2})$")

RuleType = Literal["fixed", "nth_weekday", "last_weekday"]


@dataclass(frozen=True)
class HolidayRule:
    """When a holiday falls: a fixed month/day, or the nth (or last) weekday of a month."""

    rule_type: RuleType
    month: int
    day: int | None = None
    weekday: int | None = None
    nth: int | None = None

    def date_in(self, year: int) -> date | None:
        """Return the calendar date of the holiday in the given year."""
        if self.rule_type == "fixed":
            if not self.day or self.day > calendar.monthrange(year, self.month)[1]:
                return None
            return date(year, self.month, self.day)
        if self.weekday is None:
            return None
        if self.rule_type == "last_weekday":
            last = date(year, self.month, calendar.monthrange(year, self.month)[1])
            return last - timedelta(days=(last.weekday() - self.weekday) % 7)
        first = date(year, self.month, 1)
        offset = (self.weekday - first.weekday()) % 7 + 7 * ((self.nth or 1) - 1)
        candidate = first + timedelta(days=offset)
        # A fifth weekday can spill into the next month
        return candidate if candidate.month == self.month else None


@dataclass(frozen=True)
class HolidayDefinition:
    """A paid company holiday."""

    name: str
    rule: HolidayRule
    observed: bool = True

    def observed_date(self, year: int) -> date | None:
        """Date the holiday is observed: Saturday moves to Friday, Sunday to Monday."""
        actual = self.rule.date_in(year)
        if actual is None or not self.observed:
            return actual
        shift = {5: -1, 6: 1}.get(actual.weekday(), 0)
        return actual + timedelta(days=shift)

    def matches(self, target_date: date) -> bool:
        # Jan 1 on a Saturday is observed on Dec 31 of the prior year
        return any(
            self.observed_date(year) == target_date
            for year in (target_date.year, target_date.year + 1)
        )


def parse_rule(rule: str) -> HolidayRule:
    """Parse a date rule such as ``12-25``, ``fourth_thursday_november`` or
    ``last_monday_may``. The month may also be given as a number."""
    text = rule.strip().lower()

    fixed = _FIXED_RE.match(text)
    if fixed:
        month, day = int(fixed.group(1)), int(fixed.group(2))
        if not 1 <= month <= 12 or not 1 <= day <= calendar.monthrange(2024, month)[1]:
            raise ValueError(f"date_rule {rule!r} month/day out of range")
        return HolidayRule(rule_type="fixed", month=month, day=day)

    weekday_rule = _WEEKDAY_RE.match(text)
    if weekday_rule:
        ordinal, weekday_name, month_token = weekday_rule.groups()
        month = int(month_token) if month_token.isdigit() else _MONTHS.get(month_token)
        weekday = _WEEKDAYS.get(weekday_name)
        if month and 1 <= month <= 12 and weekday is not None:
            if ordinal == "last":
                return HolidayRule(rule_type="last_weekday", month=month, weekday=weekday)
            if ordinal in _ORDINALS:
                return HolidayRule(
                    rule_type="nth_weekday",
                    month=month,
                    weekday=weekday,
                    nth=_ORDINALS[ordinal],
                )

    raise ValueError(f"Invalid date_rule {rule!r}")


def parse_holidays(data: Any) -> list[HolidayDefinition]:
    """Build holiday definitions from decoded YAML (a list, or ``{holidays: [...]}``)."""
    if data is None:
        return []
    items = data.get("holidays", []) if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError("holidays must be a list or a mapping with 'holidays'")

    definitions = []
    for position, entry in enumerate(items):
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ValueError(f"holidays[{position}] needs a name")
        date_rule = entry.get("date_rule")
        if not isinstance(date_rule, str) or not date_rule:
            raise ValueError(f"holidays[{position}] date_rule must be a string")
        definitions.append(
            HolidayDefinition(
                name=str(entry["name"]),
                rule=parse_rule(date_rule),
                observed=bool(entry.get("observed", True)),
            )
        )
    return definitions


@lru_cache
def load_holiday_calendar(path: str | None = None) -> tuple[HolidayDefinition, ...]:
    """Load company holidays from YAML (packaged ``holidays.yaml`` by default)."""
    source = Path(path) if path else Path(__file__).with_name("holidays.yaml")
    if not source.is_file():
        return ()
    with source.open(encoding="utf-8") as fh:
        return tuple(parse_holidays(yaml.safe_load(fh)))


def holiday_name_for(target_date: date) -> str | None:
    """Return the holiday observed on the date, if any."""
    return next(
        (h.name for h in load_holiday_calendar() if h.matches(target_date)),
        None,
    )


def is_company_holiday(target_date: date) -> bool:
    return holiday_name_for(target_date) is not None
