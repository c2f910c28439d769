"""
Derived views over meal records: daily totals, day grouping, and the
seven-day nutrient series.

Days are local calendar days. Pass ``tz`` to pin the zone; by default the
system's local zone is used.
"""

import math
from dataclasses import dataclass
from datetime import date, timedelta, tzinfo
from typing import Iterable, Optional

from .types import NUTRIENT_FIELDS, MealRecord, MealState, NutritionTotals, parse_utc_timestamp, sort_key

_DAY_LABELS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class DailyGoals:
    """Daily nutrition targets. Calories in kcal, the rest in grams."""
    calories: float = 2000
    protein: float = 150
    fats: float = 65
    carbs: float = 250

    @classmethod
    def from_dict(cls, data: dict) -> "DailyGoals":
        defaults = cls()
        values = {}
        for name in NUTRIENT_FIELDS:
            raw = data.get(name, getattr(defaults, name))
            try:
                values[name] = float(raw)
            except (TypeError, ValueError):
                values[name] = getattr(defaults, name)
        return cls(**values)

    def to_dict(self) -> dict:
        return {name: getattr(self, name) for name in NUTRIENT_FIELDS}

    def goal(self, nutrient: str) -> float:
        if nutrient not in NUTRIENT_FIELDS:
            raise KeyError(nutrient)
        return getattr(self, nutrient)


@dataclass(frozen=True)
class DayValue:
    """One point of a weekly series."""
    date: date
    value: int
    day_label: str


def local_date(record: MealRecord, tz: Optional[tzinfo] = None) -> Optional[date]:
    """Calendar day a meal belongs to, or None for an unparseable timestamp."""
    try:
        return parse_utc_timestamp(record.timestamp).astimezone(tz).date()
    except (ValueError, TypeError):
        return None


def daily_totals(
    records: Iterable[MealRecord],
    day: date,
    tz: Optional[tzinfo] = None,
) -> NutritionTotals:
    """Sum the totals of the day's analyzed meals.

    Meals still pending or in error do not count, even when they carry an
    earlier analysis.
    """
    total = NutritionTotals()
    for record in records:
        if record.state is not MealState.COMPLETE or record.analysis is None:
            continue
        if local_date(record, tz) == day:
            total = total + record.analysis.totals
    return total


def group_by_day(
    records: Iterable[MealRecord],
    tz: Optional[tzinfo] = None,
) -> dict[date, list[MealRecord]]:
    """Bucket meals by day: newest day first, newest meal first within a day."""
    groups: dict[date, list[MealRecord]] = {}
    for record in records:
        day = local_date(record, tz)
        if day is None:
            continue
        groups.setdefault(day, []).append(record)
    return {
        day: sorted(groups[day], key=lambda r: sort_key(r.timestamp), reverse=True)
        for day in sorted(groups, reverse=True)
    }


def weekly_series(
    records: Iterable[MealRecord],
    nutrient: str,
    today: date,
    tz: Optional[tzinfo] = None,
) -> list[DayValue]:
    """
    Seven daily values of one nutrient, oldest first, ending with ``today``.

    Any meal with an analysis counts toward its day. Values are rounded to
    whole units.

    Raises:
        ValidationError: Unknown nutrient
    """
    days = [today - timedelta(days=i) for i in range(6, -1, -1)]
    sums = {d: 0.0 for d in days}
    for record in records:
        if record.analysis is None:
            continue
        day = local_date(record, tz)
        if day in sums:
            sums[day] += record.analysis.totals.value(nutrient)
    # Validate the nutrient even when there is nothing to sum
    NutritionTotals().value(nutrient)
    return [DayValue(date=d, value=_round_half_up(sums[d]), day_label=_DAY_LABELS[d.weekday()]) for d in days]


def series_average(series: list[DayValue]) -> int:
    if not series:
        return 0
    return _round_half_up(sum(p.value for p in series) / len(series))


def goal_progress(totals: NutritionTotals, goals: DailyGoals) -> dict[str, float]:
    """Fraction of each daily goal reached (1.0 = goal met; may exceed 1)."""
    progress = {}
    for nutrient in NUTRIENT_FIELDS:
        goal = goals.goal(nutrient)
        progress[nutrient] = totals.value(nutrient) / goal if goal > 0 else 0.0
    return progress


def format_day_header(day: date, today: date) -> str:
    """Heading for a day group, e.g. "Today - Monday, June 10"."""
    label = f"{day:%A}, {day:%B} {day.day}"
    if day == today:
        return f"Today - {label}"
    if day == today - timedelta(days=1):
        return f"Yesterday - {label}"
    return label
