from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta

MIN_SALARY_DAY = 1
MAX_SALARY_DAY = 31

DUE_TODAY = "due_today"
DUE_TOMORROW = "due_tomorrow"
UPCOMING = "upcoming"


class ReminderCalculationError(RuntimeError):
    """Raised when the computed salary date lies before today."""


@dataclass(frozen=True)
class SalaryReminderDue:
    next_date: date
    days_remaining: int

    @property
    def status(self) -> str:
        if self.days_remaining == 0:
            return DUE_TODAY
        if self.days_remaining == 1:
            return DUE_TOMORROW
        return UPCOMING

    @property
    def label(self) -> str:
        if self.days_remaining == 0:
            return "Salary is due today!"
        if self.days_remaining == 1:
            return "Salary is due tomorrow"
        return f"{self.days_remaining} days until salary"


def is_valid_salary_day(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return MIN_SALARY_DAY <= value <= MAX_SALARY_DAY


def next_salary_date(salary_day: int, today: date) -> SalaryReminderDue | None:
    """Next date whose day-of-month is ``salary_day``, counted from ``today``.

    Returns ``None`` for a day outside 1..31. Day 31 lands on the last day of
    a shorter month; days 29 and 30 carry the surplus into the following
    month the way plain calendar overflow does.
    """
    if not is_valid_salary_day(salary_day):
        return None

    year, month = today.year, today.month
    if salary_day < today.day:
        year, month = _following_month(year, month)

    if salary_day == MAX_SALARY_DAY:
        candidate = _last_day_of_month_for_day_31(year, month)
    else:
        candidate = _overflowing_date(year, month, salary_day)

    days_remaining = (candidate - today).days
    if days_remaining < 0:
        raise ReminderCalculationError(
            f"Next salary date {candidate.isoformat()} is before {today.isoformat()}."
        )
    return SalaryReminderDue(next_date=candidate, days_remaining=days_remaining)


def _following_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def _last_day_of_month_for_day_31(year: int, month: int) -> date:
    last_day = monthrange(year, month)[1]
    return date(year, month, min(MAX_SALARY_DAY, last_day))


def _overflowing_date(year: int, month: int, day: int) -> date:
    return date(year, month, 1) + timedelta(days=day - 1)
