from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

ZERO = Decimal("0")


@dataclass(frozen=True)
class ExpenseEntry:
    amount: Decimal
    category: str
    date: date
    note: Optional[str] = None


@dataclass(frozen=True)
class ExpenseSummary:
    total: Decimal
    category_totals: dict[str, Decimal] = field(default_factory=dict)
    count: int = 0


@dataclass(frozen=True)
class MonthlyTotal:
    month: int
    total: Decimal
    count: int


def summarize_expenses(expenses: Iterable[ExpenseEntry]) -> ExpenseSummary:
    total = ZERO
    count = 0
    totals: dict[str, Decimal] = {}
    for expense in expenses:
        amount = coerce_amount(expense.amount)
        total += amount
        count += 1
        totals[expense.category] = totals.get(expense.category, ZERO) + amount
    ordered = dict(sorted(totals.items(), key=lambda item: (-item[1], item[0])))
    return ExpenseSummary(total=total, category_totals=ordered, count=count)


def filter_by_period(
    expenses: Iterable[ExpenseEntry],
    year: Optional[int] = None,
    month: Optional[int] = None,
) -> List[ExpenseEntry]:
    if month is not None and year is None:
        raise ValueError("month filter requires a year.")
    if month is not None and not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12.")
    filtered: List[ExpenseEntry] = []
    for expense in expenses:
        if year is not None and expense.date.year != year:
            continue
        if month is not None and expense.date.month != month:
            continue
        filtered.append(expense)
    return filtered


def monthly_breakdown(expenses: Iterable[ExpenseEntry], year: int) -> List[MonthlyTotal]:
    totals = {month: ZERO for month in range(1, 13)}
    counts = {month: 0 for month in range(1, 13)}
    for expense in filter_by_period(expenses, year=year):
        totals[expense.date.month] += coerce_amount(expense.amount)
        counts[expense.date.month] += 1
    return [
        MonthlyTotal(month=month, total=totals[month], count=counts[month])
        for month in range(1, 13)
    ]


def period_bounds(year: int, month: Optional[int] = None) -> tuple[date, date]:
    """Inclusive first and last date of a year or of one month in it."""
    if month is None:
        return date(year, 1, 1), date(year, 12, 31)
    if not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12.")
    start = date(year, month, 1)
    if month == 12:
        return start, date(year, 12, 31)
    return start, date.fromordinal(date(year, month + 1, 1).toordinal() - 1)


def coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
