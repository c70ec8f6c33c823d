from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol, Sequence

from openai import OpenAI, OpenAIError

from backend.expense_summary import coerce_amount
from backend.settings import Settings

logger = logging.getLogger(__name__)

INSIGHT_TYPES = {"overspending", "savings_suggestion", "trend", "recommendation"}
SEVERITIES = {"low", "medium", "high"}
OVERSPENDING_SHARE = Decimal("0.4")
HIGH_SEVERITY_SHARE = Decimal("0.5")
TREND_MIN_EXPENSES = 5

SYSTEM_PROMPT = (
    "You are a helpful financial advisor that provides clear, actionable insights "
    "about spending patterns. Always respond with valid JSON only."
)


class InsightsUnavailable(RuntimeError):
    """Raised when a provider cannot produce insights."""


@dataclass(frozen=True)
class ExpenseRecord:
    amount: Decimal
    category: str
    note: str
    date: date


@dataclass(frozen=True)
class Insight:
    type: str
    title: str
    description: str
    category: str | None = None
    severity: str | None = None


@dataclass(frozen=True)
class InsightsReport:
    insights: list[Insight]
    summary: str
    source: str
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InsightsProvider(Protocol):
    def generate(self, expenses: Sequence[ExpenseRecord]) -> InsightsReport: ...


def category_totals(expenses: Iterable[ExpenseRecord]) -> tuple[Decimal, dict[str, Decimal]]:
    total = Decimal("0")
    totals: dict[str, Decimal] = {}
    for expense in expenses:
        amount = coerce_amount(expense.amount)
        total += amount
        totals[expense.category] = totals.get(expense.category, Decimal("0")) + amount
    return total, totals


@dataclass(frozen=True)
class MockInsightsProvider:
    """Rule-based insights used when no OpenAI key is configured."""

    def generate(self, expenses: Sequence[ExpenseRecord]) -> InsightsReport:
        total, totals = category_totals(expenses)
        insights: list[Insight] = []

        top = _top_category(totals)
        if top is not None and total > 0:
            top_name, top_amount = top
            if top_amount > total * OVERSPENDING_SHARE:
                share = _format_number(top_amount / total * 100, places="0.1")
                insights.append(
                    Insight(
                        type="overspending",
                        category=top_name,
                        title=f"High spending in {top_name}",
                        description=(
                            f"You've spent {_format_money(top_amount)} on {top_name}, "
                            f"which is {share}% of your total expenses. Consider reviewing "
                            "this category for potential savings."
                        ),
                        severity="high" if top_amount > total * HIGH_SEVERITY_SHARE else "medium",
                    )
                )

        if total > 0:
            insights.append(
                Insight(
                    type="savings_suggestion",
                    title="Review recurring expenses",
                    description=(
                        "Consider reviewing your recurring expenses. With a total of "
                        f"{_format_money(total)} across {len(expenses)} expenses, you might "
                        "find opportunities to consolidate or eliminate some recurring costs."
                    ),
                )
            )
            insights.append(
                Insight(
                    type="savings_suggestion",
                    title="Set category budgets",
                    description=(
                        "Based on your spending patterns, consider setting monthly budgets "
                        "for each category. This will help you track and control your "
                        "expenses more effectively."
                    ),
                )
            )

        if len(expenses) > TREND_MIN_EXPENSES:
            insights.append(
                Insight(
                    type="trend",
                    title="Multiple expense entries detected",
                    description=(
                        f"You have {len(expenses)} expense entries. This shows active expense "
                        "tracking. Continue monitoring your spending to identify patterns "
                        "over time."
                    ),
                )
            )

        insights.append(
            Insight(
                type="recommendation",
                title="Regular expense review",
                description=(
                    "Review your expenses weekly or monthly to identify trends and "
                    "opportunities for savings. Consistent tracking leads to better "
                    "financial decisions."
                ),
            )
        )

        return InsightsReport(
            insights=insights,
            summary=(
                f"Analyzed {len(expenses)} expenses totaling {_format_money(total)}. "
                f"{len(insights)} insights generated to help optimize your spending."
            ),
            source="mock",
        )


@dataclass
class OpenAIInsightsProvider:
    api_key: str
    model: str = "gpt-3.5-turbo"
    timeout_seconds: float = 20.0
    client: OpenAI | None = None

    def __post_init__(self) -> None:
        if self.client is None:
            self.client = OpenAI(api_key=self.api_key, timeout=self.timeout_seconds)

    def generate(self, expenses: Sequence[ExpenseRecord]) -> InsightsReport:
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(expenses)},
                ],
                temperature=0.7,
                max_tokens=1000,
            )
        except OpenAIError as exc:
            raise InsightsUnavailable("OpenAI request failed") from exc

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise InsightsUnavailable("OpenAI returned an empty response")
        return parse_report(content, source="openai")


@dataclass(frozen=True)
class CompositeInsightsProvider:
    primary: InsightsProvider
    fallback: InsightsProvider

    def generate(self, expenses: Sequence[ExpenseRecord]) -> InsightsReport:
        try:
            return self.primary.generate(expenses)
        except InsightsUnavailable as exc:
            logger.warning(f"Falling back to mock insights: {exc}")
            return self.fallback.generate(expenses)


def build_insights_provider(settings: Settings) -> InsightsProvider:
    if not settings.openai_api_key:
        return MockInsightsProvider()
    return CompositeInsightsProvider(
        primary=OpenAIInsightsProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout_seconds=settings.openai_timeout_seconds,
        ),
        fallback=MockInsightsProvider(),
    )


def build_prompt(expenses: Sequence[ExpenseRecord]) -> str:
    total, totals = category_totals(expenses)
    breakdown = "\n".join(
        f"- {category}: {_format_money(amount)}" for category, amount in totals.items()
    )
    return f"""You are a financial advisor analyzing expense data. Analyze the following expenses and provide insights:

Total Expenses: {_format_money(total)}
Category Breakdown:
{breakdown}

Number of expenses: {len(expenses)}

Please provide:
1. Overspending categories (categories where spending seems excessive)
2. Savings suggestions (practical ways to reduce expenses)
3. Any spending trends or patterns you notice
4. Recommendations for better financial management

Format your response as JSON with this structure:
{{
  "insights": [
    {{
      "type": "overspending" | "savings_suggestion" | "trend" | "recommendation",
      "category": "category name if applicable",
      "title": "Brief title",
      "description": "Detailed description",
      "severity": "low" | "medium" | "high" (for overspending)
    }}
  ],
  "summary": "A brief overall summary of the spending patterns"
}}

Be concise but helpful. Focus on actionable insights."""


def parse_report(content: str, source: str) -> InsightsReport:
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise InsightsUnavailable("Response was not valid JSON") from exc
    if not isinstance(payload, dict):
        raise InsightsUnavailable("Response JSON must be an object")

    insights: list[Insight] = []
    for raw in payload.get("insights") or []:
        if not isinstance(raw, dict):
            continue
        insight_type = raw.get("type")
        title = raw.get("title")
        description = raw.get("description")
        if insight_type not in INSIGHT_TYPES or not title or not description:
            continue
        category = raw.get("category")
        severity = raw.get("severity")
        insights.append(
            Insight(
                type=insight_type,
                title=str(title),
                description=str(description),
                category=category if isinstance(category, str) and category else None,
                severity=severity if isinstance(severity, str) and severity in SEVERITIES else None,
            )
        )
    summary = payload.get("summary") or "No summary available"
    return InsightsReport(insights=insights, summary=str(summary), source=source)


def _top_category(totals: dict[str, Decimal]) -> tuple[str, Decimal] | None:
    top: tuple[str, Decimal] | None = None
    for item in totals.items():
        if top is None or not top[1] > item[1]:
            top = item
    return top


def _format_money(amount: Decimal) -> str:
    return f"₹{_format_number(amount, places='0.01')}"


def _format_number(value: Decimal, places: str) -> str:
    return str(coerce_amount(value).quantize(Decimal(places), rounding=ROUND_HALF_UP))
