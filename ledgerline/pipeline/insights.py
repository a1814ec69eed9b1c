"""
Transaction insights per period: revenue, expenses and activity trends.
Runs as the `multi-period-analytics` heavy job.
"""

from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from ledgerline.models.enums import InsightPeriod, TxDirection
from ledgerline.pipeline.amount_parser import quantize
from ledgerline.schemas.transactions import TransactionDraft

PERIOD_DAYS = {
    InsightPeriod.DAY: 1,
    InsightPeriod.WEEK: 7,
    InsightPeriod.MONTH: 30,
    InsightPeriod.QUARTER: 90,
}

# Fuliza is an overdraft draw, not income
REVENUE_DIRECTIONS = frozenset({TxDirection.RECEIVED, TxDirection.DEPOSIT})
GROWTH_BAND = Decimal("0.10")
ZERO = Decimal("0.00")


class RevenueInsights(BaseModel):
    total: Decimal = ZERO
    count: int = 0
    average: Decimal = ZERO
    peak_day: Optional[date] = None
    peak_day_total: Decimal = ZERO


class ExpenseInsights(BaseModel):
    total: Decimal = ZERO
    count: int = 0
    average: Decimal = ZERO
    largest_amount: Decimal = ZERO
    largest_transaction_id: Optional[str] = None
    by_category: dict[str, Decimal] = {}


class TrendInsights(BaseModel):
    daily_counts: dict[date, int] = {}
    busiest_day: Optional[date] = None
    transactions_per_hour: float = 0.0
    growth_trend: str = "insufficient_data"  # growing, declining, stable, insufficient_data


class PeriodInsights(BaseModel):
    period: InsightPeriod
    start: datetime
    end: datetime
    transaction_count: int = 0
    revenue: RevenueInsights = RevenueInsights()
    expenses: ExpenseInsights = ExpenseInsights()
    trends: TrendInsights = TrendInsights()


def period_bounds(period: InsightPeriod, as_of: datetime) -> tuple[datetime, datetime]:
    """(start, end] window ending at as_of."""
    return as_of - timedelta(days=PERIOD_DAYS[period]), as_of


def growth_trend(drafts: list[TransactionDraft], start: datetime, end: datetime) -> str:
    """Compare revenue in the first and second halves of the window with a +/-10% band."""
    revenue = [d for d in drafts if d.direction in REVENUE_DIRECTIONS]
    if len(revenue) < 2:
        return "insufficient_data"
    midpoint = start + (end - start) / 2
    first = sum((d.amount for d in revenue if d.timestamp <= midpoint), ZERO)
    second = sum((d.amount for d in revenue if d.timestamp > midpoint), ZERO)
    if first == 0:
        return "growing" if second > 0 else "insufficient_data"
    change = (second - first) / first
    if change > GROWTH_BAND:
        return "growing"
    if change < -GROWTH_BAND:
        return "declining"
    return "stable"


def period_insights(
    drafts: list[TransactionDraft],
    period: InsightPeriod,
    as_of: datetime,
) -> PeriodInsights:
    start, end = period_bounds(period, as_of)
    window = [
        d for d in drafts
        if d.timestamp is not None and d.amount is not None and start < d.timestamp <= end
    ]
    result = PeriodInsights(period=period, start=start, end=end, transaction_count=len(window))
    if not window:
        return result

    revenue = [d for d in window if d.direction in REVENUE_DIRECTIONS]
    expenses = [d for d in window if not d.is_inflow]

    if revenue:
        by_day: dict[date, Decimal] = defaultdict(lambda: ZERO)
        for d in revenue:
            by_day[d.timestamp.date()] += d.amount
        peak_day = max(by_day, key=lambda day: (by_day[day], day))
        total = sum((d.amount for d in revenue), ZERO)
        result.revenue = RevenueInsights(
            total=total,
            count=len(revenue),
            average=quantize(total / len(revenue)),
            peak_day=peak_day,
            peak_day_total=by_day[peak_day],
        )

    if expenses:
        by_category: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for d in expenses:
            by_category[d.category or "uncategorized"] += d.amount
        largest = max(expenses, key=lambda d: d.amount)
        total = sum((d.amount for d in expenses), ZERO)
        result.expenses = ExpenseInsights(
            total=total,
            count=len(expenses),
            average=quantize(total / len(expenses)),
            largest_amount=largest.amount,
            largest_transaction_id=largest.id,
            by_category=dict(sorted(by_category.items(), key=lambda item: -item[1])),
        )

    daily = Counter(d.timestamp.date() for d in window)
    hours = max((end - start).total_seconds() / 3600, 1.0)
    result.trends = TrendInsights(
        daily_counts=dict(sorted(daily.items())),
        busiest_day=max(daily, key=lambda day: (daily[day], day)),
        transactions_per_hour=round(len(window) / hours, 4),
        growth_trend=growth_trend(window, start, end),
    )
    return result
