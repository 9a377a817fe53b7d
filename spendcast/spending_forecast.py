from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, List, Optional, Sequence

ZERO = Decimal("0")
MIN_HISTORY_MONTHS = 2
HIGH_CONFIDENCE_MONTHS = 3
INSUFFICIENT_HISTORY_MESSAGE = (
    "Not enough historical data for forecast (need at least 2 months)"
)

Converter = Callable[[Decimal, str, str], Decimal]


@dataclass(frozen=True)
class MonthlyAggregate:
    year: int
    month: int
    currency: str
    total_amount: Decimal


@dataclass(frozen=True)
class MonthlyBucket:
    year: int
    month: int
    amount: Decimal

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class LinearTrend:
    slope: Decimal
    intercept: Decimal

    def predict(self, x: int) -> Decimal:
        return self.slope * x + self.intercept


@dataclass(frozen=True)
class ForecastResult:
    forecast: Decimal
    average: Decimal
    trend: str
    change_percent: Optional[Decimal]
    confidence: str
    currency: str
    historical_data: List[MonthlyBucket]
    slope: Decimal
    intercept: Decimal

    @property
    def last_month(self) -> Decimal:
        return self.historical_data[-1].amount


def merge_monthly_buckets(
    aggregates: Iterable[MonthlyAggregate],
    target_currency: str,
    convert: Converter,
) -> List[MonthlyBucket]:
    """Convert each (month, currency) total and sum per month, oldest first.

    Every aggregate is converted on its own before summing. A conversion error
    propagates to the caller.
    """
    totals: dict[tuple[int, int], Decimal] = {}
    for aggregate in aggregates:
        converted = convert(aggregate.total_amount, aggregate.currency, target_currency)
        key = (aggregate.year, aggregate.month)
        totals[key] = totals.get(key, ZERO) + converted
    return [
        MonthlyBucket(year=year, month=month, amount=amount)
        for (year, month), amount in sorted(totals.items())
    ]


def fit_linear_trend(values: Sequence[Decimal]) -> LinearTrend:
    """Ordinary least squares of ``values`` against their index 0..n-1."""
    n = len(values)
    if n < MIN_HISTORY_MONTHS:
        raise ValueError("At least two points are required to fit a trend.")

    sum_x = sum_y = sum_xy = sum_x2 = ZERO
    for index, value in enumerate(values):
        x = Decimal(index)
        y = _coerce_amount(value)
        sum_x += x
        sum_y += y
        sum_xy += x * y
        sum_x2 += x * x

    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)
    intercept = (sum_y - slope * sum_x) / n
    return LinearTrend(slope=slope, intercept=intercept)


def classify_trend(slope: Decimal) -> str:
    if slope > 0:
        return "increasing"
    if slope < 0:
        return "decreasing"
    return "stable"


def build_forecast(
    buckets: Sequence[MonthlyBucket], currency: str
) -> Optional[ForecastResult]:
    """Project the month after ``buckets``; ``None`` if fewer than two months."""
    n = len(buckets)
    if n < MIN_HISTORY_MONTHS:
        return None

    values = [bucket.amount for bucket in buckets]
    trend = fit_linear_trend(values)
    forecast = max(ZERO, trend.predict(n))
    average = sum(values, ZERO) / n

    return ForecastResult(
        forecast=forecast,
        average=average,
        trend=classify_trend(trend.slope),
        change_percent=_change_percent(forecast, average),
        confidence="high" if n >= HIGH_CONFIDENCE_MONTHS else "medium",
        currency=currency,
        historical_data=list(buckets),
        slope=trend.slope,
        intercept=trend.intercept,
    )


def _change_percent(forecast: Decimal, average: Decimal) -> Optional[Decimal]:
    # Undefined against an all-zero history.
    if average == 0:
        return None
    return ((forecast - average) / average * 100).quantize(
        Decimal("0.1"), rounding=ROUND_HALF_UP
    )


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
