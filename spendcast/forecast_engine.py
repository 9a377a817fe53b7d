from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
import logging
from typing import Callable, List, Optional, Protocol

from spendcast.config import normalize_currency
from spendcast.spending_forecast import (
    INSUFFICIENT_HISTORY_MESSAGE,
    MIN_HISTORY_MONTHS,
    ForecastResult,
    MonthlyAggregate,
    build_forecast,
    merge_monthly_buckets,
)
from spendcast.transaction_store import CategoryRef, shift_month_keep_day

logger = logging.getLogger(__name__)

HISTORY_MONTHS = 3
CATEGORY_RANKING_MONTHS = 1
TOP_CATEGORY_LIMIT = 5


class ExpenseHistory(Protocol):
    def monthly_expense_totals(
        self, user_id: int, since: date, category_id: Optional[int] = None
    ) -> List[MonthlyAggregate]: ...

    def top_expense_categories(
        self, user_id: int, since: date, limit: int = 5
    ) -> List[CategoryRef]: ...


class CurrencyConverter(Protocol):
    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal: ...


@dataclass(frozen=True)
class InsufficientHistory:
    currency: str
    message: str = INSUFFICIENT_HISTORY_MESSAGE
    forecast: None = None


@dataclass(frozen=True)
class CategoryForecast:
    category_id: int
    category_name: Optional[str]
    category_color: Optional[str]
    forecast: Decimal
    average: Decimal
    trend: str
    last_month: Decimal
    currency: str


class ForecastEngine:
    """Next-month spending projections normalized into one display currency."""

    def __init__(
        self,
        store: ExpenseHistory,
        rate_provider: CurrencyConverter,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.rate_provider = rate_provider
        self.today = today

    def forecast_overall(
        self,
        user_id: int,
        target_currency: str,
        category_id: Optional[int] = None,
    ) -> ForecastResult | InsufficientHistory:
        currency = normalize_currency(target_currency)
        result = self._forecast_series(user_id, currency, category_id)
        if result is None:
            return InsufficientHistory(currency=currency)
        return result

    def forecast_by_category(
        self, user_id: int, target_currency: str
    ) -> List[CategoryForecast]:
        """Forecast each of the top recent spending categories.

        Categories without two months of history are left out; the ranking
        order is preserved.
        """
        currency = normalize_currency(target_currency)
        ranking_start = shift_month_keep_day(self.today(), -CATEGORY_RANKING_MONTHS)
        ranked = self.store.top_expense_categories(
            user_id, ranking_start, limit=TOP_CATEGORY_LIMIT
        )

        forecasts: List[CategoryForecast] = []
        for category in ranked:
            result = self._forecast_series(user_id, currency, category.category_id)
            if result is None:
                logger.debug(
                    "Skipping category %s for user %s: not enough history",
                    category.category_id,
                    user_id,
                )
                continue
            forecasts.append(
                CategoryForecast(
                    category_id=category.category_id,
                    category_name=category.category_name,
                    category_color=category.category_color,
                    forecast=result.forecast,
                    average=result.average,
                    trend=result.trend,
                    last_month=result.last_month,
                    currency=currency,
                )
            )
        return forecasts

    def _forecast_series(
        self, user_id: int, currency: str, category_id: Optional[int]
    ) -> Optional[ForecastResult]:
        history_start = shift_month_keep_day(self.today(), -HISTORY_MONTHS)
        aggregates = self.store.monthly_expense_totals(
            user_id, history_start, category_id=category_id
        )
        if len(aggregates) < MIN_HISTORY_MONTHS:
            return None

        buckets = merge_monthly_buckets(aggregates, currency, self.rate_provider.convert)
        return build_forecast(buckets, currency)
