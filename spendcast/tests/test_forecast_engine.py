import unittest
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import create_engine, insert
from sqlalchemy.pool import StaticPool

from spendcast.currency_conversion import (
    CachedRateProvider,
    ExchangeRateUnavailable,
    RateSourceError,
)
from spendcast.forecast_engine import ForecastEngine, InsufficientHistory
from spendcast.rate_cache import ExchangeRateCache
from spendcast.tables import categories, transactions, users
from spendcast.transaction_store import TransactionStore

TODAY = date(2024, 6, 15)


class FakeRateSource:
    def __init__(self, rates) -> None:
        self.rates = rates

    def fetch_pair_rate(self, from_currency: str, to_currency: str) -> Decimal:
        try:
            return self.rates[(from_currency, to_currency)]
        except KeyError as exc:
            raise RateSourceError("Unknown pair") from exc

    def fetch_latest_rates(self, base_currency: str) -> dict:
        raise RateSourceError("Not used")


class ForecastEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        self.store = TransactionStore(self.engine)
        self.store.create_all()
        self.rate_provider = CachedRateProvider(
            cache=ExchangeRateCache(self.engine),
            source=FakeRateSource(
                {
                    ("EUR", "USD"): Decimal("2"),
                    ("USD", "EUR"): Decimal("0.5"),
                }
            ),
            clock=lambda: datetime(2024, 6, 15, 9, 0, 0),
        )
        self.forecaster = ForecastEngine(self.store, self.rate_provider, today=lambda: TODAY)
        with self.engine.begin() as conn:
            conn.execute(
                insert(users),
                [
                    {"id": 1, "email": "ana@example.com", "currency": "USD"},
                    {"id": 2, "email": "ben@example.com", "currency": None},
                ],
            )
            conn.execute(
                insert(categories),
                [
                    {"id": 10, "user_id": 1, "name": "Groceries", "color": "#22c55e"},
                    {"id": 11, "user_id": 1, "name": "Dining", "color": "#f97316"},
                    {"id": 12, "user_id": 1, "name": "Travel", "color": "#3b82f6"},
                ],
            )

    def tearDown(self) -> None:
        self.engine.dispose()

    def add_expense(
        self,
        amount: str,
        on: date,
        currency: str = "USD",
        category_id=None,
        user_id: int = 1,
        txn_type: str = "expense",
    ) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                insert(transactions).values(
                    user_id=user_id,
                    category_id=category_id,
                    amount=Decimal(amount),
                    currency=currency,
                    type=txn_type,
                    transaction_date=on,
                )
            )

    def test_single_month_is_insufficient(self) -> None:
        self.add_expense("100", date(2024, 6, 1))
        self.add_expense("50", date(2024, 6, 10))

        result = self.forecaster.forecast_overall(1, "usd")

        self.assertIsInstance(result, InsufficientHistory)
        self.assertIsNone(result.forecast)
        self.assertEqual(result.currency, "USD")
        self.assertIn("Not enough historical data", result.message)

    def test_same_month_in_two_currencies_is_insufficient(self) -> None:
        self.add_expense("100", date(2024, 6, 1))
        self.add_expense("50", date(2024, 6, 2), currency="EUR")

        result = self.forecaster.forecast_overall(1, "USD")

        self.assertIsInstance(result, InsufficientHistory)

    def test_two_months_produce_forecast(self) -> None:
        self.add_expense("100", date(2024, 5, 3))
        self.add_expense("150", date(2024, 6, 3))

        result = self.forecaster.forecast_overall(1, "USD")

        self.assertEqual(result.forecast, Decimal("200"))
        self.assertEqual(result.confidence, "medium")
        self.assertEqual(result.trend, "increasing")

    def test_converts_each_currency_row_into_target(self) -> None:
        self.add_expense("100", date(2024, 4, 5))
        self.add_expense("50", date(2024, 4, 20), currency="EUR")
        self.add_expense("200", date(2024, 5, 5))
        self.add_expense("100", date(2024, 6, 5), currency="EUR")
        self.add_expense("100", date(2024, 6, 6))

        result = self.forecaster.forecast_overall(1, "USD")

        self.assertEqual(
            [(bucket.label, bucket.amount) for bucket in result.historical_data],
            [
                ("2024-04", Decimal("200")),
                ("2024-05", Decimal("200")),
                ("2024-06", Decimal("300")),
            ],
        )
        self.assertEqual(result.confidence, "high")
        self.assertEqual(result.currency, "USD")

    def test_ignores_income_old_rows_and_other_users(self) -> None:
        self.add_expense("999", date(2024, 3, 14))
        self.add_expense("500", date(2024, 5, 1), txn_type="income")
        self.add_expense("700", date(2024, 5, 1), user_id=2)
        self.add_expense("10", date(2024, 3, 15))
        self.add_expense("20", date(2024, 4, 15))

        result = self.forecaster.forecast_overall(1, "USD")

        self.assertEqual(
            [(bucket.label, bucket.amount) for bucket in result.historical_data],
            [("2024-03", Decimal("10")), ("2024-04", Decimal("20"))],
        )
        self.assertEqual(result.forecast, Decimal("30"))

    def test_category_filter(self) -> None:
        self.add_expense("40", date(2024, 5, 1), category_id=10)
        self.add_expense("60", date(2024, 6, 1), category_id=10)
        self.add_expense("500", date(2024, 6, 1), category_id=11)

        result = self.forecaster.forecast_overall(1, "USD", category_id=10)

        self.assertEqual(result.forecast, Decimal("80"))
        self.assertEqual(result.average, Decimal("50"))

    def test_conversion_failure_aborts_forecast(self) -> None:
        self.add_expense("100", date(2024, 5, 1))
        self.add_expense("100", date(2024, 6, 1), currency="GBP")

        with self.assertRaises(ExchangeRateUnavailable):
            self.forecaster.forecast_overall(1, "USD")

    def test_category_forecasts_keep_ranking_and_drop_thin_history(self) -> None:
        # Groceries: highest recent spend, three months of history.
        self.add_expense("100", date(2024, 4, 2), category_id=10)
        self.add_expense("120", date(2024, 5, 2), category_id=10)
        self.add_expense("400", date(2024, 6, 2), category_id=10)
        # Travel: second by recent spend, only one month.
        self.add_expense("300", date(2024, 6, 1), category_id=12)
        # Dining: smallest recent spend, paid partly in EUR.
        self.add_expense("30", date(2024, 5, 20), category_id=11)
        self.add_expense("20", date(2024, 6, 3), currency="EUR", category_id=11)
        # Uncategorized spend never ranks.
        self.add_expense("5000", date(2024, 6, 4))

        forecasts = self.forecaster.forecast_by_category(1, "USD")

        self.assertEqual([item.category_id for item in forecasts], [10, 11])
        groceries, dining = forecasts
        self.assertEqual(groceries.category_name, "Groceries")
        self.assertEqual(groceries.category_color, "#22c55e")
        self.assertEqual(groceries.last_month, Decimal("400"))
        self.assertEqual(groceries.trend, "increasing")
        self.assertEqual(dining.last_month, Decimal("40"))
        self.assertEqual(dining.forecast, Decimal("50"))
        self.assertEqual(dining.currency, "USD")

    def test_category_forecasts_empty_without_recent_spend(self) -> None:
        self.add_expense("100", date(2024, 3, 20), category_id=10)
        self.add_expense("100", date(2024, 4, 20), category_id=10)

        self.assertEqual(self.forecaster.forecast_by_category(1, "USD"), [])


if __name__ == "__main__":
    unittest.main()
