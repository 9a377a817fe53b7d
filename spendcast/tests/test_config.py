import os
import unittest
from datetime import timedelta
from unittest import mock

from spendcast.config import Settings, normalize_currency


class SettingsTests(unittest.TestCase):
    @mock.patch.dict(os.environ, {}, clear=True)
    def test_defaults(self) -> None:
        settings = Settings.from_env()

        self.assertEqual(settings.database_url, "sqlite:///./spendcast.db")
        self.assertEqual(settings.default_currency, "USD")
        self.assertEqual(settings.rate_cache_ttl, timedelta(hours=24))
        self.assertEqual(settings.rate_fetch_timeout_seconds, 8)
        self.assertFalse(settings.rate_inverse_fallback)

    @mock.patch.dict(
        os.environ,
        {
            "DATABASE_URL": "postgresql://fin@db/finance",
            "DEFAULT_CURRENCY": " uzs ",
            "EXCHANGE_RATE_API_KEY": "secret",
            "EXCHANGE_RATE_BASE_URL": "https://rates.example/v6/",
            "RATE_CACHE_TTL_HOURS": "6",
            "RATE_FETCH_TIMEOUT_SECONDS": "5",
            "RATE_INVERSE_FALLBACK": "true",
            "LOG_LEVEL": "debug",
        },
        clear=True,
    )
    def test_reads_environment(self) -> None:
        settings = Settings.from_env()

        self.assertEqual(settings.database_url, "postgresql://fin@db/finance")
        self.assertEqual(settings.default_currency, "UZS")
        self.assertEqual(settings.exchange_rate_api_key, "secret")
        self.assertEqual(settings.exchange_rate_base_url, "https://rates.example/v6")
        self.assertEqual(settings.rate_cache_ttl, timedelta(hours=6))
        self.assertEqual(settings.rate_fetch_timeout_seconds, 5)
        self.assertTrue(settings.rate_inverse_fallback)
        self.assertEqual(settings.log_level, "DEBUG")

    @mock.patch.dict(os.environ, {"DEFAULT_CURRENCY": "dollars"}, clear=True)
    def test_invalid_default_currency_falls_back_to_usd(self) -> None:
        self.assertEqual(Settings.from_env().default_currency, "USD")

    def test_normalize_currency(self) -> None:
        self.assertEqual(normalize_currency(" eur "), "EUR")
        with self.assertRaises(ValueError):
            normalize_currency("E1R")


if __name__ == "__main__":
    unittest.main()
