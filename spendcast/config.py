from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./spendcast.db"
    frontend_origin: str = "http://localhost:3000"
    default_currency: str = "USD"
    exchange_rate_api_key: str = ""
    exchange_rate_base_url: str = "https://v6.exchangerate-api.com/v6"
    rate_cache_ttl_hours: float = 24
    rate_fetch_timeout_seconds: float = 8
    rate_inverse_fallback: bool = False
    log_level: str = "INFO"

    @property
    def rate_cache_ttl(self) -> timedelta:
        return timedelta(hours=self.rate_cache_ttl_hours)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", cls.frontend_origin),
            default_currency=get_system_default_currency(),
            exchange_rate_api_key=os.getenv("EXCHANGE_RATE_API_KEY", ""),
            exchange_rate_base_url=os.getenv(
                "EXCHANGE_RATE_BASE_URL", cls.exchange_rate_base_url
            ).rstrip("/"),
            rate_cache_ttl_hours=float(
                os.getenv("RATE_CACHE_TTL_HOURS", cls.rate_cache_ttl_hours)
            ),
            rate_fetch_timeout_seconds=float(
                os.getenv("RATE_FETCH_TIMEOUT_SECONDS", cls.rate_fetch_timeout_seconds)
            ),
            rate_inverse_fallback=_env_flag("RATE_INVERSE_FALLBACK"),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install one stream handler on the root logger.

    Safe to call more than once; an existing handler is reused.
    """
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)
