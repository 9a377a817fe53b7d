from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
import http.client
import json
import logging
import threading
from typing import Callable, Iterator, Protocol
from urllib.parse import quote
from urllib.request import urlopen

from sqlalchemy.exc import SQLAlchemyError

from spendcast.config import normalize_currency
from spendcast.rate_cache import CachedRate

logger = logging.getLogger(__name__)

ONE = Decimal("1")


class CurrencyConversionError(RuntimeError):
    """Base class for exchange-rate failures."""


class RateSourceError(CurrencyConversionError):
    """Raised when the remote rate source is unreachable or answers with an error."""


class ExchangeRateUnavailable(CurrencyConversionError):
    """Raised when neither the remote source nor the cache can supply a rate."""

    def __init__(self, from_currency: str, to_currency: str) -> None:
        super().__init__(f"No exchange rate available for {from_currency}/{to_currency}")
        self.from_currency = from_currency
        self.to_currency = to_currency


class RateCacheStore(Protocol):
    def get(
        self, from_currency: str, to_currency: str, fresh_after: datetime | None = None
    ) -> CachedRate | None: ...

    def upsert(
        self, from_currency: str, to_currency: str, rate: Decimal, updated_at: datetime
    ) -> None: ...


class RateSource(Protocol):
    def fetch_pair_rate(self, from_currency: str, to_currency: str) -> Decimal: ...

    def fetch_latest_rates(self, base_currency: str) -> dict[str, Decimal]: ...


@dataclass
class ExchangeRateApiClient:
    """HTTP client for an exchangerate-api.com style v6 endpoint."""

    api_key: str
    base_url: str = "https://v6.exchangerate-api.com/v6"
    timeout_seconds: float = 8

    def fetch_pair_rate(self, from_currency: str, to_currency: str) -> Decimal:
        payload = self._get_json(f"pair/{quote(from_currency)}/{quote(to_currency)}")
        return _parse_rate(payload.get("conversion_rate"))

    def fetch_latest_rates(self, base_currency: str) -> dict[str, Decimal]:
        payload = self._get_json(f"latest/{quote(base_currency)}")
        rates = payload.get("conversion_rates")
        if not isinstance(rates, dict):
            raise RateSourceError("Rate source response missing conversion_rates")
        return {code.upper(): _parse_rate(value) for code, value in rates.items()}

    def _get_json(self, path: str) -> dict:
        url = f"{self.base_url.rstrip('/')}/{quote(self.api_key)}/{path}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (OSError, http.client.HTTPException, ValueError) as exc:
            raise RateSourceError("Exchange rate API unavailable") from exc

        if not isinstance(payload, dict) or payload.get("result") != "success":
            error_type = payload.get("error-type") if isinstance(payload, dict) else None
            raise RateSourceError(f"Exchange rate API returned an error: {error_type or 'unknown'}")
        return payload


@dataclass(frozen=True)
class RateQuote:
    rate: Decimal
    source: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class _PairFlight:
    lock: threading.Lock = field(default_factory=threading.Lock)
    waiters: int = 0


@dataclass
class CachedRateProvider:
    """Resolve pair rates through a fresh cache, the remote source, then stale cache.

    Lookup order for ``from != to``:

    1. a cache row updated within ``cache_ttl``;
    2. a live fetch, written back to the cache;
    3. if the fetch fails, the cache row of any age;
    4. optionally the cached reverse pair, inverted.

    Misses for the same pair are serialized so only one live fetch per pair is
    in flight; waiting callers pick up the freshly cached rate. A pair's entry
    in the in-flight map is dropped once its last waiter finishes.
    """

    cache: RateCacheStore
    source: RateSource
    cache_ttl: timedelta = timedelta(hours=24)
    clock: Callable[[], datetime] = _utcnow
    allow_inverse_fallback: bool = False
    _pair_flights: dict[tuple[str, str], _PairFlight] = field(default_factory=dict, repr=False)
    _flights_guard: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        return self.resolve_rate(from_currency, to_currency).rate

    def resolve_rate(self, from_currency: str, to_currency: str) -> RateQuote:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        if source == target:
            return RateQuote(rate=ONE, source="identity")

        cached = self._fresh_entry(source, target)
        if cached:
            return RateQuote(rate=cached.rate, source="cache")

        with self._single_flight(source, target):
            cached = self._fresh_entry(source, target)
            if cached:
                return RateQuote(rate=cached.rate, source="cache")
            try:
                rate = self.source.fetch_pair_rate(source, target)
            except RateSourceError as exc:
                logger.warning("Live rate fetch failed for %s/%s: %s", source, target, exc)
                return self._fallback(source, target)

            self._store(source, target, rate)
            return RateQuote(rate=rate, source="live")

    def convert(
        self,
        amount: Decimal | int | float | str,
        from_currency: str,
        to_currency: str,
    ) -> Decimal:
        """Convert ``amount``; same-currency conversions never look up a rate."""
        coerced_amount = _coerce_amount(amount)
        if normalize_currency(from_currency) == normalize_currency(to_currency):
            return coerced_amount
        return coerced_amount * self.get_rate(from_currency, to_currency)

    def list_all_rates(self, base_currency: str) -> dict[str, Decimal]:
        """Live snapshot of every rate for ``base_currency``; never cached."""
        return self.source.fetch_latest_rates(normalize_currency(base_currency))

    def _fresh_entry(self, source: str, target: str) -> CachedRate | None:
        try:
            return self.cache.get(source, target, fresh_after=self.clock() - self.cache_ttl)
        except SQLAlchemyError:
            logger.exception("Failed to read cached rate for %s/%s", source, target)
            return None

    def _fallback(self, source: str, target: str) -> RateQuote:
        stale = self.cache.get(source, target)
        if stale:
            logger.warning(
                "Using stale cached rate for %s/%s from %s",
                source,
                target,
                stale.updated_at.isoformat(),
            )
            return RateQuote(rate=stale.rate, source="stale_cache")

        if self.allow_inverse_fallback:
            reverse = self.cache.get(target, source)
            if reverse and reverse.rate > 0:
                logger.warning("Using inverted cached rate %s/%s for %s/%s", target, source, source, target)
                return RateQuote(rate=ONE / reverse.rate, source="inverse_cache")

        raise ExchangeRateUnavailable(source, target)

    def _store(self, source: str, target: str, rate: Decimal) -> None:
        try:
            self.cache.upsert(source, target, rate, self.clock())
        except SQLAlchemyError:
            logger.exception("Failed to cache rate for %s/%s", source, target)

    @contextmanager
    def _single_flight(self, source: str, target: str) -> Iterator[None]:
        key = (source, target)
        with self._flights_guard:
            flight = self._pair_flights.setdefault(key, _PairFlight())
            flight.waiters += 1
        try:
            with flight.lock:
                yield
        finally:
            with self._flights_guard:
                flight.waiters -= 1
                if flight.waiters == 0:
                    self._pair_flights.pop(key, None)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _parse_rate(value: object) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise RateSourceError("Rate source returned a malformed rate")
    try:
        rate = Decimal(str(value))
    except InvalidOperation as exc:
        raise RateSourceError("Rate source returned a malformed rate") from exc
    if not rate.is_finite() or rate <= 0:
        raise RateSourceError("Rate source returned a non-positive rate")
    return rate
