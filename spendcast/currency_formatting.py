from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType

from spendcast.config import normalize_currency

CURRENCY_SYMBOLS = MappingProxyType(
    {
        "USD": "$",
        "EUR": "€",
        "GBP": "£",
        "CNY": "¥",
        "JPY": "¥",
        "RUB": "₽",
        "TRY": "₺",
        "AED": "د.إ",
        "SAR": "ر.س",
        "UZS": "so'm",
        "KRW": "₩",
        "VND": "₫",
        "IDR": "Rp",
        "SEK": "kr",
        "NOK": "kr",
        "DKK": "kr",
        "PLN": "zł",
    }
)

ZERO_DECIMAL_CURRENCIES = frozenset({"VND", "JPY", "KRW", "IDR", "UZS"})

SUFFIX_SYMBOL_CURRENCIES = frozenset(
    {"VND", "JPY", "KRW", "IDR", "SEK", "NOK", "DKK", "PLN", "UZS"}
)

POPULAR_CURRENCIES = (
    {"code": "UZS", "name": "Uzbekistan Som", "symbol": "so'm", "flag": "🇺🇿"},
    {"code": "USD", "name": "US Dollar", "symbol": "$", "flag": "🇺🇸"},
    {"code": "EUR", "name": "Euro", "symbol": "€", "flag": "🇪🇺"},
    {"code": "GBP", "name": "British Pound", "symbol": "£", "flag": "🇬🇧"},
    {"code": "CNY", "name": "Chinese Yuan", "symbol": "¥", "flag": "🇨🇳"},
    {"code": "RUB", "name": "Russian Ruble", "symbol": "₽", "flag": "🇷🇺"},
    {"code": "TRY", "name": "Turkish Lira", "symbol": "₺", "flag": "🇹🇷"},
    {"code": "AED", "name": "UAE Dirham", "symbol": "د.إ", "flag": "🇦🇪"},
    {"code": "SAR", "name": "Saudi Riyal", "symbol": "ر.س", "flag": "🇸🇦"},
)

POPULAR_CURRENCY_CODES = frozenset(entry["code"] for entry in POPULAR_CURRENCIES)


def decimal_places(currency: str) -> int:
    return 0 if normalize_currency(currency) in ZERO_DECIMAL_CURRENCIES else 2


def format_currency(amount: Decimal | int | float | str, currency: str) -> str:
    """Render ``amount`` for display, e.g. ``$1,234.50`` or ``1,235 ¥``."""
    code = normalize_currency(currency)
    places = decimal_places(code)
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    quantized = value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    digits = f"{abs(quantized):,.{places}f}"
    sign = "-" if quantized < 0 else ""

    symbol = CURRENCY_SYMBOLS.get(code)
    if code in SUFFIX_SYMBOL_CURRENCIES:
        return f"{sign}{digits} {symbol or code}"
    if symbol is None:
        return f"{sign}{code} {digits}"
    return f"{sign}{symbol}{digits}"
