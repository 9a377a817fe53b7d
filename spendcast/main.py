from datetime import date, datetime, timezone
from decimal import Decimal
import logging
from typing import Callable

from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from spendcast.config import Settings, configure_logging, normalize_currency
from spendcast.currency_conversion import (
    CachedRateProvider,
    CurrencyConversionError,
    ExchangeRateApiClient,
    RateSource,
)
from spendcast.currency_formatting import (
    POPULAR_CURRENCIES,
    POPULAR_CURRENCY_CODES,
    format_currency,
)
from spendcast.forecast_engine import ForecastEngine, InsufficientHistory
from spendcast.rate_cache import ExchangeRateCache
from spendcast.transaction_store import TransactionStore

logger = logging.getLogger(__name__)

forecast_router = APIRouter(prefix="/api/forecast")
currency_router = APIRouter(prefix="/api/currency")


class HistoricalPoint(BaseModel):
    month: str
    amount: float


class ForecastResponse(BaseModel):
    forecast: float
    average: float
    trend: str
    changePercent: float | None
    confidence: str
    currency: str
    historicalData: list[HistoricalPoint]


class InsufficientHistoryResponse(BaseModel):
    forecast: None = None
    message: str
    currency: str


class CategoryForecastResponse(BaseModel):
    category_id: int
    category_name: str | None = None
    category_color: str | None = None
    forecast: float
    average: float
    trend: str
    lastMonth: float
    currency: str


class CategoryForecastListResponse(BaseModel):
    forecasts: list[CategoryForecastResponse]


class CurrencyOption(BaseModel):
    code: str
    name: str
    symbol: str
    flag: str


class RateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_currency: str = Field(alias="from")
    to_currency: str = Field(alias="to")
    rate: float
    source: str
    formatted: str


class RatesSnapshotResponse(BaseModel):
    base: str
    rates: dict[str, float]
    timestamp: datetime


class ConvertPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal | None = None
    from_currency: str | None = Field(None, alias="from")
    to_currency: str | None = Field(None, alias="to")


class MoneyView(BaseModel):
    amount: float
    currency: str
    formatted: str


class ConvertResponse(BaseModel):
    original: MoneyView
    converted: MoneyView
    rate: float


class CurrencyPreferencePayload(BaseModel):
    currency: str | None = None


class CurrencyPreferenceResponse(BaseModel):
    currency: str
    message: str | None = None


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)


def get_user_id(store: TransactionStore, x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    if not store.user_exists(user_id):
        raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def resolve_currency(request: Request, value: str | None, user_id: int) -> str:
    if value:
        try:
            return normalize_currency(value)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    stored = request.app.state.store.get_user_currency(user_id)
    if stored:
        try:
            return normalize_currency(stored)
        except ValueError:
            pass
    return request.app.state.settings.default_currency


def _normalize_path_currency(value: str) -> str:
    try:
        return normalize_currency(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@forecast_router.get(
    "",
    response_model=ForecastResponse | InsufficientHistoryResponse,
)
def spending_forecast(
    request: Request,
    category_id: int | None = Query(None),
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ForecastResponse | InsufficientHistoryResponse:
    store: TransactionStore = request.app.state.store
    user_id = get_user_id(store, x_user_id)
    target_currency = resolve_currency(request, currency, user_id)

    try:
        result = request.app.state.forecast_engine.forecast_overall(
            user_id, target_currency, category_id=category_id
        )
    except CurrencyConversionError as exc:
        logger.exception("Forecast failed for user %s", user_id)
        raise HTTPException(status_code=500, detail="Server error") from exc

    if isinstance(result, InsufficientHistory):
        return InsufficientHistoryResponse(message=result.message, currency=result.currency)

    return ForecastResponse(
        forecast=result.forecast,
        average=result.average,
        trend=result.trend,
        changePercent=result.change_percent,
        confidence=result.confidence,
        currency=result.currency,
        historicalData=[
            HistoricalPoint(month=bucket.label, amount=bucket.amount)
            for bucket in result.historical_data
        ],
    )


@forecast_router.get("/categories", response_model=CategoryForecastListResponse)
def category_forecasts(
    request: Request,
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryForecastListResponse:
    store: TransactionStore = request.app.state.store
    user_id = get_user_id(store, x_user_id)
    target_currency = resolve_currency(request, currency, user_id)

    try:
        forecasts = request.app.state.forecast_engine.forecast_by_category(
            user_id, target_currency
        )
    except CurrencyConversionError as exc:
        logger.exception("Category forecast failed for user %s", user_id)
        raise HTTPException(status_code=500, detail="Server error") from exc

    return CategoryForecastListResponse(
        forecasts=[
            CategoryForecastResponse(
                category_id=item.category_id,
                category_name=item.category_name,
                category_color=item.category_color,
                forecast=item.forecast,
                average=item.average,
                trend=item.trend,
                lastMonth=item.last_month,
                currency=item.currency,
            )
            for item in forecasts
        ]
    )


@currency_router.get("/list", response_model=list[CurrencyOption])
def list_currencies() -> list[CurrencyOption]:
    return [CurrencyOption(**entry) for entry in POPULAR_CURRENCIES]


@currency_router.get("/rate/{from_currency}/{to_currency}", response_model=RateResponse)
def exchange_rate(request: Request, from_currency: str, to_currency: str) -> RateResponse:
    source = _normalize_path_currency(from_currency)
    target = _normalize_path_currency(to_currency)
    try:
        quote = request.app.state.rate_provider.resolve_rate(source, target)
    except CurrencyConversionError as exc:
        logger.exception("Exchange rate lookup failed for %s/%s", source, target)
        raise HTTPException(status_code=500, detail="Failed to fetch exchange rate") from exc

    return RateResponse(
        from_currency=source,
        to_currency=target,
        rate=quote.rate,
        source=quote.source,
        formatted=f"{format_currency(1, source)} = {format_currency(quote.rate, target)}",
    )


@currency_router.get("/rates/{base}", response_model=RatesSnapshotResponse)
def exchange_rates_snapshot(request: Request, base: str) -> RatesSnapshotResponse:
    base_currency = _normalize_path_currency(base)
    try:
        rates = request.app.state.rate_provider.list_all_rates(base_currency)
    except CurrencyConversionError as exc:
        logger.exception("Rate snapshot failed for %s", base_currency)
        raise HTTPException(status_code=500, detail="Failed to fetch rates") from exc

    return RatesSnapshotResponse(
        base=base_currency,
        rates=rates,
        timestamp=datetime.now(timezone.utc),
    )


@currency_router.post("/convert", response_model=ConvertResponse)
def convert_currency(request: Request, payload: ConvertPayload) -> ConvertResponse:
    if not payload.amount or not payload.from_currency or not payload.to_currency:
        raise HTTPException(status_code=400, detail="Missing required fields")
    source = _normalize_path_currency(payload.from_currency)
    target = _normalize_path_currency(payload.to_currency)

    rate_provider: CachedRateProvider = request.app.state.rate_provider
    try:
        quote = rate_provider.resolve_rate(source, target)
    except CurrencyConversionError as exc:
        logger.exception("Conversion failed for %s/%s", source, target)
        raise HTTPException(status_code=500, detail="Failed to convert currency") from exc
    converted = payload.amount * quote.rate

    return ConvertResponse(
        original=MoneyView(
            amount=payload.amount,
            currency=source,
            formatted=format_currency(payload.amount, source),
        ),
        converted=MoneyView(
            amount=converted,
            currency=target,
            formatted=format_currency(converted, target),
        ),
        rate=quote.rate,
    )


@currency_router.get("/user/preference", response_model=CurrencyPreferenceResponse)
def get_currency_preference(
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CurrencyPreferenceResponse:
    store: TransactionStore = request.app.state.store
    user_id = get_user_id(store, x_user_id)
    stored = store.get_user_currency(user_id)
    return CurrencyPreferenceResponse(
        currency=stored or request.app.state.settings.default_currency
    )


@currency_router.put("/user/preference", response_model=CurrencyPreferenceResponse)
def update_currency_preference(
    request: Request,
    payload: CurrencyPreferencePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CurrencyPreferenceResponse:
    store: TransactionStore = request.app.state.store
    user_id = get_user_id(store, x_user_id)
    if not payload.currency:
        raise HTTPException(status_code=400, detail="Currency is required")
    currency = payload.currency.strip().upper()
    if currency not in POPULAR_CURRENCY_CODES:
        raise HTTPException(status_code=400, detail="Invalid currency code")

    if not store.set_user_currency(user_id, currency):
        raise HTTPException(status_code=404, detail="User not found.")
    return CurrencyPreferenceResponse(
        currency=currency, message="Currency preference updated"
    )


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    rate_client: RateSource | None = None,
    today: Callable[[], date] = date.today,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    engine = engine or build_engine(settings.database_url)

    store = TransactionStore(engine)
    rate_provider = CachedRateProvider(
        cache=ExchangeRateCache(engine),
        source=rate_client
        or ExchangeRateApiClient(
            api_key=settings.exchange_rate_api_key,
            base_url=settings.exchange_rate_base_url,
            timeout_seconds=settings.rate_fetch_timeout_seconds,
        ),
        cache_ttl=settings.rate_cache_ttl,
        allow_inverse_fallback=settings.rate_inverse_fallback,
    )

    app = FastAPI(title="spendcast")
    app.state.settings = settings
    app.state.store = store
    app.state.rate_provider = rate_provider
    app.state.forecast_engine = ForecastEngine(store, rate_provider, today=today)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def init_db() -> None:
        store.create_all()

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    app.include_router(forecast_router)
    app.include_router(currency_router)
    return app


app = create_app()
