import logging
import os
from datetime import date, datetime
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)

from subtrack.billing_projection import BillingCycle, next_billing_date, switch_billing_cycle
from subtrack.currency_conversion import (
    CRYPTO_CURRENCIES,
    FIAT_CURRENCIES,
    SUPPORTED_CURRENCIES,
    convert_amount,
    format_amount,
    normalize_currency,
)
from subtrack.rate_provider import FIAT_ENDPOINTS, RateService, default_crypto_endpoints
from subtrack.subscription_summary import (
    CATEGORIES,
    Category,
    SubscriptionRecord,
    billing_cycle_distribution,
    monthly_spending_trend,
    relative_date_label,
    summarize,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./subtrack.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        normalized = normalize_currency(raw)
    except ValueError:
        return "USD"
    return normalized if normalized in SUPPORTED_CURRENCIES else "USD"


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
RATE_SERVICE = RateService(
    fiat_endpoints=FIAT_ENDPOINTS,
    crypto_endpoints=default_crypto_endpoints(os.getenv("COINMARKETCAP_API_KEY")),
    timeout=float(os.getenv("RATE_REQUEST_TIMEOUT", "5")),
    refresh_interval=float(os.getenv("RATE_REFRESH_SECONDS", "300")),
)

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False, index=True),
    Column("service_name", String(255), nullable=False),
    Column("cost", Numeric(24, 8), nullable=False),
    Column("currency", String(10), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("billing_cycle", String(20), nullable=False),
    Column("billing_date", Date, nullable=False),
    Column("next_billing_date", Date, nullable=False),
    Column("category", String(20), nullable=False),
    Column("payment_method", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


@app.on_event("startup")
async def init_app() -> None:
    metadata.create_all(engine)
    RATE_SERVICE.start()


@app.on_event("shutdown")
async def stop_rate_refresh() -> None:
    await RATE_SERVICE.stop()


class SubscriptionPayload(BaseModel):
    service_name: str
    cost: Decimal
    currency: str | None = None
    billing_cycle: str = "monthly"
    billing_date: date
    category: str = "other"
    payment_method: str | None = None

    @classmethod
    def validate_payload(cls, payload: "SubscriptionPayload") -> "SubscriptionPayload":
        payload.service_name = payload.service_name.strip()
        if not payload.service_name:
            raise ValueError("Service name required.")
        if not payload.cost.is_finite() or payload.cost < 0:
            raise ValueError("Cost must be a non-negative number.")
        payload.currency = validate_supported_currency(payload.currency or SYSTEM_DEFAULT_CURRENCY)
        payload.billing_cycle = BillingCycle.validate(payload.billing_cycle)
        payload.category = Category.validate(payload.category)
        payload.payment_method = payload.payment_method.strip() if payload.payment_method else None
        return payload


class SubscriptionResponse(BaseModel):
    id: int
    user_id: str
    service_name: str
    cost: Decimal
    currency: str
    billing_cycle: str
    billing_date: date
    next_billing_date: date
    category: str
    payment_method: str | None = None
    created_at: datetime | None = None


class CycleSwitchPayload(BaseModel):
    cost: Decimal
    current_cycle: str
    new_cycle: str


class CycleSwitchResponse(BaseModel):
    cost: Decimal
    billing_cycle: str


class CurrencyListResponse(BaseModel):
    fiat: list[str]
    crypto: list[str]
    default: str


class RateTableResponse(BaseModel):
    rates: dict[str, Decimal]
    last_updated: datetime | None = None
    status: str | None = None
    loading: bool


class ConversionResponse(BaseModel):
    amount: Decimal
    source_currency: str
    target_currency: str
    converted_amount: Decimal
    formatted: str


class UpcomingRenewalResponse(BaseModel):
    subscription: SubscriptionResponse
    label: str
    formatted_cost: str


class DashboardSummaryResponse(BaseModel):
    reporting_currency: str
    monthly_total: Decimal
    monthly_total_formatted: str
    category_totals: dict[str, Decimal]
    category_totals_formatted: dict[str, str]
    upcoming_renewals: list[UpcomingRenewalResponse]
    rates_status: str | None = None
    rates_last_updated: datetime | None = None


class MonthlyTrendPoint(BaseModel):
    month: str
    total: Decimal


class DashboardChartsResponse(BaseModel):
    reporting_currency: str
    category_totals: dict[str, Decimal]
    monthly_trend: list[MonthlyTrendPoint]
    billing_cycles: dict[str, int]


def get_user_id(x_user_id: str | None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


def validate_supported_currency(value: str) -> str:
    normalized = normalize_currency(value)
    if normalized not in SUPPORTED_CURRENCIES:
        raise ValueError(f"Unsupported currency: {normalized}")
    return normalized


def resolve_reporting_currency(value: str | None) -> str:
    if not value:
        return SYSTEM_DEFAULT_CURRENCY
    try:
        return validate_supported_currency(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def row_to_response(row) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=row["id"],
        user_id=row["user_id"],
        service_name=row["service_name"],
        cost=row["cost"],
        currency=row["currency"],
        billing_cycle=row["billing_cycle"],
        billing_date=row["billing_date"],
        next_billing_date=row["next_billing_date"],
        category=row["category"],
        payment_method=row["payment_method"],
        created_at=row["created_at"],
    )


def row_to_record(row) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=row["id"],
        service_name=row["service_name"],
        cost=row["cost"],
        currency=row["currency"],
        billing_cycle=row["billing_cycle"],
        billing_date=row["billing_date"],
        next_billing_date=row["next_billing_date"],
        category=row["category"],
        payment_method=row["payment_method"],
    )


def fetch_subscription_rows(user_id: str) -> list:
    with engine.begin() as conn:
        result = conn.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .order_by(subscriptions.c.next_billing_date.asc(), subscriptions.c.id.asc())
        )
        return result.mappings().all()


def rate_table_response() -> RateTableResponse:
    return RateTableResponse(
        rates=RATE_SERVICE.rates,
        last_updated=RATE_SERVICE.last_updated,
        status=RATE_SERVICE.status,
        loading=RATE_SERVICE.loading,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/currencies", response_model=CurrencyListResponse)
def list_currencies() -> CurrencyListResponse:
    return CurrencyListResponse(
        fiat=list(FIAT_CURRENCIES),
        crypto=list(CRYPTO_CURRENCIES),
        default=SYSTEM_DEFAULT_CURRENCY,
    )


@app.get("/rates", response_model=RateTableResponse)
def get_rates() -> RateTableResponse:
    return rate_table_response()


@app.post("/rates/refresh", response_model=RateTableResponse)
async def refresh_rates() -> RateTableResponse:
    await RATE_SERVICE.refresh()
    return rate_table_response()


@app.get("/convert", response_model=ConversionResponse)
def convert(
    amount: Decimal = Query(...),
    source: str = Query(...),
    target: str = Query(...),
) -> ConversionResponse:
    try:
        converted = convert_amount(amount, source, target, RATE_SERVICE.rates)
        formatted = format_amount(converted, target, RATE_SERVICE.rates)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ConversionResponse(
        amount=amount,
        source_currency=normalize_currency(source),
        target_currency=normalize_currency(target),
        converted_amount=converted,
        formatted=formatted,
    )


@app.post("/billing-cycle/switch", response_model=CycleSwitchResponse)
def switch_cycle(payload: CycleSwitchPayload) -> CycleSwitchResponse:
    try:
        cost = switch_billing_cycle(payload.cost, payload.current_cycle, payload.new_cycle)
        billing_cycle = BillingCycle.validate(payload.new_cycle)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CycleSwitchResponse(cost=cost, billing_cycle=billing_cycle)


@app.get("/subscriptions", response_model=list[SubscriptionResponse])
def list_subscriptions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[SubscriptionResponse]:
    user_id = get_user_id(x_user_id)
    return [row_to_response(row) for row in fetch_subscription_rows(user_id)]


@app.post("/subscriptions", response_model=SubscriptionResponse)
def create_subscription(
    payload: SubscriptionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SubscriptionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = SubscriptionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        stmt = (
            insert(subscriptions)
            .values(
                user_id=user_id,
                service_name=payload.service_name,
                cost=payload.cost,
                currency=payload.currency,
                billing_cycle=payload.billing_cycle,
                billing_date=payload.billing_date,
                next_billing_date=next_billing_date(payload.billing_date, payload.billing_cycle),
                category=payload.category,
                payment_method=payload.payment_method,
            )
            .returning(*subscriptions.c)
        )
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create subscription.")
    logger.info("Created subscription %s for user %s", row["id"], user_id)
    return row_to_response(row)


@app.put("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
def update_subscription(
    subscription_id: int,
    payload: SubscriptionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SubscriptionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = SubscriptionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        stmt = (
            update(subscriptions)
            .where(
                subscriptions.c.id == subscription_id,
                subscriptions.c.user_id == user_id,
            )
            .values(
                service_name=payload.service_name,
                cost=payload.cost,
                currency=payload.currency,
                billing_cycle=payload.billing_cycle,
                billing_date=payload.billing_date,
                next_billing_date=next_billing_date(payload.billing_date, payload.billing_cycle),
                category=payload.category,
                payment_method=payload.payment_method,
            )
            .returning(*subscriptions.c)
        )
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Subscription not found.")
    return row_to_response(row)


@app.delete("/subscriptions/{subscription_id}")
def delete_subscription(
    subscription_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            delete(subscriptions).where(
                subscriptions.c.id == subscription_id,
                subscriptions.c.user_id == user_id,
            )
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Subscription not found.")
    return {"status": "deleted"}


@app.get("/dashboard/summary", response_model=DashboardSummaryResponse)
def dashboard_summary(
    currency: str | None = Query(None),
    today: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardSummaryResponse:
    user_id = get_user_id(x_user_id)
    reporting_currency = resolve_reporting_currency(currency)
    reference_date = today or date.today()
    rows = fetch_subscription_rows(user_id)
    responses_by_id = {row["id"]: row_to_response(row) for row in rows}
    rates = RATE_SERVICE.rates

    try:
        summary = summarize(
            [row_to_record(row) for row in rows],
            rates,
            reporting_currency,
            today=reference_date,
        )
        upcoming = [
            UpcomingRenewalResponse(
                subscription=responses_by_id[record.id],
                label=relative_date_label(record.next_billing_date, today=reference_date),
                formatted_cost=format_amount(
                    convert_amount(record.cost, record.currency, reporting_currency, rates),
                    reporting_currency,
                ),
            )
            for record in summary.upcoming_renewals
        ]
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return DashboardSummaryResponse(
        reporting_currency=summary.reporting_currency,
        monthly_total=summary.monthly_total,
        monthly_total_formatted=format_amount(summary.monthly_total, reporting_currency),
        category_totals=summary.per_category_monthly_total,
        category_totals_formatted={
            category: format_amount(total, reporting_currency)
            for category, total in summary.per_category_monthly_total.items()
        },
        upcoming_renewals=upcoming,
        rates_status=RATE_SERVICE.status,
        rates_last_updated=RATE_SERVICE.last_updated,
    )


@app.get("/dashboard/charts", response_model=DashboardChartsResponse)
def dashboard_charts(
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardChartsResponse:
    user_id = get_user_id(x_user_id)
    reporting_currency = resolve_reporting_currency(currency)
    records = [row_to_record(row) for row in fetch_subscription_rows(user_id)]
    rates = RATE_SERVICE.rates

    try:
        summary = summarize(records, rates, reporting_currency)
        trend = monthly_spending_trend(records, rates, reporting_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return DashboardChartsResponse(
        reporting_currency=reporting_currency,
        category_totals={
            category: summary.per_category_monthly_total.get(category, Decimal("0"))
            for category in CATEGORIES
        },
        monthly_trend=[MonthlyTrendPoint(month=month, total=total) for month, total in trend],
        billing_cycles=billing_cycle_distribution(records),
    )
