import logging
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from budget_tracker.auth import (
    create_session,
    hash_password,
    resolve_session,
    revoke_session,
    validate_password,
    verify_password,
)
from budget_tracker.budget_cycles import (
    BudgetCycle,
    NotificationSettings,
    UserSettings,
    add_cycle,
    days_in_cycle,
    delete_cycle,
    get_active_cycle,
    set_active_cycle,
    update_cycle,
    update_display,
    update_notifications,
)
from budget_tracker.budget_engine import (
    Period,
    Transaction,
    TransactionValidationError,
    calculate_daily_stats,
    calculate_dashboard_stats,
    generate_calendar_days,
    recent_transactions,
    spending_by_category,
    validate_transaction,
)
from budget_tracker.config import AppConfig
from budget_tracker.currency_conversion import (
    BASE_CURRENCY,
    CURRENCIES,
    convert_amount,
    format_exchange_rate,
    get_conversion_rate,
    get_inverse_rate,
    normalize_currency,
)
from budget_tracker.database import init_db, users
from budget_tracker.dependencies import (
    get_config,
    get_engine,
    get_rate_provider,
    get_settings_repository,
    get_transaction_repository,
)
from budget_tracker.rate_provider import ExchangeRateProvider, ExchangeRates
from budget_tracker.repository import (
    RepositoryFailure,
    SqlSettingsRepository,
    SqlTransactionRepository,
    TransactionNotFound,
)

config = get_config()
logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Tracker")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _resolve_dependency(dependency):
    return app.dependency_overrides.get(dependency, dependency)()


@app.on_event("startup")
async def startup() -> None:
    init_db(_resolve_dependency(get_engine))
    app_config: AppConfig = _resolve_dependency(get_config)
    provider: ExchangeRateProvider = _resolve_dependency(get_rate_provider)
    provider.cache.load()
    if app_config.rate_auto_refresh:
        provider.start_auto_refresh(BASE_CURRENCY)
    elif provider.cache.is_stale():
        await provider.fetch_rates(BASE_CURRENCY)


@app.on_event("shutdown")
async def shutdown() -> None:
    provider: ExchangeRateProvider = _resolve_dependency(get_rate_provider)
    await provider.aclose()


class CredentialsPayload(BaseModel):
    email: str
    password: str


class SignupPayload(CredentialsPayload):
    name: str | None = None


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    created_at: datetime | None = None


class SessionResponse(BaseModel):
    token: str
    user_id: str
    expires_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    session: SessionResponse


class TransactionPayload(BaseModel):
    id: str | None = None
    type: str
    category: str
    amount: Decimal
    date: date
    currency: str | None = None
    notes: str | None = None
    expense_type: str | None = None
    is_recurring: bool | None = None

    def to_transaction(self, transaction_id: str) -> Transaction:
        return Transaction(
            id=transaction_id,
            type=self.type,
            category=self.category,
            amount=self.amount,
            date=self.date,
            currency=self.currency,
            notes=self.notes,
            expense_type=self.expense_type,
            is_recurring=self.is_recurring,
        )


class TransactionResponse(BaseModel):
    id: str
    type: str
    category: str
    amount: Decimal
    date: date
    currency: str
    notes: str | None = None
    expense_type: str | None = None
    is_recurring: bool | None = None

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "TransactionResponse":
        return cls(
            id=txn.id,
            type=txn.type,
            category=txn.category,
            amount=txn.amount,
            date=txn.date,
            currency=txn.effective_currency,
            notes=txn.notes,
            expense_type=txn.expense_type,
            is_recurring=txn.is_recurring,
        )


class CyclePayload(BaseModel):
    name: str
    type: str = "custom"
    start_day: int
    end_day: int
    monthly_budget: Decimal = Decimal("0")


class CycleResponse(CyclePayload):
    id: str
    is_active: bool
    days_in_cycle: int


class NotificationsPayload(BaseModel):
    daily_reminder: bool = False
    reminder_time: str = "20:00"
    budget_alerts: bool = True
    weekly_summary: bool = False


class SettingsPayload(BaseModel):
    theme: str | None = None
    default_currency: str | None = None
    notifications: NotificationsPayload | None = None


class ActiveCyclePayload(BaseModel):
    cycle_id: str


class SettingsResponse(BaseModel):
    cycles: list[CycleResponse]
    active_cycle_id: str | None = None
    notifications: NotificationsPayload
    theme: str
    default_currency: str


class CurrencyResponse(BaseModel):
    code: str
    name: str
    symbol: str
    locale: str


class RatesResponse(BaseModel):
    rates: dict[str, Decimal]
    inverse_rates: dict[str, Decimal]
    formatted_rates: dict[str, str]
    base_currency: str
    last_updated: datetime
    provenance: str
    source: str | None = None
    is_stale: bool
    seconds_since_update: int | None = None


class ConversionResponse(BaseModel):
    amount: Decimal
    source_currency: str
    target_currency: str
    converted_amount: Decimal
    rate: Decimal
    provenance: str


class DashboardResponse(BaseModel):
    month: str
    currency: str
    total_income: Decimal
    total_expense: Decimal
    total_mandatory_expense: Decimal
    money_saved: Decimal
    monthly_budget: Decimal
    daily_budget: Decimal
    days_in_period: int
    cycle_name: str
    rates_provenance: str
    recent_transactions: list[TransactionResponse]


class DailyStatsResponse(BaseModel):
    date: date
    currency: str
    income: Decimal
    expense: Decimal
    mandatory_expense: Decimal
    leisure_expense: Decimal
    transactions: list[TransactionResponse]


class CalendarDayResponse(BaseModel):
    date: date
    is_current_month: bool
    income: Decimal
    expense: Decimal
    mandatory_expense: Decimal
    leisure_expense: Decimal
    transaction_count: int
    is_over_budget: bool


class CalendarResponse(BaseModel):
    year: int
    month: int
    currency: str
    daily_budget: Decimal
    days: list[CalendarDayResponse]


class CategoryBreakdownResponse(BaseModel):
    category: str
    total_spent: Decimal
    percentage_of_total: Decimal
    currency: str


def get_current_user_id(
    authorization: str | None = Header(None),
    engine: Engine = Depends(get_engine),
) -> str:
    token = _bearer_token(authorization)
    with engine.begin() as conn:
        user_id = resolve_session(conn, token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired session.")
    return user_id


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing session token.")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid authorization header.")
    return token.strip()


def parse_month_value(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m").date()
    except ValueError:
        try:
            return datetime.strptime(value, "%Y-%m-%d").date()
        except ValueError as exc:
            raise ValueError("Invalid month format. Use YYYY-MM.") from exc


def resolve_display_currency(value: str | None, settings: UserSettings) -> str:
    if not value:
        return settings.default_currency
    try:
        return normalize_currency(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def load_settings(repo: SqlSettingsRepository, user_id: str) -> UserSettings:
    try:
        return repo.get(user_id)
    except RepositoryFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def store_settings(
    repo: SqlSettingsRepository, user_id: str, settings: UserSettings
) -> SettingsResponse:
    try:
        repo.save(user_id, settings)
    except RepositoryFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return settings_response(settings)


def load_transactions(repo: SqlTransactionRepository, user_id: str) -> list[Transaction]:
    try:
        return repo.list(user_id)
    except RepositoryFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def settings_response(settings: UserSettings) -> SettingsResponse:
    return SettingsResponse(
        cycles=[
            CycleResponse(
                id=cycle.id,
                name=cycle.name,
                type=cycle.type,
                start_day=cycle.start_day,
                end_day=cycle.end_day,
                monthly_budget=cycle.monthly_budget,
                is_active=cycle.is_active,
                days_in_cycle=days_in_cycle(cycle),
            )
            for cycle in settings.cycles
        ],
        active_cycle_id=settings.active_cycle_id,
        notifications=NotificationsPayload(
            daily_reminder=settings.notifications.daily_reminder,
            reminder_time=settings.notifications.reminder_time,
            budget_alerts=settings.notifications.budget_alerts,
            weekly_summary=settings.notifications.weekly_summary,
        ),
        theme=settings.theme,
        default_currency=settings.default_currency,
    )


def rates_response(rates: ExchangeRates, provider: ExchangeRateProvider) -> RatesResponse:
    return RatesResponse(
        rates=dict(rates.rates),
        inverse_rates={code: get_inverse_rate(rate) for code, rate in rates.rates.items()},
        formatted_rates={
            code: format_exchange_rate(rate, rates.base_currency, code)
            for code, rate in rates.rates.items()
        },
        base_currency=rates.base_currency,
        last_updated=rates.last_updated,
        provenance=rates.provenance.value,
        source=rates.source,
        is_stale=provider.cache.is_stale(),
        seconds_since_update=provider.cache.time_since_update(),
    )


def _cycle_from_payload(payload: CyclePayload, cycle_id: str) -> BudgetCycle:
    return BudgetCycle(
        id=cycle_id,
        name=payload.name,
        type=payload.type,
        start_day=payload.start_day,
        end_day=payload.end_day,
        monthly_budget=payload.monthly_budget,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=AuthResponse)
def signup(
    payload: SignupPayload,
    engine: Engine = Depends(get_engine),
    app_config: AppConfig = Depends(get_config),
) -> AuthResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    validation = validate_password(payload.password)
    if not validation.is_valid:
        raise HTTPException(
            status_code=400,
            detail="Password needs " + ", ".join(validation.missing_rules()) + ".",
        )
    name = (payload.name or "").strip() or email.split("@")[0]
    user_id = uuid4().hex
    hashed_password = hash_password(payload.password)

    try:
        with engine.begin() as conn:
            conn.execute(
                insert(users).values(
                    id=user_id,
                    email=email,
                    name=name,
                    hashed_password=hashed_password,
                )
            )
            row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
            session = create_session(conn, user_id, ttl_days=app_config.session_ttl_days)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already registered.") from exc

    logger.info("Registered user %s", user_id)
    return _auth_response(row, session)


@app.post("/auth/login", response_model=AuthResponse)
def login(
    payload: CredentialsPayload,
    engine: Engine = Depends(get_engine),
    app_config: AppConfig = Depends(get_config),
) -> AuthResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()
        if not row or not verify_password(payload.password, row["hashed_password"]):
            raise HTTPException(status_code=401, detail="Invalid email or password.")
        session = create_session(conn, row["id"], ttl_days=app_config.session_ttl_days)
    return _auth_response(row, session)


@app.post("/auth/logout")
def logout(
    authorization: str | None = Header(None),
    engine: Engine = Depends(get_engine),
) -> dict:
    token = _bearer_token(authorization)
    with engine.begin() as conn:
        revoke_session(conn, token)
    return {"status": "logged_out"}


def _auth_response(row, session) -> AuthResponse:
    return AuthResponse(
        user=UserResponse(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            created_at=row["created_at"],
        ),
        session=SessionResponse(
            token=session.token,
            user_id=session.user_id,
            expires_at=session.expires_at,
        ),
    )


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    user_id: str = Depends(get_current_user_id),
    repo: SqlTransactionRepository = Depends(get_transaction_repository),
) -> list[TransactionResponse]:
    return [
        TransactionResponse.from_transaction(txn)
        for txn in load_transactions(repo, user_id)
    ]


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload,
    user_id: str = Depends(get_current_user_id),
    repo: SqlTransactionRepository = Depends(get_transaction_repository),
) -> TransactionResponse:
    try:
        txn = validate_transaction(payload.to_transaction(payload.id or uuid4().hex))
    except TransactionValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        repo.create(user_id, txn)
    except RepositoryFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return TransactionResponse.from_transaction(txn)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: str,
    payload: TransactionPayload,
    user_id: str = Depends(get_current_user_id),
    repo: SqlTransactionRepository = Depends(get_transaction_repository),
) -> TransactionResponse:
    if payload.id and payload.id != transaction_id:
        raise HTTPException(status_code=400, detail="Transaction id mismatch.")
    try:
        txn = validate_transaction(payload.to_transaction(transaction_id))
    except TransactionValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        repo.update(user_id, txn)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail="Transaction not found.") from exc
    except RepositoryFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return TransactionResponse.from_transaction(txn)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: SqlTransactionRepository = Depends(get_transaction_repository),
) -> dict:
    try:
        repo.delete(user_id, transaction_id)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail="Transaction not found.") from exc
    except RepositoryFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return {"status": "deleted"}


@app.delete("/transactions")
def delete_all_transactions(
    user_id: str = Depends(get_current_user_id),
    repo: SqlTransactionRepository = Depends(get_transaction_repository),
) -> dict:
    try:
        removed = repo.delete_all(user_id)
    except RepositoryFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return {"status": "cleared", "deleted_count": removed}


@app.get("/settings", response_model=SettingsResponse)
def get_settings(
    user_id: str = Depends(get_current_user_id),
    repo: SqlSettingsRepository = Depends(get_settings_repository),
) -> SettingsResponse:
    return settings_response(load_settings(repo, user_id))


@app.put("/settings", response_model=SettingsResponse)
def update_settings(
    payload: SettingsPayload,
    user_id: str = Depends(get_current_user_id),
    repo: SqlSettingsRepository = Depends(get_settings_repository),
) -> SettingsResponse:
    settings = load_settings(repo, user_id)
    try:
        settings = update_display(
            settings, theme=payload.theme, default_currency=payload.default_currency
        )
        if payload.notifications is not None:
            settings = update_notifications(
                settings, NotificationSettings(**payload.notifications.model_dump())
            )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return store_settings(repo, user_id, settings)


@app.post("/settings/cycles", response_model=SettingsResponse)
def create_cycle(
    payload: CyclePayload,
    user_id: str = Depends(get_current_user_id),
    repo: SqlSettingsRepository = Depends(get_settings_repository),
) -> SettingsResponse:
    settings = load_settings(repo, user_id)
    try:
        settings = add_cycle(settings, _cycle_from_payload(payload, uuid4().hex))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return store_settings(repo, user_id, settings)


@app.put("/settings/cycles/{cycle_id}", response_model=SettingsResponse)
def replace_cycle(
    cycle_id: str,
    payload: CyclePayload,
    user_id: str = Depends(get_current_user_id),
    repo: SqlSettingsRepository = Depends(get_settings_repository),
) -> SettingsResponse:
    settings = load_settings(repo, user_id)
    try:
        settings = update_cycle(settings, _cycle_from_payload(payload, cycle_id))
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Cycle not found.") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return store_settings(repo, user_id, settings)


@app.delete("/settings/cycles/{cycle_id}", response_model=SettingsResponse)
def remove_cycle(
    cycle_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: SqlSettingsRepository = Depends(get_settings_repository),
) -> SettingsResponse:
    settings = load_settings(repo, user_id)
    try:
        settings = delete_cycle(settings, cycle_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Cycle not found.") from exc
    return store_settings(repo, user_id, settings)


@app.put("/settings/active-cycle", response_model=SettingsResponse)
def choose_active_cycle(
    payload: ActiveCyclePayload,
    user_id: str = Depends(get_current_user_id),
    repo: SqlSettingsRepository = Depends(get_settings_repository),
) -> SettingsResponse:
    settings = load_settings(repo, user_id)
    try:
        settings = set_active_cycle(settings, payload.cycle_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Cycle not found.") from exc
    return store_settings(repo, user_id, settings)


@app.get("/currencies", response_model=list[CurrencyResponse])
def list_currencies() -> list[CurrencyResponse]:
    return [
        CurrencyResponse(
            code=currency.code,
            name=currency.name,
            symbol=currency.symbol,
            locale=currency.locale,
        )
        for currency in CURRENCIES.values()
    ]


@app.get("/rates", response_model=RatesResponse)
def get_rates(
    provider: ExchangeRateProvider = Depends(get_rate_provider),
) -> RatesResponse:
    return rates_response(provider.current_rates(), provider)


@app.post("/rates/refresh", response_model=RatesResponse)
async def refresh_rates(
    base_currency: str = Query(BASE_CURRENCY),
    provider: ExchangeRateProvider = Depends(get_rate_provider),
) -> RatesResponse:
    try:
        base = normalize_currency(base_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    rates = await provider.fetch_rates(base)
    return rates_response(rates, provider)


@app.get("/rates/convert", response_model=ConversionResponse)
def convert(
    amount: Decimal = Query(...),
    source_currency: str = Query(..., alias="from"),
    target_currency: str = Query(..., alias="to"),
    provider: ExchangeRateProvider = Depends(get_rate_provider),
    app_config: AppConfig = Depends(get_config),
) -> ConversionResponse:
    try:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        rates = provider.current_rates()
        converted = convert_amount(
            amount, source, target, rates.rates, policy=app_config.conversion_policy
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ConversionResponse(
        amount=amount,
        source_currency=source,
        target_currency=target,
        converted_amount=converted,
        rate=get_conversion_rate(source, target, rates.rates),
        provenance=rates.provenance.value,
    )


@app.get("/reports/dashboard", response_model=DashboardResponse)
def dashboard(
    month: str | None = Query(None),
    currency: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    repo: SqlTransactionRepository = Depends(get_transaction_repository),
    settings_repo: SqlSettingsRepository = Depends(get_settings_repository),
    provider: ExchangeRateProvider = Depends(get_rate_provider),
    app_config: AppConfig = Depends(get_config),
) -> DashboardResponse:
    try:
        reference = parse_month_value(month) if month else date.today()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    settings = load_settings(settings_repo, user_id)
    target_currency = resolve_display_currency(currency, settings)
    transactions = load_transactions(repo, user_id)
    rates = provider.current_rates()

    stats = calculate_dashboard_stats(
        transactions,
        target_currency,
        rates.rates,
        reference=reference,
        cycle=get_active_cycle(settings),
        policy=app_config.conversion_policy,
    )
    return DashboardResponse(
        month=reference.strftime("%Y-%m"),
        currency=target_currency,
        total_income=stats.total_income,
        total_expense=stats.total_expense,
        total_mandatory_expense=stats.total_mandatory_expense,
        money_saved=stats.money_saved,
        monthly_budget=stats.monthly_budget,
        daily_budget=stats.daily_budget,
        days_in_period=stats.days_in_period,
        cycle_name=stats.cycle_name,
        rates_provenance=rates.provenance.value,
        recent_transactions=[
            TransactionResponse.from_transaction(txn)
            for txn in recent_transactions(transactions)
        ],
    )


@app.get("/reports/daily", response_model=DailyStatsResponse)
def daily_stats(
    day: date = Query(..., alias="date"),
    currency: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    repo: SqlTransactionRepository = Depends(get_transaction_repository),
    settings_repo: SqlSettingsRepository = Depends(get_settings_repository),
    provider: ExchangeRateProvider = Depends(get_rate_provider),
    app_config: AppConfig = Depends(get_config),
) -> DailyStatsResponse:
    settings = load_settings(settings_repo, user_id)
    target_currency = resolve_display_currency(currency, settings)
    stats = calculate_daily_stats(
        load_transactions(repo, user_id),
        day,
        target_currency,
        provider.current_rates().rates,
        policy=app_config.conversion_policy,
    )
    return DailyStatsResponse(
        date=stats.date,
        currency=target_currency,
        income=stats.income,
        expense=stats.expense,
        mandatory_expense=stats.mandatory_expense,
        leisure_expense=stats.leisure_expense,
        transactions=[TransactionResponse.from_transaction(txn) for txn in stats.transactions],
    )


@app.get("/reports/calendar", response_model=CalendarResponse)
def calendar_view(
    year: int = Query(..., ge=1, le=9999),
    month: int = Query(..., ge=1, le=12),
    currency: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    repo: SqlTransactionRepository = Depends(get_transaction_repository),
    settings_repo: SqlSettingsRepository = Depends(get_settings_repository),
    provider: ExchangeRateProvider = Depends(get_rate_provider),
    app_config: AppConfig = Depends(get_config),
) -> CalendarResponse:
    settings = load_settings(settings_repo, user_id)
    target_currency = resolve_display_currency(currency, settings)
    transactions = load_transactions(repo, user_id)
    rates = provider.current_rates().rates
    stats = calculate_dashboard_stats(
        transactions,
        target_currency,
        rates,
        reference=date(year, month, 1),
        cycle=get_active_cycle(settings),
        policy=app_config.conversion_policy,
    )
    days = generate_calendar_days(
        year,
        month,
        transactions,
        target_currency,
        rates,
        daily_budget=stats.daily_budget,
        policy=app_config.conversion_policy,
    )
    return CalendarResponse(
        year=year,
        month=month,
        currency=target_currency,
        daily_budget=stats.daily_budget,
        days=[
            CalendarDayResponse(
                date=day.date,
                is_current_month=day.is_current_month,
                income=day.stats.income,
                expense=day.stats.expense,
                mandatory_expense=day.stats.mandatory_expense,
                leisure_expense=day.stats.leisure_expense,
                transaction_count=len(day.stats.transactions),
                is_over_budget=day.is_over_budget,
            )
            for day in days
        ],
    )


@app.get("/reports/category-breakdown", response_model=list[CategoryBreakdownResponse])
def category_breakdown(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    currency: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    repo: SqlTransactionRepository = Depends(get_transaction_repository),
    settings_repo: SqlSettingsRepository = Depends(get_settings_repository),
    provider: ExchangeRateProvider = Depends(get_rate_provider),
    app_config: AppConfig = Depends(get_config),
) -> list[CategoryBreakdownResponse]:
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    settings = load_settings(settings_repo, user_id)
    target_currency = resolve_display_currency(currency, settings)
    slices = spending_by_category(
        load_transactions(repo, user_id),
        target_currency,
        provider.current_rates().rates,
        period=Period(start=start_date, end=end_date),
        policy=app_config.conversion_policy,
    )
    return [
        CategoryBreakdownResponse(
            category=item.category,
            total_spent=item.total,
            percentage_of_total=item.percentage,
            currency=target_currency,
        )
        for item in slices
    ]


if __name__ == "__main__":
    uvicorn.run("budget_tracker.main:app", host="0.0.0.0", port=3002)
