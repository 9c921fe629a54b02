from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from expense_tracker.accounts import (
    account_balance,
    create_account,
    deactivate_account,
    get_account,
    last_transaction_date,
    list_accounts,
    update_account,
)
from expense_tracker.audit import unit_of_work
from expense_tracker.categories import (
    create_category,
    deactivate_category,
    get_category,
    list_categories,
    update_category,
)
from expense_tracker.config import load_settings
from expense_tracker.currency_conversion import (
    DatabaseRateResolver,
    ExchangeRate,
    ReportingConverter,
    StaticRateProvider,
    normalize_currency,
    quantize_amount,
    upsert_rate,
)
from expense_tracker.db import accounts, categories, create_db_engine, init_db
from expense_tracker.errors import (
    Conflict,
    NotFound,
    RateUnavailable,
    TrackerError,
    Unauthenticated,
    ValidationError,
)
from expense_tracker.identity import (
    Identity,
    family_base_currency,
    login,
    resolve_identity,
    signup,
    user_names,
)
from expense_tracker.ledger import (
    UNSET,
    TransactionFilter,
    TransactionLedger,
    TransactionPatch,
    TransactionType,
)
from expense_tracker.logging_config import configure_logging, get_logger
from expense_tracker.reports import monthly_summary, parse_month_value, month_end, spending_by_category

settings = load_settings()
configure_logging(settings.log_level, settings.log_format)
logger = get_logger("api")

app = FastAPI(title="Family Expense Tracker", version=settings.app_version)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.frontend_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = create_db_engine(settings.database_url)
ledger = TransactionLedger(engine, settings.allowed_currencies)
fallback_rates = StaticRateProvider(settings.fallback_rates)

DEFAULT_PER_PAGE = 50
MAX_PER_PAGE = 100


@app.on_event("startup")
def startup() -> None:
    init_db(engine)
    logger.info("Database initialised", extra={"database_url": engine.url.render_as_string()})


class SignupPayload(BaseModel):
    email: str
    password: str
    name: str
    family_name: str | None = None
    base_currency: str | None = None


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    family_id: int


class AccountPayload(BaseModel):
    name: str
    type: str
    currency: str
    initial_balance: Decimal = Decimal("0")


class AccountUpdatePayload(BaseModel):
    name: str | None = None
    is_active: bool | None = None


class AccountResponse(BaseModel):
    id: int
    name: str
    type: str
    currency: str
    initial_balance: Decimal
    current_balance: Decimal
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AccountBalanceResponse(BaseModel):
    account_id: int
    account_name: str
    currency: str
    current_balance: Decimal
    balance_date: date
    last_transaction_date: date | None = None


class CategoryPayload(BaseModel):
    name: str
    type: str
    parent_id: int | None = None


class CategoryUpdatePayload(BaseModel):
    name: str | None = None
    parent_id: int | None = None
    is_active: bool | None = None


class CategoryResponse(BaseModel):
    id: int
    name: str
    type: str
    parent_id: int | None = None
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TransactionPayload(BaseModel):
    type: str
    amount: Decimal
    currency: str
    category_id: int
    account_id: int
    description: str | None = None
    date: str


class TransactionUpdatePayload(BaseModel):
    category_id: int | None = None
    amount: Decimal | None = None
    currency: str | None = None
    description: str | None = None
    date: str | None = None


class TransactionCategoryInfo(BaseModel):
    id: int
    name: str
    type: str


class TransactionAccountInfo(BaseModel):
    id: int
    name: str
    type: str


class TransactionResponse(BaseModel):
    id: int
    type: str
    amount: Decimal
    currency: str
    amount_base: Decimal
    base_currency: str
    category: TransactionCategoryInfo | None = None
    account: TransactionAccountInfo | None = None
    description: str | None = None
    date: date
    created_at: datetime | None = None
    created_by: str | None = None


class PaginationMeta(BaseModel):
    page: int
    per_page: int
    total: int
    total_pages: int


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    pagination: PaginationMeta


class ReportPeriod(BaseModel):
    start_date: date
    end_date: date


class CategorySpending(BaseModel):
    category_id: int
    category_name: str
    total_amount: Decimal
    transaction_count: int
    percentage: Decimal
    average_per_transaction: Decimal


class SpendingByCategoryResponse(BaseModel):
    report_type: str
    period: ReportPeriod
    currency: str
    transaction_type: str
    spending_by_category: list[CategorySpending]
    total_amount: Decimal
    total_transactions: int
    generated_at: datetime


class MonthlySummary(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    net_savings: Decimal
    savings_rate: Decimal


class AccountBalances(BaseModel):
    accounts: dict[str, Decimal]
    total: Decimal


class TransactionCounts(BaseModel):
    income_transactions: int
    expense_transactions: int
    total_transactions: int


class MonthlySummaryResponse(BaseModel):
    report_type: str
    month: str
    currency: str
    summary: MonthlySummary
    income_breakdown: dict[str, Decimal]
    expense_breakdown: dict[str, Decimal]
    account_balances: AccountBalances
    transaction_counts: TransactionCounts
    generated_at: datetime


class ExchangeRatesResponse(BaseModel):
    base_currency: str
    rates: dict[str, Decimal]
    last_updated: datetime
    source: str


class ConvertCurrencyResponse(BaseModel):
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    target_currency: str
    exchange_rate: Decimal
    conversion_date: datetime


class ExchangeRatePayload(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    date: date
    source: str = "manual"


class ExchangeRateResponse(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    date: date
    source: str


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    database: str


def http_error(exc: TrackerError) -> HTTPException:
    detail = {"code": exc.code, "message": exc.message}
    field = getattr(exc, "field", None)
    if field:
        detail["field"] = field
    if isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, NotFound):
        status_code = 404
    elif isinstance(exc, RateUnavailable):
        status_code = 422
    elif isinstance(exc, Unauthenticated):
        status_code = 401
    elif isinstance(exc, Conflict):
        status_code = 409
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=detail)


def get_identity(x_user_id: str | None) -> Identity:
    if not x_user_id:
        raise http_error(Unauthenticated("Missing user identity."))
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise http_error(Unauthenticated("Invalid user identity.")) from exc
    try:
        with engine.connect() as conn:
            return resolve_identity(conn, user_id)
    except TrackerError as exc:
        raise http_error(exc) from exc


def reporting_converter(family_id: int) -> ReportingConverter:
    return ReportingConverter(
        resolver=DatabaseRateResolver(engine, family_id),
        fallback=fallback_rates,
    )


def parse_date_param(value: str | None, field: str, default: date) -> date:
    if not value:
        return default
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise http_error(ValidationError(field, "Date must be in YYYY-MM-DD format.")) from exc


def account_response(conn, account: dict, base_currency: str) -> AccountResponse:
    return AccountResponse(
        id=account["id"],
        name=account["name"],
        type=account["type"],
        currency=account["currency"],
        initial_balance=account["initial_balance"],
        current_balance=account_balance(
            conn, account, base_currency, reporting_converter(account["family_id"])
        ),
        is_active=account["is_active"],
        created_at=account["created_at"],
        updated_at=account["updated_at"],
    )


def rate_response(item: ExchangeRate) -> ExchangeRateResponse:
    return ExchangeRateResponse(
        from_currency=item.from_currency,
        to_currency=item.to_currency,
        rate=item.rate,
        date=item.date,
        source=item.source,
    )


def category_response(row: dict) -> CategoryResponse:
    return CategoryResponse(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        parent_id=row["parent_id"],
        is_active=row["is_active"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def transaction_responses(family_id: int, rows: list[dict]) -> list[TransactionResponse]:
    if not rows:
        return []
    with engine.connect() as conn:
        base_currency = family_base_currency(conn, family_id)
        category_rows = conn.execute(
            select(categories.c.id, categories.c.name, categories.c.type).where(
                categories.c.family_id == family_id,
                categories.c.id.in_({row["category_id"] for row in rows}),
            )
        ).mappings().all()
        account_rows = conn.execute(
            select(accounts.c.id, accounts.c.name, accounts.c.type).where(
                accounts.c.family_id == family_id,
                accounts.c.id.in_({row["account_id"] for row in rows}),
            )
        ).mappings().all()
        creators = user_names(conn, (row["created_by"] for row in rows))
    category_info = {item["id"]: TransactionCategoryInfo(**item) for item in category_rows}
    account_info = {item["id"]: TransactionAccountInfo(**item) for item in account_rows}
    return [
        TransactionResponse(
            id=row["id"],
            type=row["type"],
            amount=row["amount"],
            currency=row["currency"],
            amount_base=row["amount_base"],
            base_currency=base_currency,
            category=category_info.get(row["category_id"]),
            account=account_info.get(row["account_id"]),
            description=row["description"],
            date=row["transaction_date"],
            created_at=row["created_at"],
            created_by=creators.get(row["created_by"]),
        )
        for row in rows
    ]


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    database = "connected"
    try:
        with engine.connect() as conn:
            conn.execute(select(1))
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        database = "disconnected"
    return HealthResponse(
        status="ok" if database == "connected" else "degraded",
        timestamp=datetime.now(timezone.utc),
        version=settings.app_version,
        database=database,
    )


@app.get("/ready", response_class=PlainTextResponse)
def ready() -> PlainTextResponse:
    try:
        with engine.connect() as conn:
            conn.execute(select(1))
    except SQLAlchemyError:
        logger.exception("Readiness check could not reach the database")
        return PlainTextResponse("not ready", status_code=503)
    return PlainTextResponse("ready")


@app.post("/auth/signup", response_model=UserResponse, status_code=201)
def signup_user(payload: SignupPayload) -> UserResponse:
    try:
        with engine.begin() as conn:
            identity = signup(
                conn,
                email=payload.email,
                password=payload.password,
                name=payload.name,
                family_name=payload.family_name,
                base_currency=payload.base_currency or settings.default_currency,
                allowed_currencies=settings.allowed_currencies,
            )
    except TrackerError as exc:
        raise http_error(exc) from exc
    return UserResponse(
        id=identity.user_id, email=identity.email, name=identity.name, family_id=identity.family_id
    )


@app.post("/auth/login", response_model=UserResponse)
def login_user(payload: CredentialsPayload) -> UserResponse:
    try:
        with engine.connect() as conn:
            identity = login(conn, payload.email, payload.password)
    except TrackerError as exc:
        raise http_error(exc) from exc
    return UserResponse(
        id=identity.user_id, email=identity.email, name=identity.name, family_id=identity.family_id
    )


@app.get("/accounts", response_model=list[AccountResponse])
def list_account_items(
    include_inactive: bool = False,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[AccountResponse]:
    identity = get_identity(x_user_id)
    with engine.connect() as conn:
        base_currency = family_base_currency(conn, identity.family_id)
        rows = list_accounts(conn, identity.family_id, include_inactive=include_inactive)
        return [account_response(conn, row, base_currency) for row in rows]


@app.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account_item(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    identity = get_identity(x_user_id)
    try:
        with engine.begin() as conn:
            row = create_account(
                conn,
                identity.family_id,
                name=payload.name,
                type=payload.type,
                currency=payload.currency,
                initial_balance=payload.initial_balance,
                allowed_currencies=settings.allowed_currencies,
            )
            return account_response(conn, row, family_base_currency(conn, identity.family_id))
    except TrackerError as exc:
        raise http_error(exc) from exc


@app.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account_item(
    account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    identity = get_identity(x_user_id)
    try:
        with engine.connect() as conn:
            row = get_account(conn, identity.family_id, account_id)
            return account_response(conn, row, family_base_currency(conn, identity.family_id))
    except TrackerError as exc:
        raise http_error(exc) from exc


@app.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account_item(
    account_id: int,
    payload: AccountUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AccountResponse:
    identity = get_identity(x_user_id)
    fields = payload.model_fields_set
    try:
        with engine.begin() as conn:
            row = update_account(
                conn,
                identity.family_id,
                account_id,
                name=payload.name if "name" in fields else UNSET,
                is_active=payload.is_active if "is_active" in fields else UNSET,
            )
            return account_response(conn, row, family_base_currency(conn, identity.family_id))
    except TrackerError as exc:
        raise http_error(exc) from exc


@app.delete("/accounts/{account_id}")
def delete_account_item(
    account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    identity = get_identity(x_user_id)
    try:
        with engine.begin() as conn:
            deactivate_account(conn, identity.family_id, account_id)
    except TrackerError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.get("/accounts/{account_id}/balance", response_model=AccountBalanceResponse)
def get_account_balance(
    account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountBalanceResponse:
    identity = get_identity(x_user_id)
    try:
        with engine.connect() as conn:
            row = get_account(conn, identity.family_id, account_id)
            base_currency = family_base_currency(conn, identity.family_id)
            return AccountBalanceResponse(
                account_id=row["id"],
                account_name=row["name"],
                currency=row["currency"],
                current_balance=account_balance(
                    conn, row, base_currency, reporting_converter(identity.family_id)
                ),
                balance_date=date.today(),
                last_transaction_date=last_transaction_date(conn, row),
            )
    except TrackerError as exc:
        raise http_error(exc) from exc


@app.get("/categories", response_model=list[CategoryResponse])
def list_category_items(
    type: str | None = None,
    include_inactive: bool = False,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    identity = get_identity(x_user_id)
    category_type = type if type in TransactionType.values else None
    with engine.connect() as conn:
        rows = list_categories(
            conn, identity.family_id, category_type=category_type, include_inactive=include_inactive
        )
    return [category_response(row) for row in rows]


@app.post("/categories", response_model=CategoryResponse, status_code=201)
def create_category_item(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    identity = get_identity(x_user_id)
    try:
        with engine.begin() as conn:
            row = create_category(
                conn, identity.family_id, payload.name, payload.type, parent_id=payload.parent_id
            )
    except TrackerError as exc:
        raise http_error(exc) from exc
    return category_response(row)


@app.get("/categories/{category_id}", response_model=CategoryResponse)
def get_category_item(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    identity = get_identity(x_user_id)
    try:
        with engine.connect() as conn:
            row = get_category(conn, identity.family_id, category_id)
    except TrackerError as exc:
        raise http_error(exc) from exc
    return category_response(row)


@app.patch("/categories/{category_id}", response_model=CategoryResponse)
def update_category_item(
    category_id: int,
    payload: CategoryUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    identity = get_identity(x_user_id)
    fields = payload.model_fields_set
    try:
        with engine.begin() as conn:
            row = update_category(
                conn,
                identity.family_id,
                category_id,
                name=payload.name if "name" in fields else UNSET,
                parent_id=payload.parent_id if "parent_id" in fields else UNSET,
                is_active=payload.is_active if "is_active" in fields else UNSET,
            )
    except TrackerError as exc:
        raise http_error(exc) from exc
    return category_response(row)


@app.delete("/categories/{category_id}")
def delete_category_item(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    identity = get_identity(x_user_id)
    try:
        with engine.begin() as conn:
            deactivate_category(conn, identity.family_id, category_id)
    except TrackerError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.get("/transactions", response_model=TransactionListResponse)
def list_transaction_items(
    type: str | None = None,
    account_id: int | None = None,
    month: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    page: int = 1,
    per_page: int = DEFAULT_PER_PAGE,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionListResponse:
    identity = get_identity(x_user_id)
    page = max(page, 1)
    if per_page < 1 or per_page > MAX_PER_PAGE:
        per_page = DEFAULT_PER_PAGE

    range_start = parse_date_param(start_date, "start_date", None)
    range_end = parse_date_param(end_date, "end_date", None)
    if month:
        try:
            range_start = parse_month_value(month)
        except ValueError as exc:
            raise http_error(ValidationError("month", str(exc))) from exc
        range_end = month_end(range_start)

    filters = TransactionFilter(
        type=type if type in TransactionType.values else None,
        account_id=account_id,
        start_date=range_start,
        end_date=range_end,
    )
    rows, total = ledger.list_filtered(
        identity.family_id, filters, limit=per_page, offset=(page - 1) * per_page
    )
    return TransactionListResponse(
        transactions=transaction_responses(identity.family_id, rows),
        pagination=PaginationMeta(
            page=page,
            per_page=per_page,
            total=total,
            total_pages=(total + per_page - 1) // per_page,
        ),
    )


@app.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    identity = get_identity(x_user_id)
    try:
        row = ledger.create(
            family_id=identity.family_id,
            account_id=payload.account_id,
            category_id=payload.category_id,
            type=payload.type,
            amount=payload.amount,
            currency=payload.currency,
            description=payload.description,
            date=payload.date,
            actor_id=identity.user_id,
        )
    except TrackerError as exc:
        raise http_error(exc) from exc
    return transaction_responses(identity.family_id, [row])[0]


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    identity = get_identity(x_user_id)
    try:
        row = ledger.get(identity.family_id, transaction_id)
    except TrackerError as exc:
        raise http_error(exc) from exc
    return transaction_responses(identity.family_id, [row])[0]


@app.patch("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    identity = get_identity(x_user_id)
    patch = TransactionPatch(
        **{name: getattr(payload, name) for name in payload.model_fields_set}
    )
    try:
        row = ledger.update(identity.family_id, transaction_id, patch, actor_id=identity.user_id)
    except TrackerError as exc:
        raise http_error(exc) from exc
    return transaction_responses(identity.family_id, [row])[0]


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    identity = get_identity(x_user_id)
    try:
        ledger.delete(identity.family_id, transaction_id, actor_id=identity.user_id)
    except TrackerError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.get("/reports/spending-by-category", response_model=SpendingByCategoryResponse)
def get_spending_by_category(
    start_date: str | None = None,
    end_date: str | None = None,
    type: str = "expense",
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SpendingByCategoryResponse:
    identity = get_identity(x_user_id)
    today = date.today()
    range_start = parse_date_param(start_date, "start_date", today.replace(day=1))
    range_end = parse_date_param(end_date, "end_date", today)
    if range_start > range_end:
        raise http_error(ValidationError("start_date", "start_date must be on or before end_date."))
    txn_type = type if type in TransactionType.values else "expense"
    with engine.connect() as conn:
        report = spending_by_category(
            conn,
            identity.family_id,
            family_base_currency(conn, identity.family_id),
            txn_type,
            range_start,
            range_end,
        )
    return SpendingByCategoryResponse(**report)


@app.get("/reports/monthly-summary", response_model=MonthlySummaryResponse)
def get_monthly_summary(
    month: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MonthlySummaryResponse:
    identity = get_identity(x_user_id)
    try:
        month_value = parse_month_value(month) if month else date.today().replace(day=1)
    except ValueError as exc:
        raise http_error(ValidationError("month", str(exc))) from exc
    try:
        with engine.connect() as conn:
            report = monthly_summary(
                conn,
                identity.family_id,
                family_base_currency(conn, identity.family_id),
                month_value,
                reporting_converter(identity.family_id),
            )
    except TrackerError as exc:
        raise http_error(exc) from exc
    return MonthlySummaryResponse(**report)


@app.get("/currencies/rates", response_model=ExchangeRatesResponse)
def get_exchange_rates(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExchangeRatesResponse:
    identity = get_identity(x_user_id)
    today = date.today()
    with engine.connect() as conn:
        base_currency = family_base_currency(conn, identity.family_id)

    rates: dict[str, Decimal] = {base_currency: Decimal("1")}
    sources: list[str] = []
    last_updated: datetime | None = None
    converter = reporting_converter(identity.family_id)
    for currency in sorted(settings.allowed_currencies - {base_currency}):
        try:
            quote = converter.rate(base_currency, currency, today)
        except RateUnavailable:
            logger.warning("No rate available", extra={"currency": currency})
            continue
        rates[currency] = quote.rate
        sources.append(quote.source)
        if quote.created_at and (last_updated is None or quote.created_at > last_updated):
            last_updated = quote.created_at

    return ExchangeRatesResponse(
        base_currency=base_currency,
        rates=rates,
        last_updated=last_updated or datetime.now(timezone.utc),
        source=",".join(sorted(set(sources))) or "identity",
    )


@app.get("/currencies/convert", response_model=ConvertCurrencyResponse)
def convert_currency(
    amount: str = Query(...),
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ConvertCurrencyResponse:
    identity = get_identity(x_user_id)
    try:
        try:
            original_amount = Decimal(amount)
        except InvalidOperation as exc:
            raise ValidationError("amount", "Invalid amount format.") from exc
        if not original_amount.is_finite():
            raise ValidationError("amount", "Invalid amount format.")
        source = normalize_currency(from_currency, settings.allowed_currencies, field_name="from")
        target = normalize_currency(to_currency, settings.allowed_currencies, field_name="to")
        quote = reporting_converter(identity.family_id).rate(source, target, date.today())
    except TrackerError as exc:
        raise http_error(exc) from exc

    converted = original_amount if source == target else quantize_amount(original_amount * quote.rate)
    return ConvertCurrencyResponse(
        original_amount=original_amount,
        original_currency=source,
        converted_amount=converted,
        target_currency=target,
        exchange_rate=quote.rate,
        conversion_date=datetime.now(timezone.utc),
    )


@app.post("/currencies/rates", response_model=ExchangeRateResponse, status_code=201)
def create_exchange_rate(
    payload: ExchangeRatePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ExchangeRateResponse:
    identity = get_identity(x_user_id)
    try:
        source = normalize_currency(
            payload.from_currency, settings.allowed_currencies, field_name="from_currency"
        )
        target = normalize_currency(
            payload.to_currency, settings.allowed_currencies, field_name="to_currency"
        )
        with unit_of_work(engine, identity.user_id, identity.family_id) as uow:
            saved = upsert_rate(
                uow, source, target, payload.rate, payload.date, source=payload.source.strip() or "manual"
            )
    except TrackerError as exc:
        raise http_error(exc) from exc
    logger.info(
        "Exchange rate saved",
        extra={"family_id": identity.family_id, "from_currency": source, "to_currency": target},
    )
    return rate_response(saved)


@app.get("/currencies/rates/history", response_model=list[ExchangeRateResponse])
def get_rate_history(
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
    start_date: str | None = None,
    end_date: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ExchangeRateResponse]:
    identity = get_identity(x_user_id)
    today = date.today()
    range_end = parse_date_param(end_date, "end_date", today)
    range_start = parse_date_param(start_date, "start_date", range_end - timedelta(days=30))
    try:
        source = normalize_currency(from_currency, settings.allowed_currencies, field_name="from")
        target = normalize_currency(to_currency, settings.allowed_currencies, field_name="to")
        if range_start > range_end:
            raise ValidationError("start_date", "start_date must be on or before end_date.")
    except TrackerError as exc:
        raise http_error(exc) from exc
    resolver = DatabaseRateResolver(engine, identity.family_id)
    return [rate_response(item) for item in resolver.history(source, target, range_start, range_end)]


@app.get("/currencies/rates/by-date", response_model=list[ExchangeRateResponse])
def get_rates_by_date(
    on_date: str | None = Query(None, alias="date"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ExchangeRateResponse]:
    identity = get_identity(x_user_id)
    day = parse_date_param(on_date, "date", date.today())
    resolver = DatabaseRateResolver(engine, identity.family_id)
    return [rate_response(item) for item in resolver.list_by_date(day)]
