from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Iterator, Mapping

from sqlalchemy import and_, insert, select, update
from sqlalchemy.engine import Connection, Engine

from expense_tracker.audit import UnitOfWork
from expense_tracker.db import exchange_rates
from expense_tracker.errors import RateUnavailable, ValidationError
from expense_tracker.logging_config import get_logger

logger = get_logger(__name__)

ONE = Decimal("1")
AMOUNT_QUANTUM = Decimal("0.01")
RATE_QUANTUM = Decimal("0.000001")
PERCENT_QUANTUM = Decimal("0.1")

DEFAULT_FALLBACK_RATES: dict[tuple[str, str], Decimal] = {
    ("EUR", "RSD"): Decimal("117.5"),
}


class RateNotFound(LookupError):
    """Raised when no stored rate exists for a pair on or before a date."""


@dataclass(frozen=True)
class ExchangeRate:
    from_currency: str
    to_currency: str
    rate: Decimal
    date: date
    source: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class RateQuote:
    rate: Decimal
    source: str
    effective_date: date | None = None
    created_at: datetime | None = None


@dataclass
class DatabaseRateResolver:
    """Reads the exchange rates stored for one family.

    ``bind`` may be an engine or an open connection; posting passes the
    connection of its unit of work so the rate is read in the same transaction.
    """

    bind: Engine | Connection
    family_id: int

    def latest_rate(self, from_currency: str, to_currency: str, as_of: date) -> ExchangeRate:
        stmt = (
            select(exchange_rates)
            .where(
                exchange_rates.c.family_id == self.family_id,
                exchange_rates.c.from_currency == from_currency,
                exchange_rates.c.to_currency == to_currency,
                exchange_rates.c.date <= as_of,
            )
            .order_by(exchange_rates.c.date.desc())
            .limit(1)
        )
        with self._connection() as conn:
            row = conn.execute(stmt).mappings().first()
        if not row:
            raise RateNotFound(f"{from_currency}->{to_currency} as of {as_of.isoformat()}")
        return _to_exchange_rate(row)

    def list_by_date(self, on_date: date) -> list[ExchangeRate]:
        stmt = (
            select(exchange_rates)
            .where(
                exchange_rates.c.family_id == self.family_id,
                exchange_rates.c.date == on_date,
            )
            .order_by(exchange_rates.c.from_currency, exchange_rates.c.to_currency)
        )
        with self._connection() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_to_exchange_rate(row) for row in rows]

    def history(
        self, from_currency: str, to_currency: str, start_date: date, end_date: date
    ) -> list[ExchangeRate]:
        stmt = (
            select(exchange_rates)
            .where(
                exchange_rates.c.family_id == self.family_id,
                exchange_rates.c.from_currency == from_currency,
                exchange_rates.c.to_currency == to_currency,
                exchange_rates.c.date >= start_date,
                exchange_rates.c.date <= end_date,
            )
            .order_by(exchange_rates.c.date.asc())
        )
        with self._connection() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_to_exchange_rate(row) for row in rows]

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        if isinstance(self.bind, Connection):
            yield self.bind
            return
        with self.bind.connect() as conn:
            yield conn


def upsert_rate(
    uow: UnitOfWork,
    from_currency: str,
    to_currency: str,
    rate: Decimal,
    on_date: date,
    source: str = "manual",
) -> ExchangeRate:
    """Store the family's rate for a pair and day, replacing any earlier one."""
    if rate <= 0:
        raise ValidationError("rate", "Rate must be greater than zero.")
    if from_currency == to_currency:
        raise ValidationError("to_currency", "Currencies must differ.")
    pair = and_(
        exchange_rates.c.family_id == uow.family_id,
        exchange_rates.c.from_currency == from_currency,
        exchange_rates.c.to_currency == to_currency,
        exchange_rates.c.date == on_date,
    )
    existing_id = uow.conn.execute(select(exchange_rates.c.id).where(pair)).scalar_one_or_none()
    if existing_id is not None:
        uow.conn.execute(update(exchange_rates).where(pair).values(rate=rate, source=source))
        uow.record("update", "exchange_rate", existing_id)
    else:
        new_id = uow.conn.execute(
            insert(exchange_rates)
            .values(
                family_id=uow.family_id,
                from_currency=from_currency,
                to_currency=to_currency,
                rate=rate,
                date=on_date,
                source=source,
            )
            .returning(exchange_rates.c.id)
        ).scalar_one()
        uow.record("create", "exchange_rate", new_id)
    row = uow.conn.execute(select(exchange_rates).where(pair)).mappings().one()
    return _to_exchange_rate(row)


@dataclass(frozen=True)
class StaticRateProvider:
    """Fixed fallback rates keyed by (from, to); the reverse pair is derived.

    ``None`` selects the built-in rates; an empty mapping disables fallback.
    """

    rates: Mapping[tuple[str, str], Decimal] | None = None

    def __post_init__(self) -> None:
        rates = DEFAULT_FALLBACK_RATES if self.rates is None else self.rates
        object.__setattr__(self, "rates", dict(rates))

    def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        if from_currency == to_currency:
            return ONE
        direct = self.rates.get((from_currency, to_currency))
        if direct is not None:
            return direct
        reverse = self.rates.get((to_currency, from_currency))
        if reverse is not None:
            return quantize_rate(ONE / reverse)
        raise RateNotFound(f"No fallback rate for {from_currency}->{to_currency}")


@dataclass(frozen=True)
class ReportingConverter:
    """Rate lookup for display and reporting paths.

    Tries the stored pair, then the inverse of the stored reverse pair, then
    the static fallback. Posting never goes through here.
    """

    resolver: DatabaseRateResolver
    fallback: StaticRateProvider = field(default_factory=StaticRateProvider)

    def rate(self, from_currency: str, to_currency: str, as_of: date) -> RateQuote:
        if from_currency == to_currency:
            return RateQuote(rate=ONE, source="identity", effective_date=as_of)
        try:
            found = self.resolver.latest_rate(from_currency, to_currency, as_of)
            return RateQuote(
                rate=found.rate,
                source=found.source,
                effective_date=found.date,
                created_at=found.created_at,
            )
        except RateNotFound:
            pass
        try:
            reverse = self.resolver.latest_rate(to_currency, from_currency, as_of)
            return RateQuote(
                rate=quantize_rate(ONE / reverse.rate),
                source=reverse.source,
                effective_date=reverse.date,
                created_at=reverse.created_at,
            )
        except RateNotFound:
            pass
        try:
            rate = self.fallback.get_rate(from_currency, to_currency)
        except RateNotFound as exc:
            raise RateUnavailable(from_currency, to_currency, as_of) from exc
        logger.warning(
            "Using fallback exchange rate",
            extra={"from_currency": from_currency, "to_currency": to_currency, "rate": rate},
        )
        return RateQuote(rate=rate, source="fallback", effective_date=None)


def normalize_amount(
    amount: Decimal | int | str,
    currency: str,
    base_currency: str,
    as_of: date,
    resolver: DatabaseRateResolver,
) -> Decimal:
    """Convert an entered amount into the family base currency for posting.

    Raises RateUnavailable instead of guessing when no rate is stored.
    """
    coerced = coerce_amount(amount)
    if currency == base_currency:
        return coerced
    try:
        found = resolver.latest_rate(currency, base_currency, as_of)
    except RateNotFound as exc:
        raise RateUnavailable(currency, base_currency, as_of) from exc
    return quantize_amount(coerced * found.rate)


def convert_amount(
    amount: Decimal | int | str,
    source_currency: str,
    target_currency: str,
    converter: ReportingConverter,
    as_of: date | str | None = None,
) -> Decimal:
    """Convert a monetary amount for display, falling back to fixed rates."""
    coerced = coerce_amount(amount)
    if source_currency == target_currency:
        return coerced
    quote = converter.rate(source_currency, target_currency, _normalize_rate_date(as_of))
    return quantize_amount(coerced * quote.rate)


def normalize_currency(value: str, allowed: Iterable[str] | None = None, field_name: str = "currency") -> str:
    normalized = (value or "").strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValidationError(field_name, "Currency must be a 3-letter ISO 4217 code.")
    if allowed is not None:
        allowed_set = set(allowed)
        if normalized not in allowed_set:
            raise ValidationError(
                field_name, f"Currency must be one of: {', '.join(sorted(allowed_set))}."
            )
    return normalized


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_rate(value: Decimal) -> Decimal:
    return value.quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_percentage(value: Decimal) -> Decimal:
    return value.quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def _to_exchange_rate(row) -> ExchangeRate:
    return ExchangeRate(
        from_currency=row["from_currency"],
        to_currency=row["to_currency"],
        rate=coerce_amount(row["rate"]),
        date=row["date"],
        source=row["source"],
        created_at=row["created_at"],
    )


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    try:
        return Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValidationError("amount", "Invalid amount format.") from exc


def _normalize_rate_date(value: date | str | None) -> date:
    if value is None:
        return date.today()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValidationError("date", "Date must be in YYYY-MM-DD format.") from exc
