from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

DEFAULT_ALLOWED_CURRENCIES = ("RSD", "EUR")
DEFAULT_FALLBACK_RATES = "EUR:RSD=117.5"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./expense_tracker.db"
    frontend_origins: tuple[str, ...] = ("http://localhost:3000",)
    default_currency: str = "RSD"
    allowed_currencies: frozenset[str] = frozenset(DEFAULT_ALLOWED_CURRENCIES)
    fallback_rates: dict[tuple[str, str], Decimal] = field(
        default_factory=lambda: {("EUR", "RSD"): Decimal("117.5")}
    )
    log_level: str = "INFO"
    log_format: str = "json"
    app_version: str = "1.0.0"


def _split(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def parse_allowed_currencies(raw: str | None) -> frozenset[str]:
    codes = set()
    for value in _split(raw or ""):
        normalized = value.upper()
        if len(normalized) == 3 and normalized.isalpha():
            codes.add(normalized)
    return frozenset(codes) or frozenset(DEFAULT_ALLOWED_CURRENCIES)


def parse_fallback_rates(raw: str | None) -> dict[tuple[str, str], Decimal]:
    """Parse ``FROM:TO=RATE`` pairs, skipping malformed entries."""
    rates: dict[tuple[str, str], Decimal] = {}
    for entry in _split(raw if raw is not None else DEFAULT_FALLBACK_RATES):
        pair, sep, value = entry.partition("=")
        from_currency, colon, to_currency = pair.partition(":")
        if not sep or not colon:
            continue
        try:
            rate = Decimal(value.strip())
        except InvalidOperation:
            continue
        if rate <= 0:
            continue
        rates[(from_currency.strip().upper(), to_currency.strip().upper())] = rate
    return rates


def load_settings() -> Settings:
    allowed = parse_allowed_currencies(os.getenv("ALLOWED_CURRENCIES"))
    default_currency = os.getenv("DEFAULT_CURRENCY", "RSD").strip().upper()
    if default_currency not in allowed:
        default_currency = "RSD" if "RSD" in allowed else sorted(allowed)[0]

    log_format = os.getenv("LOG_FORMAT", "json").strip().lower()
    if log_format not in {"json", "text"}:
        log_format = "json"

    origins = _split(os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"))

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./expense_tracker.db"),
        frontend_origins=tuple(origins) or ("http://localhost:3000",),
        default_currency=default_currency,
        allowed_currencies=allowed,
        fallback_rates=parse_fallback_rates(os.getenv("FALLBACK_RATES")),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        log_format=log_format,
        app_version=os.getenv("APP_VERSION", "1.0.0"),
    )
