from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection

from expense_tracker.currency_conversion import (
    ReportingConverter,
    coerce_amount,
    convert_amount,
    normalize_currency,
    quantize_amount,
)
from expense_tracker.db import accounts, transactions
from expense_tracker.errors import NotFound, ValidationError
from expense_tracker.ledger import UNSET

ZERO = Decimal("0")
MAX_NAME_LENGTH = 100


class AccountType:
    values = {"cash", "checking", "savings"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = (value or "").strip().lower()
        if normalized not in cls.values:
            raise ValidationError("type", "Type must be one of: cash, checking, savings.")
        return normalized


def validate_account_name(value: str | None) -> str:
    name = (value or "").strip()
    if not name:
        raise ValidationError("name", "Account name required.")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError("name", "Account name is too long.")
    return name


def list_accounts(conn: Connection, family_id: int, include_inactive: bool = False) -> list[dict]:
    conditions = [accounts.c.family_id == family_id]
    if not include_inactive:
        conditions.append(accounts.c.is_active.is_(True))
    rows = conn.execute(
        select(accounts).where(*conditions).order_by(accounts.c.name.asc(), accounts.c.id.asc())
    ).mappings().all()
    return [dict(row) for row in rows]


def get_account(
    conn: Connection, family_id: int, account_id: int, include_inactive: bool = False
) -> dict:
    conditions = [accounts.c.id == account_id]
    if not include_inactive:
        conditions.append(accounts.c.is_active.is_(True))
    row = conn.execute(select(accounts).where(*conditions)).mappings().first()
    if not row or row["family_id"] != family_id:
        raise NotFound("account")
    return dict(row)


def create_account(
    conn: Connection,
    family_id: int,
    name: str,
    type: str,
    currency: str,
    initial_balance: Decimal | int | str | None,
    allowed_currencies: Iterable[str],
) -> dict:
    name = validate_account_name(name)
    account_type = AccountType.validate(type)
    currency = normalize_currency(currency, allowed_currencies)
    balance = coerce_amount(initial_balance if initial_balance is not None else ZERO)
    if balance < ZERO:
        raise ValidationError("initial_balance", "Initial balance cannot be negative.")
    row = conn.execute(
        insert(accounts)
        .values(
            family_id=family_id,
            name=name,
            type=account_type,
            currency=currency,
            initial_balance=quantize_amount(balance),
            is_active=True,
        )
        .returning(*accounts.c)
    ).mappings().one()
    return dict(row)


def update_account(
    conn: Connection,
    family_id: int,
    account_id: int,
    name: Any = UNSET,
    is_active: Any = UNSET,
) -> dict:
    get_account(conn, family_id, account_id, include_inactive=True)
    values: dict[str, Any] = {}
    if name is not UNSET:
        values["name"] = validate_account_name(name)
    if is_active is not UNSET:
        if is_active is None:
            raise ValidationError("is_active", "is_active must be true or false.")
        values["is_active"] = bool(is_active)
    if values:
        conn.execute(update(accounts).where(accounts.c.id == account_id).values(**values))
    return get_account(conn, family_id, account_id, include_inactive=True)


def deactivate_account(conn: Connection, family_id: int, account_id: int) -> None:
    get_account(conn, family_id, account_id)
    conn.execute(update(accounts).where(accounts.c.id == account_id).values(is_active=False))


def account_balance(
    conn: Connection,
    account: dict,
    base_currency: str,
    converter: ReportingConverter,
    as_of: date | None = None,
) -> Decimal:
    """Initial balance plus signed active transactions, in the account currency.

    Each contribution uses the entered amount when currencies match, the
    stored base amount when the account is held in the base currency, and a
    reporting conversion of the base amount otherwise.
    """
    as_of = as_of or date.today()
    stmt = (
        select(
            transactions.c.type,
            transactions.c.currency,
            func.coalesce(func.sum(transactions.c.amount), 0).label("amount"),
            func.coalesce(func.sum(transactions.c.amount_base), 0).label("amount_base"),
        )
        .where(
            transactions.c.account_id == account["id"],
            transactions.c.family_id == account["family_id"],
            transactions.c.is_active.is_(True),
        )
        .group_by(transactions.c.type, transactions.c.currency)
    )
    balance = coerce_amount(account["initial_balance"])
    for row in conn.execute(stmt).mappings().all():
        if row["currency"] == account["currency"]:
            contribution = coerce_amount(row["amount"])
        elif account["currency"] == base_currency:
            contribution = coerce_amount(row["amount_base"])
        else:
            contribution = convert_amount(
                row["amount_base"], base_currency, account["currency"], converter, as_of
            )
        balance += contribution if row["type"] == "income" else -contribution
    return quantize_amount(balance)


def last_transaction_date(conn: Connection, account: dict) -> date | None:
    return conn.execute(
        select(func.max(transactions.c.transaction_date)).where(
            transactions.c.account_id == account["id"],
            transactions.c.is_active.is_(True),
        )
    ).scalar_one_or_none()
