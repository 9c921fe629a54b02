"""Transaction posting.

Every mutation runs inside one unit of work: the acting user is bound, the
base-currency amount is derived from the rate effective on the transaction
date, the row and its audit entry are written, and the whole thing commits or
rolls back together.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Iterable

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from expense_tracker.audit import UnitOfWork, unit_of_work
from expense_tracker.currency_conversion import (
    DatabaseRateResolver,
    coerce_amount,
    normalize_amount,
    normalize_currency,
    quantize_amount,
)
from expense_tracker.db import accounts, categories, transactions
from expense_tracker.errors import InvalidAmount, InvalidDate, NotFound, ValidationError
from expense_tracker.identity import family_base_currency
from expense_tracker.logging_config import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")
MAX_DESCRIPTION_LENGTH = 500


class TransactionType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str, field: str = "type") -> str:
        normalized = (value or "").strip().lower()
        if normalized not in cls.values:
            raise ValidationError(field, "Type must be income or expense.")
        return normalized


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class TransactionPatch:
    """Fields left as UNSET keep their stored value."""

    category_id: Any = UNSET
    amount: Any = UNSET
    currency: Any = UNSET
    description: Any = UNSET
    date: Any = UNSET

    def is_empty(self) -> bool:
        return all(
            value is UNSET
            for value in (self.category_id, self.amount, self.currency, self.description, self.date)
        )


@dataclass(frozen=True)
class TransactionFilter:
    type: str | None = None
    account_id: int | None = None
    start_date: date | None = None
    end_date: date | None = None


class TransactionLedger:
    def __init__(
        self,
        engine: Engine,
        allowed_currencies: Iterable[str],
        clock: Callable[[], date] = date.today,
        resolver_factory: Callable[[Connection, int], DatabaseRateResolver] = DatabaseRateResolver,
    ) -> None:
        self.engine = engine
        self.allowed_currencies = frozenset(allowed_currencies)
        self.clock = clock
        self.resolver_factory = resolver_factory

    def create(
        self,
        family_id: int,
        account_id: int,
        category_id: int,
        type: str,
        amount: Decimal | int | str,
        currency: str,
        description: str | None,
        date: date | str,
        actor_id: int | None,
    ) -> dict:
        amount = self._validate_amount(amount)
        transaction_date = self._validate_date(date)
        txn_type = TransactionType.validate(type)
        currency = normalize_currency(currency, self.allowed_currencies)
        description = _clean_description(description)

        with self.engine.connect() as conn:
            _get_active_account(conn, family_id, account_id)
            _get_active_category(conn, family_id, category_id, txn_type)

        with unit_of_work(self.engine, actor_id, family_id) as uow:
            base_currency = family_base_currency(uow.conn, family_id)
            amount_base = normalize_amount(
                amount,
                currency,
                base_currency,
                transaction_date,
                self.resolver_factory(uow.conn, family_id),
            )
            row = uow.conn.execute(
                insert(transactions)
                .values(
                    family_id=family_id,
                    account_id=account_id,
                    category_id=category_id,
                    type=txn_type,
                    amount=amount,
                    currency=currency,
                    amount_base=amount_base,
                    description=description,
                    transaction_date=transaction_date,
                    is_active=True,
                    created_by=uow.actor_id,
                    updated_by=uow.actor_id,
                )
                .returning(*transactions.c)
            ).mappings().one()
            uow.record("create", "transaction", row["id"])

        logger.info(
            "Transaction created",
            extra={"transaction_id": row["id"], "family_id": family_id, "actor_id": actor_id},
        )
        return dict(row)

    def update(
        self,
        family_id: int,
        transaction_id: int,
        patch: TransactionPatch,
        actor_id: int | None,
    ) -> dict:
        if patch.is_empty():
            return self.get(family_id, transaction_id)

        new_amount = UNSET if patch.amount is UNSET else self._validate_amount(patch.amount)
        new_date = UNSET if patch.date is UNSET else self._validate_date(patch.date)
        new_currency = (
            UNSET
            if patch.currency is UNSET
            else normalize_currency(patch.currency, self.allowed_currencies)
        )
        new_description = (
            UNSET if patch.description is UNSET else _clean_description(patch.description)
        )

        with unit_of_work(self.engine, actor_id, family_id) as uow:
            current = _load_for_write(uow, transaction_id)

            category_id = current["category_id"]
            if patch.category_id is not UNSET:
                _get_active_category(uow.conn, family_id, patch.category_id, current["type"])
                category_id = patch.category_id

            amount = current["amount"] if new_amount is UNSET else new_amount
            currency = current["currency"] if new_currency is UNSET else new_currency
            transaction_date = current["transaction_date"] if new_date is UNSET else new_date
            description = current["description"] if new_description is UNSET else new_description

            amount_base = normalize_amount(
                amount,
                currency,
                family_base_currency(uow.conn, family_id),
                transaction_date,
                self.resolver_factory(uow.conn, family_id),
            )
            row = uow.conn.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id)
                .values(
                    category_id=category_id,
                    amount=amount,
                    currency=currency,
                    amount_base=amount_base,
                    description=description,
                    transaction_date=transaction_date,
                    updated_by=uow.actor_id,
                )
                .returning(*transactions.c)
            ).mappings().one()
            uow.record("update", "transaction", transaction_id)

        logger.info(
            "Transaction updated",
            extra={"transaction_id": transaction_id, "family_id": family_id, "actor_id": actor_id},
        )
        return dict(row)

    def delete(self, family_id: int, transaction_id: int, actor_id: int | None) -> None:
        with unit_of_work(self.engine, actor_id, family_id) as uow:
            _load_for_write(uow, transaction_id)
            uow.conn.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id)
                .values(is_active=False, updated_by=uow.actor_id)
            )
            uow.record("delete", "transaction", transaction_id)

        logger.info(
            "Transaction deleted",
            extra={"transaction_id": transaction_id, "family_id": family_id, "actor_id": actor_id},
        )

    def get(self, family_id: int, transaction_id: int) -> dict:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(transactions).where(
                    transactions.c.id == transaction_id,
                    transactions.c.family_id == family_id,
                    transactions.c.is_active.is_(True),
                )
            ).mappings().first()
        if not row:
            raise NotFound("transaction")
        return dict(row)

    def list_filtered(
        self,
        family_id: int,
        filters: TransactionFilter,
        limit: int,
        offset: int,
    ) -> tuple[list[dict], int]:
        conditions = [
            transactions.c.family_id == family_id,
            transactions.c.is_active.is_(True),
        ]
        if filters.type is not None:
            conditions.append(transactions.c.type == filters.type)
        if filters.account_id is not None:
            conditions.append(transactions.c.account_id == filters.account_id)
        if filters.start_date is not None:
            conditions.append(transactions.c.transaction_date >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(transactions.c.transaction_date <= filters.end_date)

        with self.engine.connect() as conn:
            rows = conn.execute(
                select(transactions)
                .where(*conditions)
                .order_by(transactions.c.transaction_date.desc(), transactions.c.id.desc())
                .limit(limit)
                .offset(offset)
            ).mappings().all()
            total = conn.execute(
                select(func.count()).select_from(transactions).where(*conditions)
            ).scalar_one()
        return [dict(row) for row in rows], int(total or 0)

    def _validate_amount(self, value: Decimal | int | str | None) -> Decimal:
        if value is None:
            raise InvalidAmount("Amount is required.")
        try:
            amount = coerce_amount(value)
        except ValidationError as exc:
            raise InvalidAmount(exc.message) from exc
        if not amount.is_finite() or amount <= ZERO:
            raise InvalidAmount()
        if amount != quantize_amount(amount):
            raise InvalidAmount("Amount must have at most 2 decimal places.")
        return amount

    def _validate_date(self, value: date | str | None) -> date:
        if isinstance(value, datetime):
            value = value.date()
        if isinstance(value, date):
            parsed = value
        else:
            try:
                parsed = datetime.strptime(value or "", "%Y-%m-%d").date()
            except (TypeError, ValueError) as exc:
                raise InvalidDate("Invalid date format, use YYYY-MM-DD.") from exc
        if parsed > self.clock():
            raise InvalidDate("Transaction date cannot be in the future.")
        return parsed


def _load_for_write(uow: UnitOfWork, transaction_id: int) -> dict:
    row = uow.conn.execute(
        select(transactions).where(
            transactions.c.id == transaction_id,
            transactions.c.family_id == uow.family_id,
            transactions.c.is_active.is_(True),
        )
    ).mappings().first()
    if not row:
        raise NotFound("transaction")
    return dict(row)


def _get_active_account(conn: Connection, family_id: int, account_id: int) -> dict:
    row = conn.execute(
        select(accounts).where(accounts.c.id == account_id, accounts.c.is_active.is_(True))
    ).mappings().first()
    if not row or row["family_id"] != family_id:
        raise NotFound("account", field="account_id")
    return dict(row)


def _get_active_category(conn: Connection, family_id: int, category_id: int, txn_type: str) -> dict:
    row = conn.execute(
        select(categories).where(categories.c.id == category_id, categories.c.is_active.is_(True))
    ).mappings().first()
    if not row or row["family_id"] != family_id:
        raise NotFound("category", field="category_id")
    if row["type"] != txn_type:
        raise ValidationError("category_id", "Category type must match transaction type.")
    return dict(row)


def _clean_description(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if len(cleaned) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError("description", "Description is too long.")
    return cleaned or None
